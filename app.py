import ipaddress
import logging
import os
import time

import redis
from flask import Flask, request, jsonify

from bignum import DEFAULT_WITNESSES, is_probably_prime
from prime_search import ConfigurationError, PrimeSearchEngine, RandomSourceError, SearchExhaustedError
from settings import load_config, parse_number, validate_run

config = load_config()

# Each line: "<label> <cidr>", separated by one or more spaces or tabs
ipcidr_whitelist_file = os.path.join(os.path.dirname(__file__), 'ipcidr_whitelist.txt')


def load_whitelist(path):
    try:
        with open(path, 'r') as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return []
    data_list = []
    for line in lines:
        elements = line.split()
        if len(elements) < 2:
            continue
        data_list.append([elements[0], elements[1]])
    return data_list


ipcidr_whitelist = load_whitelist(ipcidr_whitelist_file)
if ipcidr_whitelist:
    print(f"ipcidr_whitelist: {ipcidr_whitelist}")


def ip_in_cidr(ip, ipcidr_list):
    _ip = ipaddress.ip_address(ip)
    res = False
    for ipcidr in ipcidr_list:
        _net = ipaddress.ip_network(ipcidr[1])
        if _ip.version == _net.version and _ip in _net:
            res = True
            break
    return res


class PrimeServer:
    def __init__(self, config=config):
        self.config = config
        self.redis = redis.Redis(host=config['redis_host'], port=config['redis_port'], db=config['redis_db'],
                                 password=config['redis_password'])
        self.rate_limit = config['rate_limit']
        self.rate_window_sec = config['rate_window_sec']
        self.app = Flask(__name__)
        self.route()
        if 'GUNICORN_CMD_ARGS' in os.environ:
            gunicorn_logger = logging.getLogger('gunicorn.error')
            self.app.logger.handlers = gunicorn_logger.handlers
            self.app.logger.setLevel(gunicorn_logger.level)
        else:
            logging.basicConfig(level=getattr(logging, str(config['logging_level']).upper(), logging.INFO),
                                format='%(asctime)s - %(levelname)s - %(message)s')

    def client_ip(self):
        x_forwarded_for = request.headers.get('x-forwarded-for')
        return x_forwarded_for.split(',')[0].strip() if x_forwarded_for else request.remote_addr

    def rate_limited(self, ip):
        """Count this request against ``ip`` and report whether it is over the limit."""
        if ip_in_cidr(ip, ipcidr_whitelist):
            logging.info(f"ip: {ip}, hit whitelist")
            return False
        ip_count = self.redis.get(ip) or 0
        if int(ip_count) >= self.rate_limit:
            logging.info(f"ip: {ip}, rate limited, ip_count: {ip_count}")
            return True
        self.redis.incr(ip)
        self.redis.expire(ip, self.rate_window_sec)
        return False

    def generate_primes(self):
        ip = self.client_ip()
        try:
            bits = parse_number(request.args.get('bits', ''))
            count = parse_number(request.args.get('count', '1'))
            validate_run(bits, count, self.config)
        except ConfigurationError as e:
            return jsonify({'error': str(e)}), 400
        if self.rate_limited(ip):
            return jsonify({'error': 'Too Many Requests'}), 429

        logging.info(f"func generate_primes ip: {ip}, bits: {bits}, count: {count}")
        start = time.perf_counter()
        try:
            engine = PrimeSearchEngine.from_config(bits, count, self.config)
            results = engine.generate()
        except ConfigurationError as e:
            return jsonify({'error': str(e)}), 400
        except (RandomSourceError, SearchExhaustedError) as e:
            logging.error(f"func generate_primes failed: {e}")
            return jsonify({'error': 'Search failed, try again later'}), 503
        elapsed = time.perf_counter() - start
        logging.info(f"func generate_primes ip: {ip}, rounds: {engine.rounds}, ElapsedTime: {elapsed:.3f}")
        return jsonify(
            {
                'bits': bits,
                'count': count,
                'primes': [{'sequence': r.sequence, 'value': str(r.value)} for r in results],
                'elapsed': elapsed,
            }
        ), 200

    def test_prime(self):
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'No data provided'}), 400
        if not isinstance(data, dict):
            return jsonify({'error': 'Invalid data format'}), 400
        try:
            value = parse_number(data['value'])
            witnesses = parse_number(data.get('witnesses', DEFAULT_WITNESSES))
        except KeyError:
            return jsonify({'error': 'Invalid data format'}), 400
        except ConfigurationError as e:
            return jsonify({'error': str(e)}), 400
        max_witnesses = self.config['max_witnesses']
        if witnesses > max_witnesses:
            return jsonify({'error': f'witnesses must be at most {max_witnesses}'}), 400
        if witnesses <= 0:
            witnesses = DEFAULT_WITNESSES
        max_bits = self.config['max_bits']
        if max_bits is not None and value.bit_length() > max_bits:
            return jsonify({'error': f'value must be at most {max_bits} bits'}), 400

        ip = self.client_ip()
        if self.rate_limited(ip):
            return jsonify({'error': 'Too Many Requests'}), 429

        result = is_probably_prime(value, witnesses)
        logging.info(f"func test_prime ip: {ip}, bits: {value.bit_length()}, probably_prime: {result}")
        return jsonify(
            {
                'value': str(value),
                'witnesses': witnesses,
                'probably_prime': result,
            }
        ), 200

    def health(self):
        return jsonify({'ok': True}), 200

    def route(self):
        self.app.route('/generate_primes', methods=['GET'])(self.generate_primes)
        self.app.route('/test_prime', methods=['POST'])(self.test_prime)
        self.app.route('/health', methods=['GET'])(self.health)

    def run(self, host='0.0.0.0', port=55000):
        self.app.run(host=host, port=port)


server = PrimeServer()
APP = server.app
if __name__ == '__main__':
    server.run()

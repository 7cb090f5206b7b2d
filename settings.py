"""
Configuration shared by the HTTP service and the command line.

Values come from config.json next to this file, merged over DEFAULTS.
"""

import json
import os

from prime_search import ConfigurationError

CONFIG_FILE = os.path.join(os.path.dirname(__file__), 'config.json')

DEFAULTS = {
    'logging_level': 'info',
    # search
    'witnesses': 10,
    'batch_size': 4096,
    'max_workers': None,
    'executor': 'process',
    'max_rounds': None,
    'force_top_bit': True,
    # request limits
    'min_bits': 32,
    'max_bits': None,
    'max_count': None,
    'max_witnesses': 64,
    # redis / rate limiting
    'redis_host': 'localhost',
    'redis_port': 6379,
    'redis_db': 0,
    'redis_password': None,
    'rate_limit': 60,
    'rate_window_sec': 20 * 60,
}


def load_config(path=CONFIG_FILE):
    config = dict(DEFAULTS)
    try:
        with open(path, 'r') as f:
            config.update(json.load(f))
    except FileNotFoundError:
        pass
    return config


def parse_number(text):
    """Parse a decimal integer, raising ConfigurationError with a readable message."""
    try:
        return int(str(text).strip())
    except ValueError:
        raise ConfigurationError(f"'{text}' is not a valid number.") from None


def validate_run(bits, count, config=DEFAULTS):
    """Reject a bit length or count the search should not be started with."""
    min_bits = config.get('min_bits', 32)
    if bits < min_bits or bits % 8 != 0:
        raise ConfigurationError(f"<bits> must be a multiple of 8, and at least {min_bits}.")
    max_bits = config.get('max_bits')
    if max_bits is not None and bits > max_bits:
        raise ConfigurationError(f"<bits> must be at most {max_bits}.")
    if count < 1:
        raise ConfigurationError("<count> must be at least 1.")
    max_count = config.get('max_count')
    if max_count is not None and count > max_count:
        raise ConfigurationError(f"<count> must be at most {max_count}.")

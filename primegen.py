"""
Command line front end: print <count> probable primes of <bits> bits.

Usage: python primegen.py <bits> [count=1]
"""

import argparse
import logging
import sys
import time
from datetime import timedelta

from prime_search import ConfigurationError, PrimeSearchEngine, RandomSourceError, SearchExhaustedError
from settings import CONFIG_FILE, load_config, parse_number, validate_run

DESCRIPTION = """\
  - bits - the number of bits of the prime number, this must be a
    multiple of 8, and at least 32 bits.
  - count - the number of prime numbers to generate, defaults to 1"""


def format_result(result, total):
    """Render a result the way it is printed; all but the last get a trailing blank line."""
    line = f"{result.sequence}: {result.value}"
    if result.sequence < total:
        line += "\n"
    return line


def build_parser():
    parser = argparse.ArgumentParser(
        prog="primegen",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("numbers", nargs="*", metavar="bits",
                        help="<bits> [count=1]: number of bits of each prime, and how many to generate")
    parser.add_argument("--witnesses", type=int, default=None, help="Miller-Rabin rounds per candidate")
    parser.add_argument("--batch-size", type=int, default=None, help="candidates submitted per round")
    parser.add_argument("--workers", type=int, default=None, help="worker processes/threads")
    parser.add_argument("--executor", choices=["process", "thread"], default=None)
    parser.add_argument("--force-top-bit", action="store_true", help="make every candidate exactly <bits> bits")
    parser.add_argument("--uniform", action="store_true",
                        help="draw candidates uniformly below 2**bits instead of forcing the top bit")
    parser.add_argument("--config", default=CONFIG_FILE, help="path to config.json")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    logging.basicConfig(level=getattr(logging, str(config['logging_level']).upper(), logging.INFO),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    if not 1 <= len(args.numbers) <= 2:
        parser.print_usage()
        print("Invalid Input: Illegal number of arguments.")
        return 1

    try:
        bits = parse_number(args.numbers[0])
        count = parse_number(args.numbers[1]) if len(args.numbers) > 1 else 1
        validate_run(bits, count, {'min_bits': config['min_bits']})
    except ConfigurationError as e:
        parser.print_usage()
        print(f"Invalid Input: {e}")
        return 1

    overrides = {}
    if args.witnesses is not None:
        overrides['witnesses'] = args.witnesses
    if args.batch_size is not None:
        overrides['batch_size'] = args.batch_size
    if args.workers is not None:
        overrides['max_workers'] = args.workers
    if args.executor is not None:
        overrides['executor'] = args.executor
    if args.force_top_bit:
        overrides['force_top_bit'] = True
    if args.uniform:
        overrides['force_top_bit'] = False

    try:
        engine = PrimeSearchEngine.from_config(bits, count, config, **overrides)
    except ConfigurationError as e:
        parser.print_usage()
        print(f"Invalid Input: {e}")
        return 1

    print(f"BitLength: {bits} bits")
    t0 = time.perf_counter()
    try:
        engine.generate(emit=lambda result: print(format_result(result, count), flush=True))
    except (RandomSourceError, SearchExhaustedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    elapsed = time.perf_counter() - t0
    print(f"Time to Generate: {timedelta(seconds=elapsed)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

import logging
import os
import pickle
import threading
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass

from bignum import DEFAULT_WITNESSES, is_probably_prime

# Tasks submitted per round. The search only checks the quota between rounds,
# so this trades pool overhead against how long a finished run keeps draining.
DEFAULT_BATCH_SIZE = 4096

EXECUTORS = {
    'process': ProcessPoolExecutor,
    'thread': ThreadPoolExecutor,
}


class ConfigurationError(ValueError):
    pass


class RandomSourceError(RuntimeError):
    pass


class SearchExhaustedError(RuntimeError):
    pass


@dataclass(frozen=True)
class Result:
    sequence: int
    value: int


def evaluate_candidate(num_bytes, witnesses, random_bytes, force_top_bit=False):
    """Build one random candidate and return it if it is a probable prime, else None."""
    candidate = int.from_bytes(random_bytes(num_bytes), byteorder='big')
    if force_top_bit:
        candidate |= 1 << (num_bytes * 8 - 1)
    if is_probably_prime(candidate, witnesses):
        return candidate
    return None


class PrimeSearchEngine:
    """
    Searches random ``bits``-bit candidates in parallel until exactly
    ``count`` probable primes have been reserved.

    Reservation and emission happen together under one lock, so the order
    results reach ``emit`` is the order of their sequence numbers.
    """

    def __init__(self, bits, count, witnesses=DEFAULT_WITNESSES, batch_size=DEFAULT_BATCH_SIZE,
                 max_workers=None, executor='process', random_bytes=os.urandom, max_rounds=None,
                 force_top_bit=False):
        if bits < 8:
            raise ConfigurationError(f"bits must be at least 8, got {bits}")
        if count < 1:
            raise ConfigurationError(f"count must be at least 1, got {count}")
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be at least 1, got {batch_size}")
        if executor not in EXECUTORS:
            raise ConfigurationError(f"unknown executor {executor!r}")
        if executor == 'process':
            # tasks carry the source to the worker processes
            try:
                pickle.dumps(random_bytes)
            except (pickle.PicklingError, AttributeError, TypeError) as e:
                raise ConfigurationError(f"random_bytes must be picklable for the process executor: {e}") from None

        self.bits = bits
        self.count = count
        self.witnesses = witnesses
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.executor = executor
        self.random_bytes = random_bytes
        self.max_rounds = max_rounds
        self.force_top_bit = force_top_bit

        self.found = 0
        self.rounds = 0
        self._sync = threading.Lock()
        self._results = []
        self._pending = []
        self._emit = None
        self._emit_error = None

    @classmethod
    def from_config(cls, bits, count, config, **overrides):
        options = {
            'witnesses': config.get('witnesses', DEFAULT_WITNESSES),
            'batch_size': config.get('batch_size') or DEFAULT_BATCH_SIZE,
            'max_workers': config.get('max_workers'),
            'executor': config.get('executor', 'process'),
            'max_rounds': config.get('max_rounds'),
            'force_top_bit': config.get('force_top_bit', False),
        }
        options.update(overrides)
        return cls(bits, count, **options)

    @property
    def num_bytes(self):
        return self.bits // 8

    @property
    def done(self):
        with self._sync:
            return self.found >= self.count

    def generate(self, emit=None):
        """
        Run the search and return the results in sequence order.

        ``emit`` is called with each Result the moment it is reserved, while
        the reservation lock is still held.
        """
        with self._sync:
            self.found = 0
            self._results = []
            self._emit = emit
            self._emit_error = None
        self.rounds = 0

        start = time.perf_counter()
        pool_class = EXECUTORS[self.executor]
        with pool_class(max_workers=self.max_workers) as pool:
            while not self.done:
                if self.max_rounds is not None and self.rounds >= self.max_rounds:
                    raise SearchExhaustedError(
                        f"found {self.found} of {self.count} primes in {self.rounds} rounds")
                self._run_round(pool)
                if self._emit_error is not None:
                    raise self._emit_error

        elapsed = time.perf_counter() - start
        logging.info(f"found {self.count} {self.bits}-bit primes in {self.rounds} round(s), "
                     f"elapsed: {elapsed:.3f}s")
        with self._sync:
            return list(self._results)

    def _run_round(self, pool):
        self.rounds += 1
        futures = [pool.submit(evaluate_candidate, self.num_bytes, self.witnesses,
                               self.random_bytes, self.force_top_bit)
                   for _ in range(self.batch_size)]
        with self._sync:
            self._pending = futures
        for future in futures:
            future.add_done_callback(self._collect)
        wait(futures)

        attempted = [f for f in futures if not f.cancelled()]
        failed = [f for f in attempted if f.exception() is not None]
        if attempted and len(failed) == len(attempted):
            raise RandomSourceError(
                f"all {len(attempted)} candidates in round {self.rounds} failed") from failed[0].exception()

        logging.debug(f"round {self.rounds}: attempted {len(attempted)}, failed {len(failed)}, "
                      f"found {self.found}/{self.count}")

    def _collect(self, future):
        if future.cancelled():
            return
        exception = future.exception()
        if exception is not None:
            logging.warning(f"candidate generation failed: {exception!r}")
            return
        candidate = future.result()
        if candidate is not None:
            self.reserve(candidate)

    def reserve(self, candidate):
        """Claim the next sequence number for ``candidate`` and emit it.

        Returns the Result, or None when the quota is already filled.
        """
        with self._sync:
            if self.found >= self.count or self._emit_error is not None:
                self._stop_round()
                return None

            self.found += 1
            result = Result(self.found, candidate)
            self._results.append(result)
            logging.debug(f"reserved #{result.sequence}")
            if self._emit is not None:
                try:
                    self._emit(result)
                except Exception as e:
                    self._emit_error = e
                    self._stop_round()
                    return result

            if self.found >= self.count:
                self._stop_round()
            return result

    def _stop_round(self):
        # cancelled futures run _collect, which returns before taking the lock
        for future in self._pending:
            future.cancel()

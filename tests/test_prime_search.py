import itertools
import os
import threading

import pytest

from bignum import is_probably_prime
from prime_search import (
    ConfigurationError,
    PrimeSearchEngine,
    RandomSourceError,
    Result,
    SearchExhaustedError,
    evaluate_candidate,
)


def zero_bytes(n):
    return bytes(n)


def broken_source(n):
    raise OSError("entropy source unavailable")


class FlakySource:
    """Fails every other call; the rest come from os.urandom."""

    def __init__(self):
        self.calls = itertools.count()

    def __call__(self, n):
        if next(self.calls) % 2:
            raise OSError("transient failure")
        return os.urandom(n)


def thread_engine(bits, count, **kwargs):
    kwargs.setdefault('batch_size', 256)
    kwargs.setdefault('max_workers', 8)
    return PrimeSearchEngine(bits, count, executor='thread', **kwargs)


def assert_complete(results, bits, count):
    assert [r.sequence for r in results] == list(range(1, count + 1))
    for r in results:
        assert 0 <= r.value < 2 ** bits
        assert is_probably_prime(r.value)


@pytest.mark.parametrize('bits, count', [(7, 1), (0, 1), (32, 0), (32, -1)])
def test_rejects_invalid_configuration(bits, count):
    with pytest.raises(ConfigurationError):
        PrimeSearchEngine(bits, count)


def test_rejects_unknown_executor_and_batch_size():
    with pytest.raises(ConfigurationError):
        PrimeSearchEngine(32, 1, executor='fiber')
    with pytest.raises(ConfigurationError):
        PrimeSearchEngine(32, 1, batch_size=0)


def test_evaluate_candidate():
    # 0xfffffffb is the largest 32-bit prime
    assert evaluate_candidate(4, 10, lambda n: b'\xff\xff\xff\xfb') == 0xfffffffb
    assert evaluate_candidate(4, 10, lambda n: b'\xff\xff\xff\xfc') is None


def test_evaluate_candidate_force_top_bit():
    assert evaluate_candidate(4, 10, lambda n: b'\x7f\xff\xff\xfb', force_top_bit=True) == 0xfffffffb


def test_single_prime():
    results = thread_engine(32, 1).generate()
    assert len(results) == 1
    assert_complete(results, 32, 1)


def test_emits_in_sequence_order():
    emitted = []
    results = thread_engine(32, 5).generate(emit=emitted.append)
    assert emitted == results
    assert_complete(results, 32, 5)


@pytest.mark.parametrize('attempt', range(5))
def test_sequencing_under_stress(attempt):
    emitted = []
    engine = thread_engine(32, 40, batch_size=512, max_workers=32)
    results = engine.generate(emit=emitted.append)
    assert len(emitted) == 40
    assert len({r.sequence for r in emitted}) == 40
    assert emitted == results
    assert engine.found == 40
    assert_complete(results, 32, 40)


def test_small_batches_need_several_rounds():
    engine = thread_engine(32, 3, batch_size=4, max_workers=2)
    results = engine.generate()
    assert_complete(results, 32, 3)
    assert engine.rounds > 1


def test_force_top_bit_gives_exact_bit_length():
    results = thread_engine(64, 3, force_top_bit=True).generate()
    assert all(r.value.bit_length() == 64 for r in results)


def test_large_prime():
    results = thread_engine(512, 1, batch_size=64, max_workers=4).generate()
    assert_complete(results, 512, 1)
    assert is_probably_prime(results[0].value, 10)


def test_process_pool():
    emitted = []
    engine = PrimeSearchEngine(32, 3, batch_size=512, max_workers=2, executor='process')
    results = engine.generate(emit=emitted.append)
    assert emitted == results
    assert_complete(results, 32, 3)


def test_transient_random_failures_are_tolerated():
    results = thread_engine(32, 5, random_bytes=FlakySource()).generate()
    assert_complete(results, 32, 5)


def test_persistent_random_failure_aborts():
    engine = thread_engine(32, 1, batch_size=16, random_bytes=broken_source)
    with pytest.raises(RandomSourceError) as excinfo:
        engine.generate()
    assert isinstance(excinfo.value.__cause__, OSError)
    assert engine.found == 0


def test_round_cap_exhausts_search():
    engine = thread_engine(32, 1, batch_size=16, random_bytes=zero_bytes, max_rounds=3)
    with pytest.raises(SearchExhaustedError):
        engine.generate()
    assert engine.rounds == 3
    assert engine.found == 0


def test_emit_failure_is_raised():
    def emit(result):
        raise BrokenPipeError

    engine = thread_engine(32, 5)
    with pytest.raises(BrokenPipeError):
        engine.generate(emit=emit)
    assert engine.found == 1


def test_reserve_never_exceeds_count():
    engine = PrimeSearchEngine(32, 3)
    emitted = []
    engine._emit = emitted.append
    results = [engine.reserve(value) for value in (5, 7, 11, 13, 17)]
    assert results[:3] == [Result(1, 5), Result(2, 7), Result(3, 11)]
    assert results[3:] == [None, None]
    assert emitted == results[:3]
    assert engine.found == 3


def test_concurrent_reservations():
    engine = PrimeSearchEngine(32, 100)
    emitted = []
    engine._emit = emitted.append
    barrier = threading.Barrier(16)

    def reserve_many(offset):
        barrier.wait()
        for i in range(20):
            engine.reserve(offset * 1000 + i)

    threads = [threading.Thread(target=reserve_many, args=(t,)) for t in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r.sequence for r in emitted] == list(range(1, 101))
    assert engine.found == 100


def test_independent_engines_run_side_by_side():
    outputs = {}

    def run(name, count):
        outputs[name] = thread_engine(32, count, max_workers=4).generate()

    threads = [threading.Thread(target=run, args=(name, count)) for name, count in (('a', 3), ('b', 7))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert_complete(outputs['a'], 32, 3)
    assert_complete(outputs['b'], 32, 7)


def test_from_config_with_overrides():
    config = {'witnesses': 20, 'batch_size': None, 'executor': 'thread', 'max_rounds': 5}
    engine = PrimeSearchEngine.from_config(48, 2, config, max_workers=3)
    assert engine.witnesses == 20
    assert engine.batch_size == 4096
    assert engine.executor == 'thread'
    assert engine.max_rounds == 5
    assert engine.max_workers == 3
    assert engine.num_bytes == 6


def test_process_executor_needs_picklable_source():
    with pytest.raises(ConfigurationError):
        PrimeSearchEngine(32, 1, executor='process', random_bytes=lambda n: bytes(n))
    # threads share the callable directly
    PrimeSearchEngine(32, 1, executor='thread', random_bytes=lambda n: bytes(n))
    PrimeSearchEngine(32, 1, executor='process', random_bytes=zero_bytes)

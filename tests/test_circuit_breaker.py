import time
from concurrent.futures import ThreadPoolExecutor

from cadbatch.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


def test_default_config():
    config = CircuitBreakerConfig()
    assert config.failure_threshold == 5
    assert config.success_threshold == 2
    assert config.timeout == 30.0
    assert config.max_probes_in_half_open == 3


def test_circuit_breaker_cycle():
    cb = CircuitBreaker(CircuitBreakerConfig(3, 2, 0.1, 3))
    assert cb.state() is CircuitState.CLOSED
    assert cb.allow_request()

    for _ in range(3):
        cb.record_failure()
    assert cb.state() is CircuitState.OPEN
    assert not cb.allow_request()

    time.sleep(0.15)
    assert cb.allow_request()
    assert cb.state() is CircuitState.HALF_OPEN

    cb.record_success()
    cb.record_success()
    assert cb.state() is CircuitState.CLOSED


def test_half_open_probe_limit():
    cb = CircuitBreaker(CircuitBreakerConfig(2, 2, 0.05, 2))
    cb.record_failure()
    cb.record_failure()
    assert cb.state() is CircuitState.OPEN

    time.sleep(0.1)
    assert cb.allow_request()
    assert cb.state() is CircuitState.HALF_OPEN
    assert cb.allow_request()
    assert not cb.allow_request()

    cb.record_failure()
    assert cb.state() is CircuitState.OPEN


def test_threshold_of_one():
    cb = CircuitBreaker(CircuitBreakerConfig(1, 1, 0.05, 1))
    assert cb.state() is CircuitState.CLOSED
    cb.record_failure()
    assert cb.state() is CircuitState.OPEN
    time.sleep(0.1)
    assert cb.allow_request()
    assert cb.state() is CircuitState.HALF_OPEN
    cb.record_success()
    assert cb.state() is CircuitState.CLOSED


def test_concurrent_failures_open():
    cb = CircuitBreaker(CircuitBreakerConfig(10, 2, 0.1, 3))
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: cb.record_failure(), range(50)))
    assert cb.state() is CircuitState.OPEN


def test_concurrent_requests_probe_budget():
    cb = CircuitBreaker(CircuitBreakerConfig(5, 2, 0.1, 3))
    for _ in range(5):
        cb.record_failure()
    assert cb.state() is CircuitState.OPEN
    time.sleep(0.15)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: cb.allow_request(), range(20)))
    assert results.count(True) == 3
    assert results.count(False) == 17


def test_basic_failure_below_threshold():
    cb = CircuitBreaker(CircuitBreakerConfig(3, 2, 0.1, 3))
    assert cb.allow_request()
    cb.record_failure()
    assert cb.state() is CircuitState.CLOSED
    assert cb.failure_count() == 1


def test_success_resets_failure_count():
    cb = CircuitBreaker(CircuitBreakerConfig(3, 2, 0.1, 3))
    cb.record_failure()
    cb.record_failure()
    cb.record_success()
    assert cb.failure_count() == 0
    cb.record_failure()
    cb.record_failure()
    assert cb.state() is CircuitState.CLOSED


def test_open_rejects_before_timeout():
    cb = CircuitBreaker(CircuitBreakerConfig(1, 1, 60.0, 1))
    cb.record_failure()
    assert not cb.allow_request()
    assert cb.state() is CircuitState.OPEN
import asyncio

import pytest

from raibid.modules.infra.errors import FatalError, HealthCheckError, InfraTimeoutError
from raibid.modules.infra.retry import CancelToken, RetryConfig, poll_until, retry, retry_async

NO_DELAY = RetryConfig(max_attempts=4, initial_delay=0, max_delay=0, use_jitter=False)


class Flaky:
    def __init__(self, failures, fatal=False):
        self.failures = failures
        self.fatal = fatal
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            err = HealthCheckError('redis', f"attempt {self.calls} failed")
            raise err.fatal() if self.fatal else err.transient()
        return 'ok'


def test_always_transient_uses_every_attempt():
    fn = Flaky(failures=100)
    with pytest.raises(FatalError) as exc:
        retry(NO_DELAY, 'ping', fn)
    assert fn.calls == 4
    assert exc.value.attempts == 4
    assert exc.value.reason == 'attempt 4 failed'


def test_fatal_is_not_retried():
    fn = Flaky(failures=1, fatal=True)
    with pytest.raises(FatalError):
        retry(NO_DELAY, 'ping', fn)
    assert fn.calls == 1


def test_succeeds_after_transient_failures():
    fn = Flaky(failures=2)
    assert retry(NO_DELAY, 'ping', fn) == 'ok'
    assert fn.calls == 3


def test_unclassified_error_is_fatal():
    calls = []

    def fn():
        calls.append(1)
        raise HealthCheckError('redis', 'unclassified')

    with pytest.raises(FatalError):
        retry(NO_DELAY, 'ping', fn)
    assert len(calls) == 1


def test_cancelled_before_first_attempt():
    token = CancelToken()
    token.cancel()
    fn = Flaky(failures=0)
    with pytest.raises(FatalError) as exc:
        retry(NO_DELAY, 'ping', fn, cancel=token, component='redis')
    assert fn.calls == 0
    assert exc.value.reason == 'cancelled'


def test_delay_grows_and_is_capped():
    config = RetryConfig(max_attempts=6, initial_delay=1.0, max_delay=5.0, backoff_multiplier=2.0, use_jitter=False)
    assert [config.delay_for_attempt(n) for n in range(1, 6)] == [0.0, 1.0, 2.0, 4.0, 5.0]


def test_jitter_stays_within_bounds():
    config = RetryConfig(initial_delay=2.0, use_jitter=True)
    for _ in range(50):
        assert 1.0 <= config.delay_for_attempt(2) <= 3.0


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0)


def test_retry_async():
    state = {'calls': 0}

    async def fn():
        state['calls'] += 1
        if state['calls'] < 3:
            raise HealthCheckError('keda', 'not yet').transient()
        return state['calls']

    assert asyncio.run(retry_async(NO_DELAY, 'wait', fn)) == 3


def test_poll_until_times_out():
    with pytest.raises(FatalError) as exc:
        poll_until('k3s', 'kubeconfig', lambda: False, timeout=0.03, interval=0.02)
    assert isinstance(exc.value.root, InfraTimeoutError)


def test_poll_until_treats_transient_as_not_yet():
    results = iter([HealthCheckError('k3s', 'x').transient(), False, True])

    def condition():
        value = next(results)
        if isinstance(value, Exception):
            raise value
        return value

    poll_until('k3s', 'node ready', condition, timeout=5, interval=0.01)

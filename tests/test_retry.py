"""
Tests for the bounded retry combinator.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest

from frontdoor.errors import RecoverableInfrastructureError
from frontdoor.retry import backoff_delay, with_retry


class Flaky:
    def __init__(self, failures: int, exc: Exception = ConnectionError("down")) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestWithRetry:
    def test_success_first_try(self):
        fn = Flaky(0)
        assert with_retry(fn, sleep=lambda _s: None) == "ok"
        assert fn.calls == 1

    def test_recovers_after_failures(self):
        fn = Flaky(2)
        sleeps = []
        assert with_retry(fn, max_attempts=3, base_delay=1.0, sleep=sleeps.append) == "ok"
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_exhaustion_wraps_last_error(self):
        fn = Flaky(10)
        with pytest.raises(RecoverableInfrastructureError) as excinfo:
            with_retry(fn, max_attempts=3, sleep=lambda _s: None, description="health check")
        assert fn.calls == 3
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert "health check" in str(excinfo.value)

    def test_non_matching_exception_propagates(self):
        fn = Flaky(1, exc=KeyError("x"))
        with pytest.raises(KeyError):
            with_retry(fn, retry_on=(ConnectionError,), sleep=lambda _s: None)
        assert fn.calls == 1

    def test_should_retry_false_propagates_unchanged(self):
        fn = Flaky(1, exc=ValueError("permanent"))
        with pytest.raises(ValueError, match="permanent"):
            with_retry(fn, should_retry=lambda exc: False, sleep=lambda _s: None)
        assert fn.calls == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            with_retry(Flaky(0), max_attempts=0)

    def test_delays_grow_and_cap(self):
        sleeps = []
        with patch("frontdoor.retry.random.random", return_value=1.0):
            with pytest.raises(RecoverableInfrastructureError):
                with_retry(Flaky(10), max_attempts=5, base_delay=1.0, max_delay=3.0, sleep=sleeps.append)
        assert sleeps == [1.0, 2.0, 3.0, 3.0]


class TestBackoffDelay:
    def test_without_jitter(self):
        assert [backoff_delay(n, 0.5, 100, jitter=False) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 2.0 <= backoff_delay(2, 2.0, 100) <= 4.0

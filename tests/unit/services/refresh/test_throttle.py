"""Unit tests for RefreshThrottle."""

from unittest.mock import Mock, patch

import pytest
from pydantic import ValidationError

from portsync.services.refresh import RefreshThrottle, RefreshThrottleConfig


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def throttle(clock) -> RefreshThrottle:
    return RefreshThrottle(RefreshThrottleConfig(), clock=clock)


class TestRefreshThrottleConfig:
    """Settings validation."""

    def test_defaults(self):
        config = RefreshThrottleConfig()

        assert config.min_interval_seconds == 15.0
        assert config.rate_limit_backoff_seconds == 60.0
        assert config.max_queue_size == 3

    def test_negative_interval_rejected(self):
        with pytest.raises(ValidationError):
            RefreshThrottleConfig(min_interval_seconds=-1)

    def test_empty_queue_rejected(self):
        with pytest.raises(ValidationError):
            RefreshThrottleConfig(max_queue_size=0)


class TestTriggerRefresh:
    """Immediate runs and deferral."""

    def test_first_refresh_runs(self, throttle):
        fetch = Mock()

        assert throttle.trigger_refresh(fetch) is True
        fetch.assert_called_once()

    def test_refresh_within_interval_is_queued(self, throttle, clock):
        fetch = Mock()
        throttle.trigger_refresh(fetch)
        clock.advance(5)

        assert throttle.trigger_refresh(fetch) is False
        assert fetch.call_count == 1
        assert throttle.queue_length == 1

    def test_refresh_after_interval_runs_and_drains_queue(self, throttle, clock):
        first, parked = Mock(), Mock()
        throttle.trigger_refresh(first)
        clock.advance(1)
        throttle.trigger_refresh(parked)

        clock.advance(15)
        assert throttle.trigger_refresh(first) is True

        assert first.call_count == 2
        parked.assert_not_called()  # Interval restarted by the refresh that just ran
        assert throttle.queue_length == 1

    def test_failing_refresh_is_contained(self, throttle):
        fetch = Mock(side_effect=RuntimeError("feed down"))

        assert throttle.trigger_refresh(fetch) is True
        assert throttle.is_processing is False
        assert throttle.get_status()["last_refresh"] == 1000.0

    def test_processing_flag_set_while_running(self, throttle):
        observed = []
        throttle.trigger_refresh(lambda: observed.append(throttle.is_processing))

        assert observed == [True]
        assert throttle.is_processing is False


class TestQueue:
    """Parked requests."""

    def test_same_function_not_queued_twice(self, throttle, clock):
        fetch = Mock()
        throttle.trigger_refresh(Mock())

        throttle.queue_refresh(fetch)
        throttle.queue_refresh(fetch)

        assert throttle.queue_length == 1

    def test_full_queue_drops_oldest(self, throttle):
        functions = [Mock(name=f"fetch_{i}") for i in range(4)]
        for function in functions:
            throttle.queue_refresh(function)

        assert throttle.queue_length == 3

        # The first queued request was dropped
        throttle.process_queue()
        functions[0].assert_not_called()
        functions[1].assert_called_once()

    def test_process_queue_respects_interval(self, throttle, clock):
        a, b = Mock(), Mock()
        throttle.queue_refresh(a)
        throttle.queue_refresh(b)

        assert throttle.process_queue() == 1
        a.assert_called_once()
        b.assert_not_called()

        clock.advance(15)
        assert throttle.process_queue() == 1
        b.assert_called_once()
        assert throttle.queue_length == 0

    def test_process_empty_queue(self, throttle):
        assert throttle.process_queue() == 0

    def test_zero_interval_drains_everything(self, clock):
        throttle = RefreshThrottle(RefreshThrottleConfig(min_interval_seconds=0), clock=clock)
        functions = [Mock(), Mock(), Mock()]
        for function in functions:
            throttle.queue_refresh(function)

        assert throttle.process_queue() == 3
        assert all(f.call_count == 1 for f in functions)


class TestRateLimit:
    """Backoff after the feed reports a rate limit."""

    def test_rate_limit_extends_backoff(self, throttle, clock):
        throttle.mark_rate_limit_hit()

        clock.advance(30)
        assert throttle.can_refresh() is False

        clock.advance(30)
        assert throttle.can_refresh() is True

    def test_reset_rate_limit_restores_normal_interval(self, throttle, clock):
        throttle.mark_rate_limit_hit()
        throttle.reset_rate_limit()

        clock.advance(15)

        assert throttle.rate_limited is False
        assert throttle.can_refresh() is True

    def test_rate_limit_logged(self, throttle):
        with patch("portsync.services.refresh.throttle.logger") as mock_logger:
            throttle.mark_rate_limit_hit()

        mock_logger.warning.assert_called_once_with("refresh.rate_limited", backoff_seconds=60.0)


class TestForceAndReset:
    """Bypassing and clearing the throttle."""

    def test_force_refresh_ignores_interval(self, throttle):
        fetch = Mock()
        throttle.trigger_refresh(fetch)

        throttle.force_refresh(fetch)

        assert fetch.call_count == 2

    def test_force_refresh_contains_errors(self, throttle):
        throttle.force_refresh(Mock(side_effect=ValueError("bad payload")))
        assert throttle.is_processing is False

    def test_reset(self, throttle):
        throttle.trigger_refresh(Mock())
        throttle.queue_refresh(Mock())

        throttle.reset()

        assert throttle.queue_length == 0
        assert throttle.can_refresh() is True

    def test_status(self, throttle, clock):
        throttle.trigger_refresh(Mock())
        throttle.queue_refresh(Mock())

        assert throttle.get_status() == {
            "last_refresh": 1000.0,
            "can_refresh": False,
            "queue_length": 1,
            "is_processing": False,
            "rate_limited": False,
        }

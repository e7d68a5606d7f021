"""Refresh throttle for price and exchange-rate polling.

Sits at the integration boundary: the host calls ``trigger_refresh`` with
the function that fetches prices and hands them to the state manager. The
throttle enforces a minimum interval between refreshes, backs off harder
after the feed reports a rate limit, and parks a few requests that arrived
too early.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from portsync.system import LoggerFactory

logger = LoggerFactory.get_logger()

RefreshFunction = Callable[[], Any]


class RefreshThrottleConfig(BaseModel):
    """
    Throttle settings.

    Attributes:
        min_interval_seconds: Minimum time between two refreshes
        rate_limit_backoff_seconds: Minimum time after a rate-limit hit
        max_queue_size: Parked requests kept; the oldest is dropped when full
    """

    min_interval_seconds: float = 15.0
    rate_limit_backoff_seconds: float = 60.0
    max_queue_size: int = 3

    @field_validator("min_interval_seconds", "rate_limit_backoff_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Interval cannot be negative, got {v}")
        return v

    @field_validator("max_queue_size")
    @classmethod
    def validate_queue_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_queue_size must be at least 1, got {v}")
        return v

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class QueuedRefresh:
    """A parked refresh request."""

    function: RefreshFunction
    queued_at: float


class RefreshThrottle:
    """
    Debounces refresh requests.

    Refresh functions are called synchronously; their exceptions are logged
    and never propagate to the caller.

    Example:
        >>> throttle = RefreshThrottle()
        >>> throttle.trigger_refresh(fetch_prices)  # runs now
        True
        >>> throttle.trigger_refresh(fetch_prices)  # too soon, parked
        False
    """

    def __init__(
        self,
        config: RefreshThrottleConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or RefreshThrottleConfig()
        self._clock = clock or time.monotonic
        self._last_refresh: float | None = None
        self._rate_limited = False
        self._processing = False
        self._queue: deque[QueuedRefresh] = deque()

    @property
    def config(self) -> RefreshThrottleConfig:
        return self._config

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def rate_limited(self) -> bool:
        return self._rate_limited

    def can_refresh(self) -> bool:
        """True when enough time has passed since the last refresh."""
        if self._last_refresh is None:
            return True
        elapsed = self._clock() - self._last_refresh
        if self._rate_limited:
            return elapsed >= self._config.rate_limit_backoff_seconds
        return elapsed >= self._config.min_interval_seconds

    def mark_rate_limit_hit(self) -> None:
        """Switch to the longer backoff, counted from now."""
        self._rate_limited = True
        self._last_refresh = self._clock()
        logger.warning("refresh.rate_limited", backoff_seconds=self._config.rate_limit_backoff_seconds)

    def reset_rate_limit(self) -> None:
        self._rate_limited = False

    def trigger_refresh(self, function: RefreshFunction) -> bool:
        """
        Run ``function`` now if allowed, otherwise park it.

        Returns:
            True if the function ran, False if it was queued
        """
        if not self.can_refresh():
            logger.debug("refresh.deferred", queue_length=len(self._queue))
            self.queue_refresh(function)
            return False

        self._run(function, "refresh.failed")
        self.process_queue()
        return True

    def queue_refresh(self, function: RefreshFunction) -> None:
        """Park a request; a function already parked is not queued twice."""
        if any(item.function is function for item in self._queue):
            return
        if len(self._queue) >= self._config.max_queue_size:
            dropped = self._queue.popleft()
            logger.debug("refresh.queue_full", dropped_queued_at=dropped.queued_at)
        self._queue.append(QueuedRefresh(function=function, queued_at=self._clock()))

    def process_queue(self) -> int:
        """
        Run parked requests while the interval allows.

        Returns:
            Number of requests that ran
        """
        if self._processing or not self._queue:
            return 0

        ran = 0
        while self._queue and self.can_refresh():
            item = self._queue.popleft()
            self._run(item.function, "refresh.queued_failed")
            ran += 1
        return ran

    def force_refresh(self, function: RefreshFunction) -> None:
        """Run ``function`` immediately, ignoring the interval."""
        self._run(function, "refresh.forced_failed")
        self.process_queue()

    def reset(self) -> None:
        """Forget the last refresh and drop parked requests."""
        self._last_refresh = None
        self._processing = False
        self._queue.clear()

    def get_status(self) -> dict[str, Any]:
        return {
            "last_refresh": self._last_refresh,
            "can_refresh": self.can_refresh(),
            "queue_length": len(self._queue),
            "is_processing": self._processing,
            "rate_limited": self._rate_limited,
        }

    def _run(self, function: RefreshFunction, error_event: str) -> None:
        self._last_refresh = self._clock()
        self._processing = True
        try:
            function()
        except Exception as e:
            logger.error(error_event, error=str(e), exc_info=True)
        finally:
            self._processing = False

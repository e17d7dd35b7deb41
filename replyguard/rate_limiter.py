"""
Rate limiting for replyguard.

Fixed-cadence hourly and daily counters per (owner, operation), persisted in
the guardrail store so every worker shares the same view.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Callable, Optional

from replyguard import config
from replyguard.models import WindowCounter, WindowKind
from replyguard.storage import CounterReadFailure, GuardrailStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    """Usage of one operation against its hourly and daily ceilings."""
    operation: str
    allowed: bool
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int
    hourly_reset_at: datetime
    daily_reset_at: datetime
    message: Optional[str] = None

    @property
    def hourly_limit_reached(self) -> bool:
        return self.hourly_count >= self.hourly_limit

    @property
    def daily_limit_reached(self) -> bool:
        return self.daily_count >= self.daily_limit

    @property
    def reset_times(self) -> dict[str, datetime]:
        return {"hourly": self.hourly_reset_at, "daily": self.daily_reset_at}

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "allowed": self.allowed,
            "hourly_count": self.hourly_count,
            "daily_count": self.daily_count,
            "hourly_limit": self.hourly_limit,
            "daily_limit": self.daily_limit,
            "hourly_limit_reached": self.hourly_limit_reached,
            "daily_limit_reached": self.daily_limit_reached,
            "reset_times": {k: v.isoformat() for k, v in self.reset_times.items()},
            "message": self.message,
        }


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def _time_until(reset_at: datetime, now: datetime) -> str:
    minutes = max(1, math.ceil((reset_at - now).total_seconds() / 60))
    if minutes > 60:
        return _plural(math.ceil(minutes / 60), "hour")
    return _plural(minutes, "minute")


class RateLimiter:
    """
    Persistent hourly/daily rate limiter.

    `check` is read-only and fails open: a counter that cannot be read counts
    as zero usage. `increment` and `acquire` go through the store's atomic
    read-modify-write, so concurrent callers never lose or duplicate updates.

    Example:
        ```python
        limiter = RateLimiter(store)
        status = limiter.acquire("owner_1", "auto_response")
        if not status.allowed:
            print(status.message)
        ```
    """

    def __init__(
        self,
        store: GuardrailStore,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            store: Guardrail store holding the window counters
            notifier: Optional object with notify_owner(owner_id, title, body, data)
                used for the one-shot 80% warning
            clock: Returns the current UTC time. Defaults to datetime.now(UTC).
        """
        self.store = store
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(UTC))

    def _limits_for(self, operation: str) -> dict[str, int]:
        limits = config.get_rate_limits()
        if operation not in limits:
            raise ValueError(f"Unknown operation: {operation}. Known: {sorted(limits)}")
        return limits[operation]

    def _current_count(self, owner_id: str, operation: str, kind: WindowKind, now: datetime) -> int:
        try:
            counter = self.store.get_window(owner_id, operation, kind)
        except CounterReadFailure as e:
            logger.warning(
                "Rate limit read failed for owner=%s operation=%s window=%s, allowing: %s",
                owner_id, operation, kind.value, e,
            )
            return 0
        if counter is None or counter.window_start != kind.window_start(now):
            return 0
        return counter.count

    def _status(
        self,
        operation: str,
        hourly_count: int,
        daily_count: int,
        limits: dict[str, int],
        now: datetime,
        allowed: Optional[bool] = None,
    ) -> RateLimitStatus:
        status = RateLimitStatus(
            operation=operation,
            allowed=True,
            hourly_count=hourly_count,
            daily_count=daily_count,
            hourly_limit=limits["per_hour"],
            daily_limit=limits["per_day"],
            hourly_reset_at=WindowKind.HOURLY.next_reset(now),
            daily_reset_at=WindowKind.DAILY.next_reset(now),
        )
        if status.hourly_limit_reached:
            status.allowed = False
            status.message = (
                f"You've reached your hourly limit for this operation "
                f"({status.hourly_limit} requests/hour). "
                f"Please try again in {_time_until(status.hourly_reset_at, now)}."
            )
        elif status.daily_limit_reached:
            status.allowed = False
            status.message = (
                f"You've reached your daily limit for this operation "
                f"({status.daily_limit} requests/day). "
                f"Please try again in {_time_until(status.daily_reset_at, now)}."
            )
        if allowed is not None:
            status.allowed = allowed
            if allowed:
                status.message = None
        return status

    def check(self, owner_id: str, operation: str) -> RateLimitStatus:
        """
        Report current usage without changing it.

        Args:
            owner_id: Owner identifier
            operation: Operation kind (key of the rate limit table)

        Returns:
            RateLimitStatus with allowed=False if either window is full
        """
        limits = self._limits_for(operation)
        now = self._clock()
        hourly = self._current_count(owner_id, operation, WindowKind.HOURLY, now)
        daily = self._current_count(owner_id, operation, WindowKind.DAILY, now)
        return self._status(operation, hourly, daily, limits, now)

    def increment(self, owner_id: str, operation: str) -> None:
        """Count one use in both windows, resetting any window that has rolled over."""
        limits = self._limits_for(operation)
        now = self._clock()
        counters = [
            self.store.increment_window(owner_id, operation, kind, kind.window_start(now))
            for kind in (WindowKind.HOURLY, WindowKind.DAILY)
        ]
        self._maybe_warn(owner_id, operation, counters, limits, now)

    def acquire(self, owner_id: str, operation: str) -> RateLimitStatus:
        """
        Atomically check both windows and count one use if neither is full.

        Two concurrent callers can never both take the last slot. A store
        failure fails open.
        """
        limits = self._limits_for(operation)
        now = self._clock()
        plan = {
            WindowKind.HOURLY: (WindowKind.HOURLY.window_start(now), limits["per_hour"]),
            WindowKind.DAILY: (WindowKind.DAILY.window_start(now), limits["per_day"]),
        }
        try:
            acquired, counters = self.store.try_increment_windows(owner_id, operation, plan)
        except CounterReadFailure as e:
            logger.warning(
                "Rate limit store failed for owner=%s operation=%s, allowing: %s",
                owner_id, operation, e,
            )
            return self._status(operation, 0, 0, limits, now, allowed=True)

        hourly = counters[WindowKind.HOURLY].count
        daily = counters[WindowKind.DAILY].count
        if not acquired:
            logger.info(
                "Rate limit reached for owner=%s operation=%s (hourly=%d/%d daily=%d/%d)",
                owner_id, operation, hourly, limits["per_hour"], daily, limits["per_day"],
            )
            return self._status(operation, hourly, daily, limits, now, allowed=False)

        self._maybe_warn(owner_id, operation, list(counters.values()), limits, now)
        return self._status(operation, hourly, daily, limits, now, allowed=True)

    def reset(self, owner_id: str, operation: str) -> int:
        """Drop both windows for (owner, operation). Returns rows removed."""
        return self.store.delete_windows(owner_id, operation)

    def _maybe_warn(
        self,
        owner_id: str,
        operation: str,
        counters: list[WindowCounter],
        limits: dict[str, int],
        now: datetime,
    ) -> None:
        for counter in counters:
            limit = limits["per_hour"] if counter.window_kind is WindowKind.HOURLY else limits["per_day"]
            if counter.warning_sent or counter.count < limit * config.RATE_LIMIT_WARNING_RATIO:
                continue
            try:
                marked = self.store.mark_window_warning(
                    owner_id, operation, counter.window_kind, counter.window_start
                )
            except CounterReadFailure as e:
                logger.warning(
                    "Rate limit warning flag failed for owner=%s operation=%s window=%s: %s",
                    owner_id, operation, counter.window_kind.value, e,
                )
                continue
            if not marked:
                continue
            self._send_warning(owner_id, operation, counter, limit, now)

    def _send_warning(
        self,
        owner_id: str,
        operation: str,
        counter: WindowCounter,
        limit: int,
        now: datetime,
    ) -> None:
        percent = int(counter.count / limit * 100)
        reset_at = counter.window_kind.next_reset(now)
        window = counter.window_kind.value
        logger.warning(
            "Rate limit warning for owner=%s operation=%s: %d%% of %s limit",
            owner_id, operation, percent, window,
        )
        if self.notifier is None:
            return
        try:
            self.notifier.notify_owner(
                owner_id,
                "AI Usage Warning",
                f"You've used {percent}% of your {window} {operation.replace('_', ' ')} limit. "
                f"Limit resets in {_time_until(reset_at, now)}.",
                {
                    "type": "rate_limit_warning",
                    "operation": operation,
                    "window": window,
                    "percent": percent,
                    "reset_at": reset_at.isoformat(),
                },
            )
        except Exception as e:
            logger.error("Failed to send rate limit warning to owner=%s: %s", owner_id, e)

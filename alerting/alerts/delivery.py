"""
delivery.py — Delivery engine: retry policy, rate limiting, dispatch.

The dispatcher hands one Notification to the channel that matches its
delivery type and drives the attempt loop around it.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Channel lookup  │  unknown type → DeliveryError (terminal)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Enabled?        │  disabled → failed, terminal
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Validate        │  invalid → failed, terminal
    │                     │  (no rate-limit slot, no attempt used)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Attempt loop    │  capability → rate limit → deliver(timeout)
    │     1..max_attempts │  success / terminal error stops the loop
    │                     │  rate-limited stops the loop (retryable)
    │                     │  otherwise sleep delay_ms(attempt), retry
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RETRY DEFAULTS
═══════════════════════════════════════════════════════════════════════════

    Channel    Attempts   Base     Factor   Max delay   Jitter
    ───────    ────────   ──────   ──────   ─────────   ──────
    in_app     3          1.0s     2        60s         0.1
    email      5          5.0s     2        300s        0.2
    sms        3          10.0s    2        600s        0.3

Backoff formula:
    capped = min(base × factor^(attempt − 1), max_delay)
    delay  = capped + U[0, jitter_factor × capped)

    Example (base=1s, factor=2, max=30s):
        1s, 2s, 4s, 8s, 16s, 30s, 30s, ...
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Mapping,
    Optional,
    Union,
)

from alerting.alerts.models import DeliveryResult, DeliveryType, Notification, User
from alerting.core.errors import AlertingError, DeliveryError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from alerting.alerts.channels.base import DeliveryChannel
    from alerting.core.config import Settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Per-channel retry parameters (delays in milliseconds)."""
    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0
    max_delay_ms: float = 30000.0
    jitter_factor: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.jitter_factor < 0:
            raise ValueError("jitter_factor must be non-negative")

    def capped_delay_ms(self, attempt: int) -> float:
        """Exponential delay for a 1-based attempt, before jitter."""
        raw = self.base_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(raw, self.max_delay_ms)

    def delay_ms(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay to wait after failed ``attempt`` (1-based).

        Jitter is drawn from ``[0, jitter_factor * capped)`` so the
        total never drops below the capped delay.
        """
        capped = self.capped_delay_ms(attempt)
        draw = (rng or random).random()
        return capped + draw * self.jitter_factor * capped


@dataclass(frozen=True)
class RateLimitConfig:
    """At most ``max_requests`` per user within ``window_seconds``."""
    max_requests: int = 100
    window_seconds: float = 60.0


# ═══════════════════════════════════════════════════════════════════════════
# Rate Limiter
# ═══════════════════════════════════════════════════════════════════════════

class SlidingWindowRateLimiter:
    """
    Per-user sliding-window limiter.

    Each user key owns a deque of monotonic timestamps bounded by
    ``max_requests`` and guarded by its own lock, so concurrent workers
    delivering to different users never contend.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs: Any) -> "SlidingWindowRateLimiter":
        return cls(config.max_requests, config.window_seconds, **kwargs)

    def _slot(self, key: str):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._windows[key] = deque(maxlen=self.max_requests)
            return lock, self._windows[key]

    def _prune(self, window: Deque[float], now: float) -> None:
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    def allows(self, key: str) -> bool:
        """Would a request for ``key`` be permitted now? Records nothing."""
        lock, window = self._slot(key)
        with lock:
            self._prune(window, self._clock())
            return len(window) < self.max_requests

    def try_acquire(self, key: str) -> bool:
        """Check and record in one step. Returns False if the window is full."""
        lock, window = self._slot(key)
        with lock:
            now = self._clock()
            self._prune(window, now)
            if len(window) >= self.max_requests:
                return False
            window.append(now)
            return True

    def remaining(self, key: str) -> int:
        lock, window = self._slot(key)
        with lock:
            self._prune(window, self._clock())
            return self.max_requests - len(window)

    def cleanup(self) -> int:
        """Drop keys whose windows are empty. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        with self._registry_lock:
            for key in list(self._windows):
                with self._locks[key]:
                    self._prune(self._windows[key], now)
                    if not self._windows[key]:
                        del self._windows[key]
                        del self._locks[key]
                        dropped += 1
        return dropped


# ═══════════════════════════════════════════════════════════════════════════
# Error Classification
# ═══════════════════════════════════════════════════════════════════════════

_TERMINAL_PHRASES = (
    "validation failed",
    "user not active",
    "invalid email",
    "invalid phone number",
    "user not found",
)


def should_retry(error: Union[BaseException, str, None]) -> bool:
    """
    Is a failure worth another attempt?

    Terminal: validation failures, inactive or unknown users, malformed
    email addresses and phone numbers. Everything else is transient.
    """
    if isinstance(error, DeliveryError):
        return error.retryable
    if isinstance(error, (ValidationError, NotFoundError)):
        return False
    if error is None:
        return True
    message = error.message if isinstance(error, AlertingError) else str(error)
    lowered = message.lower()
    return not any(phrase in lowered for phrase in _TERMINAL_PHRASES)


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DispatchOutcome:
    """Final result of dispatching one notification."""
    result: DeliveryResult
    attempts: int
    should_retry: bool
    channel: Optional[DeliveryType] = None

    @property
    def success(self) -> bool:
        return self.result.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.result.to_dict(),
            "attempts": self.attempts,
            "should_retry": self.should_retry,
            "channel": self.channel.value if self.channel else None,
        }


SleepFn = Callable[[float], Awaitable[Any]]


class DeliveryDispatcher:
    """
    Routes notifications to channels and runs the retry loop.

    The channel registry is frozen at construction.
    """

    def __init__(
        self,
        channels: Mapping[DeliveryType, "DeliveryChannel"],
        *,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._channels = MappingProxyType(dict(channels))
        self._sleep = sleep
        self._rng = rng

    @property
    def channels(self) -> Mapping[DeliveryType, "DeliveryChannel"]:
        return self._channels

    def get_channel(self, delivery_type: DeliveryType) -> "DeliveryChannel":
        channel = self._channels.get(delivery_type)
        if channel is None:
            name = getattr(delivery_type, "value", delivery_type)
            raise DeliveryError(
                f"No delivery channel registered for type: {name}",
                channel=str(name),
                retryable=False,
            )
        return channel

    def cleanup_rate_limits(self) -> int:
        """Drop idle per-user rate-limit windows on every channel."""
        return sum(channel.rate_limiter.cleanup() for channel in self._channels.values())

    async def dispatch(self, notification: Notification, user: User) -> DispatchOutcome:
        """
        Deliver ``notification`` to ``user`` with validation, rate
        limiting, per-attempt timeout and exponential backoff.

        Raises
        ------
        DeliveryError
            If no channel is registered for the notification's type.
        """
        channel = self.get_channel(notification.delivery_type)
        ctype = channel.channel_type
        config = channel.get_configuration()
        log_extra = {"alert_id": notification.alert_id, "user_id": user.id,
                     "channel": ctype.value}

        if not config.enabled:
            logger.warning("Channel %s is disabled, dropping %s", ctype.value,
                           notification.id, extra=log_extra)
            return self._failed(notification, ctype, f"Channel {ctype.value} is disabled",
                                attempts=0, retry=False)

        validation = channel.validate_delivery(notification, user)
        for warning in validation.warnings:
            logger.debug("Delivery warning for %s: %s", user.id, warning, extra=log_extra)
        if not validation.is_valid:
            logger.warning("Validation failed for %s via %s: %s", user.id, ctype.value,
                           "; ".join(validation.errors), extra=log_extra)
            return self._failed(
                notification, ctype,
                "Validation failed: " + ", ".join(validation.errors),
                attempts=0, retry=False,
            )

        policy = config.retry_policy
        timeout_seconds = config.timeout_ms / 1000.0
        last: Optional[DeliveryResult] = None
        retryable = True

        for attempt in range(1, policy.max_attempts + 1):
            if not channel.supports_user(user):
                return self._failed(
                    notification, ctype,
                    f"User not active or missing contact details for {ctype.value}",
                    attempts=attempt - 1, retry=False,
                )
            if not channel.rate_limiter.try_acquire(user.id):
                logger.info("Rate limit reached for %s on %s", user.id, ctype.value,
                            extra=log_extra)
                return self._failed(notification, ctype,
                                    f"Rate limit exceeded for user {user.id}",
                                    attempts=attempt - 1, retry=True)

            started = time.perf_counter()
            try:
                last = await asyncio.wait_for(channel.deliver(notification, user),
                                              timeout=timeout_seconds)
            except asyncio.TimeoutError:
                last = DeliveryResult.failure(
                    f"Delivery timed out after {config.timeout_ms}ms",
                    notification_id=notification.id,
                )
                retryable = True
            except DeliveryError as exc:
                last = DeliveryResult.failure(exc.message, notification_id=notification.id)
                retryable = exc.retryable
            except Exception as exc:
                logger.error("Channel %s raised for %s: %s", ctype.value, user.id, exc,
                             extra=log_extra)
                last = DeliveryResult.failure(str(exc), notification_id=notification.id)
                retryable = should_retry(exc)
            else:
                if last.success:
                    logger.info(
                        "Delivered alert %s to %s via %s (attempt %d, %.1fms)",
                        notification.alert_id, user.id, ctype.value, attempt,
                        (time.perf_counter() - started) * 1000,
                        extra={**log_extra, "attempt": attempt,
                               "delivery_id": last.delivery_id},
                    )
                    return DispatchOutcome(last, attempt, False, ctype)
                retryable = should_retry(last.error_message)

            if not retryable:
                logger.warning("Terminal failure for %s via %s: %s", user.id, ctype.value,
                               last.error_message, extra={**log_extra, "attempt": attempt})
                return DispatchOutcome(last, attempt, False, ctype)

            if attempt < policy.max_attempts:
                delay_ms = policy.delay_ms(attempt, self._rng)
                logger.info(
                    "Retry %d/%d for %s via %s in %.1fs (%s)",
                    attempt, policy.max_attempts - 1, user.id, ctype.value,
                    delay_ms / 1000, last.error_message,
                    extra={**log_extra, "attempt": attempt},
                )
                await self._sleep(delay_ms / 1000)

        logger.warning("All %d attempts failed for %s via %s", policy.max_attempts,
                       user.id, ctype.value, extra=log_extra)
        return DispatchOutcome(last, policy.max_attempts, retryable, ctype)

    @staticmethod
    def _failed(notification: Notification, ctype: DeliveryType, message: str, *,
                attempts: int, retry: bool) -> DispatchOutcome:
        result = DeliveryResult.failure(message, notification_id=notification.id)
        return DispatchOutcome(result, attempts, retry, ctype)


# ═══════════════════════════════════════════════════════════════════════════
# Default Registry
# ═══════════════════════════════════════════════════════════════════════════

def build_default_channels(settings: Optional["Settings"] = None) -> Dict[DeliveryType, "DeliveryChannel"]:
    """Instantiate the in-app, email and SMS channels from settings."""
    from alerting.alerts.channels import EmailChannel, InAppChannel, SmsChannel
    from alerting.core.config import get_settings

    settings = settings or get_settings()
    channels = (
        InAppChannel.from_settings(settings),
        EmailChannel.from_settings(settings),
        SmsChannel.from_settings(settings),
    )
    return {channel.channel_type: channel for channel in channels}

"""
test_delivery.py — Tests for the delivery engine.

Covers:
    • RetryPolicy backoff (exponential, capped, jittered)
    • SlidingWindowRateLimiter (per-user windows, expiry, cleanup)
    • should_retry error classification
    • DeliveryDispatcher attempt loop (retry, terminal, timeout,
      validation, disabled channel, rate limit, unknown type)

Run with:
    pytest tests/test_delivery.py -v
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import List

import pytest

from alerting.alerts.channels.base import ChannelConfiguration, DeliveryChannel
from alerting.alerts.delivery import (
    DeliveryDispatcher,
    RateLimitConfig,
    RetryPolicy,
    SlidingWindowRateLimiter,
    build_default_channels,
    should_retry,
)
from alerting.alerts.models import (
    AlertSeverity,
    DeliveryResult,
    DeliveryType,
    Notification,
    User,
)
from alerting.core.errors import DeliveryError, ValidationError

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class _ScriptedChannel(DeliveryChannel):
    """In-app channel whose deliver() follows a script of outcomes."""

    channel_type = DeliveryType.IN_APP

    def __init__(self, script: List, configuration=None, **kwargs):
        super().__init__(configuration, **kwargs)
        self.script = list(script)
        self.calls = 0

    def supports_user(self, user: User) -> bool:
        return user.is_active

    async def deliver(self, notification, user):
        self.calls += 1
        step = self.script.pop(0) if self.script else "ok"
        if step == "ok":
            return DeliveryResult(success=True, delivery_id=f"d-{self.calls}")
        if step == "hang":
            await asyncio.sleep(10)
        if isinstance(step, BaseException):
            raise step
        return DeliveryResult.failure(step, notification_id=notification.id)


def _make_config(max_attempts: int = 3, timeout_ms: int = 1000, enabled: bool = True,
                 max_requests: int = 100) -> ChannelConfiguration:
    return ChannelConfiguration(
        name="scripted",
        enabled=enabled,
        timeout_ms=timeout_ms,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_ms=1000,
                                 max_delay_ms=30000, jitter_factor=0.1),
        rate_limit=RateLimitConfig(max_requests=max_requests, window_seconds=60),
    )


def _make_user(**overrides) -> User:
    fields = dict(id="u1", name="Ana", team_id="t1", organization_id="o1",
                  email="ana@example.com", phone_number="+15551234567")
    fields.update(overrides)
    return User(**fields)


def _make_notification(**overrides) -> Notification:
    fields = dict(alert_id="a1", user_id="u1", title="Outage", message="Details",
                  severity=AlertSeverity.CRITICAL, delivery_type=DeliveryType.IN_APP,
                  timestamp=NOW)
    fields.update(overrides)
    return Notification(**fields)


class _RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _make_dispatcher(channel: DeliveryChannel, sleep=None):
    sleep = sleep or _RecordingSleep()
    dispatcher = DeliveryDispatcher({channel.channel_type: channel}, sleep=sleep,
                                    rng=random.Random(7))
    return dispatcher, sleep


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: RetryPolicy
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryPolicy:

    def test_exponential_until_cap(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff_multiplier=2, max_delay_ms=30000)
        assert [policy.capped_delay_ms(n) for n in range(1, 8)] == [
            1000, 2000, 4000, 8000, 16000, 30000, 30000,
        ]

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff_multiplier=2, max_delay_ms=30000,
                             jitter_factor=0.1)
        rng = random.Random(42)
        for attempt in range(1, 12):
            capped = policy.capped_delay_ms(attempt)
            for _ in range(50):
                delay = policy.delay_ms(attempt, rng)
                assert capped <= delay < capped + 0.1 * capped

    def test_capped_from_sixth_attempt(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff_multiplier=2, max_delay_ms=30000)
        assert all(policy.capped_delay_ms(n) == 30000 for n in range(6, 20))

    def test_zero_jitter_is_deterministic(self):
        policy = RetryPolicy(jitter_factor=0)
        assert policy.delay_ms(2) == policy.capped_delay_ms(2)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter_factor=-0.1)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Rate limiter
# ═══════════════════════════════════════════════════════════════════════════

class _FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowRateLimiter:

    def test_limits_per_user(self):
        limiter = SlidingWindowRateLimiter(2, 60, clock=_FakeClock())
        assert limiter.try_acquire("u1")
        assert limiter.try_acquire("u1")
        assert not limiter.try_acquire("u1")
        assert limiter.try_acquire("u2")

    def test_window_slides(self):
        clock = _FakeClock()
        limiter = SlidingWindowRateLimiter(1, 60, clock=clock)
        assert limiter.try_acquire("u1")
        clock.now = 59.9
        assert not limiter.allows("u1")
        clock.now = 60.0
        assert limiter.allows("u1")
        assert limiter.remaining("u1") == 1

    def test_allows_records_nothing(self):
        limiter = SlidingWindowRateLimiter(1, 60, clock=_FakeClock())
        assert limiter.allows("u1")
        assert limiter.allows("u1")
        assert limiter.remaining("u1") == 1

    def test_cleanup_drops_idle_keys(self):
        clock = _FakeClock()
        limiter = SlidingWindowRateLimiter(5, 10, clock=clock)
        limiter.try_acquire("u1")
        limiter.try_acquire("u2")
        clock.now = 5
        limiter.try_acquire("u2")
        clock.now = 12
        assert limiter.cleanup() == 1
        assert limiter.remaining("u2") == 4

    def test_from_config(self):
        limiter = SlidingWindowRateLimiter.from_config(RateLimitConfig(3, 30))
        assert (limiter.max_requests, limiter.window_seconds) == (3, 30)

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 60)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(1, 0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Error classification
# ═══════════════════════════════════════════════════════════════════════════

class TestShouldRetry:

    @pytest.mark.parametrize("message", [
        "Validation failed: title", "User not active", "Invalid email address",
        "Invalid phone number", "user not found",
    ])
    def test_terminal_messages(self, message):
        assert should_retry(message) is False

    @pytest.mark.parametrize("message", ["Connection reset", "503 from provider", ""])
    def test_transient_messages(self, message):
        assert should_retry(message) is True

    def test_exceptions(self):
        assert should_retry(DeliveryError("x", retryable=False)) is False
        assert should_retry(DeliveryError("x")) is True
        assert should_retry(ValidationError("bad")) is False
        assert should_retry(ConnectionError("reset")) is True


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryDispatcher:

    def test_first_attempt_success(self):
        channel = _ScriptedChannel(["ok"], _make_config())
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.success
        assert outcome.attempts == 1
        assert outcome.should_retry is False
        assert sleep.delays == []

    def test_retries_transient_failures(self):
        channel = _ScriptedChannel(["Connection reset", ConnectionError("down"), "ok"],
                                   _make_config(max_attempts=3))
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.success
        assert outcome.attempts == 3
        assert len(sleep.delays) == 2
        assert 1.0 <= sleep.delays[0] < 1.1
        assert 2.0 <= sleep.delays[1] < 2.2

    def test_exhausted_attempts(self):
        channel = _ScriptedChannel(["503", "503", "503"], _make_config(max_attempts=3))
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert not outcome.success
        assert outcome.attempts == 3
        assert outcome.should_retry is True
        assert outcome.result.error_message == "503"
        assert len(sleep.delays) == 2

    def test_backoff_sleeps_grow_then_cap(self):
        channel = _ScriptedChannel(["503"] * 8, _make_config(max_attempts=8))
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.attempts == 8
        # one sleep after each failure except the last
        assert len(sleep.delays) == 7
        floors = [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        for delay, floor in zip(sleep.delays, floors):
            assert floor <= delay < floor * 1.1
        assert sleep.delays[4] < 30.0

    def test_terminal_error_stops_immediately(self):
        channel = _ScriptedChannel([DeliveryError("bounced", retryable=False)],
                                   _make_config(max_attempts=5))
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.should_retry is False
        assert channel.calls == 1
        assert sleep.delays == []

    def test_validation_failure_uses_no_attempt(self):
        channel = _ScriptedChannel(["ok"], _make_config(max_requests=1))
        dispatcher, _ = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(title=""), _make_user()))
        assert not outcome.success
        assert outcome.attempts == 0
        assert outcome.result.error_message.startswith("Validation failed: ")
        assert channel.calls == 0
        assert channel.rate_limiter.remaining("u1") == 1

    def test_inactive_user_is_terminal(self):
        channel = _ScriptedChannel(["ok"], _make_config())
        dispatcher, _ = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(),
                                                  _make_user(is_active=False)))
        assert not outcome.success
        assert outcome.should_retry is False
        assert "User not active" in outcome.result.error_message

    def test_disabled_channel(self):
        channel = _ScriptedChannel(["ok"], _make_config(enabled=False))
        dispatcher, _ = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.result.error_message == "Channel in_app is disabled"
        assert outcome.should_retry is False
        assert channel.calls == 0

    def test_rate_limited_is_retryable(self):
        channel = _ScriptedChannel(["ok", "ok"], _make_config(max_requests=1))
        dispatcher, _ = _make_dispatcher(channel)
        first = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        second = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert first.success
        assert not second.success
        assert second.should_retry is True
        assert second.attempts == 0
        assert second.result.error_message == "Rate limit exceeded for user u1"
        assert channel.calls == 1

    def test_timeout_counts_as_transient(self):
        channel = _ScriptedChannel(["hang", "ok"], _make_config(max_attempts=2, timeout_ms=20))
        dispatcher, sleep = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.success
        assert outcome.attempts == 2
        assert len(sleep.delays) == 1

    def test_timeout_message(self):
        channel = _ScriptedChannel(["hang"], _make_config(max_attempts=1, timeout_ms=20))
        dispatcher, _ = _make_dispatcher(channel)
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        assert outcome.result.error_message == "Delivery timed out after 20ms"
        assert outcome.should_retry is True

    def test_unknown_channel_type(self):
        channel = _ScriptedChannel(["ok"], _make_config())
        dispatcher, _ = _make_dispatcher(channel)
        with pytest.raises(DeliveryError) as exc:
            asyncio.run(dispatcher.dispatch(
                _make_notification(delivery_type=DeliveryType.SMS), _make_user(),
            ))
        assert exc.value.retryable is False

    def test_registry_is_read_only(self):
        dispatcher, _ = _make_dispatcher(_ScriptedChannel([], _make_config()))
        with pytest.raises(TypeError):
            dispatcher.channels[DeliveryType.SMS] = None

    def test_outcome_to_dict(self):
        dispatcher, _ = _make_dispatcher(_ScriptedChannel(["ok"], _make_config()))
        outcome = asyncio.run(dispatcher.dispatch(_make_notification(), _make_user()))
        d = outcome.to_dict()
        assert d["channel"] == "in_app"
        assert d["attempts"] == 1


class TestDefaultChannels:

    def test_builds_all_three(self):
        channels = build_default_channels()
        assert set(channels) == {DeliveryType.IN_APP, DeliveryType.EMAIL, DeliveryType.SMS}
        assert all(ch.channel_type == t for t, ch in channels.items())

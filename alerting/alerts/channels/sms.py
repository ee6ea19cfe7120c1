"""
sms.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • "simulation" logs the formatted body; other providers fail the
      attempt with a DeliveryError until a gateway is wired in
    • Payload: ≤160 chars (GSM 7-bit); longer bodies are truncated
    • Recipient numbers must be E.164 (+15551234567)

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    SMS (≤160 chars):
        "[CRITICAL] {title}: {message}. Ref:{alert_ref}"

    Example:
        "[WARNING] Maintenance: Database failover at 22:00 UTC.
         Expect 5 minutes of read-only mode. Ref:3A7B91C2"
"""

from __future__ import annotations

import logging

from alerting.alerts.channels.base import ChannelConfiguration, DeliveryChannel
from alerting.alerts.delivery import RateLimitConfig, RetryPolicy
from alerting.alerts.models import (
    E164_PATTERN,
    DeliveryResult,
    DeliveryType,
    Notification,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_sms(notification: Notification) -> str:
    """Format the SMS body within the 160-char GSM limit."""
    prefix = f"[{notification.severity.value.upper()}] "
    suffix = f" Ref:{notification.alert_id[-8:]}"
    body = f"{notification.title}: {notification.message}"

    available = SMS_MAX_GSM7 - len(prefix) - len(suffix)
    if len(body) > available:
        body = body[: available - 3] + "..."

    return f"{prefix}{body}{suffix}"


class SmsChannel(DeliveryChannel):
    """Sends alerts as text messages."""

    channel_type = DeliveryType.SMS

    @classmethod
    def default_configuration(cls) -> ChannelConfiguration:
        return ChannelConfiguration(
            name="SMS Notifications",
            max_concurrency=10,
            timeout_ms=15_000,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10_000,
                                     max_delay_ms=600_000, jitter_factor=0.3),
            rate_limit=RateLimitConfig(max_requests=50, window_seconds=60.0),
            provider_settings={"provider": "simulation"},
        )

    @classmethod
    def from_settings(cls, settings) -> "SmsChannel":
        config = cls.default_configuration()
        config.timeout_ms = settings.SMS_TIMEOUT_MS
        config.rate_limit = RateLimitConfig(settings.SMS_RATE_LIMIT_MAX,
                                            settings.RATE_LIMIT_WINDOW_SECONDS)
        config.provider_settings = {
            "provider": settings.SMS_PROVIDER,
        }
        return cls(config)

    def supports_user(self, user: User) -> bool:
        return user.is_active and bool(user.phone_number)

    def _validate_channel(self, notification, user, errors, warnings) -> None:
        if not user.phone_number:
            errors.append("User phone number is missing")
        elif not E164_PATTERN.match(user.phone_number):
            errors.append("Invalid phone number")
        if notification.title and notification.message:
            if len(notification.title) + len(notification.message) > SMS_MAX_GSM7:
                warnings.append("Message exceeds 160 characters and will be truncated")

    async def deliver(self, notification: Notification, user: User) -> DeliveryResult:
        sms_body = format_sms(notification)

        if self.provider == "simulation":
            logger.info(
                "[SMS] Alert %s → %s (%s): %d chars → '%s'",
                notification.alert_id, user.phone_number, user.name, len(sms_body),
                sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
                extra={"alert_id": notification.alert_id, "user_id": user.id,
                       "channel": self.channel_type.value},
            )
            response = {
                "mode": "simulated",
                "message_length": len(sms_body),
                "segments": 1 + (len(sms_body) - 1) // SMS_MAX_GSM7,
                "phone": user.phone_number,
            }
        else:
            self._raise_unknown_provider(notification)

        now = utcnow()
        return DeliveryResult(
            success=True,
            delivery_id=f"sms-{notification.id}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            provider_response=response,
        )

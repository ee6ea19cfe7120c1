"""
email.py — Email alert delivery channel.

Delivery mechanism:
    • Providers are selected through ``provider_settings["provider"]``
    • Subject carries a severity icon; body is HTML with a plain fallback
    • "simulation" logs the rendered message and succeeds; any other
      provider fails the attempt with a DeliveryError

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [CRITICAL] {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  ALERT — {SEVERITY}                      │
        ├─────────────────────────────────────────┤
        │  {title}                                 │
        │  {message}                               │
        │                                          │
        │  Issued: {timestamp}                     │
        │  [Mark as read] [Snooze for today]       │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import html
import logging

from alerting.alerts.channels.base import ChannelConfiguration, DeliveryChannel
from alerting.alerts.delivery import RateLimitConfig, RetryPolicy
from alerting.alerts.models import (
    EMAIL_PATTERN,
    AlertSeverity,
    DeliveryResult,
    DeliveryType,
    Notification,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

_SEVERITY_ICONS = {
    AlertSeverity.INFO: "ℹ️",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.CRITICAL: "🚨",
}

_SEVERITY_COLOURS = {
    AlertSeverity.INFO: "#2196F3",      # blue
    AlertSeverity.WARNING: "#FF9800",   # orange
    AlertSeverity.CRITICAL: "#F44336",  # red
}


def build_subject(notification: Notification) -> str:
    icon = _SEVERITY_ICONS.get(notification.severity, "⚠️")
    return f"{icon} [{notification.severity.value.upper()}] {notification.title}"


def build_html_body(notification: Notification) -> str:
    """Render a simple HTML email body."""
    colour = _SEVERITY_COLOURS.get(notification.severity, "#FF9800")
    title = html.escape(notification.title)
    message = html.escape(notification.message).replace("\n", "<br>")
    issued = notification.timestamp.strftime("%Y-%m-%d %H:%M %Z")
    base = f"/api/v1/users/{notification.user_id}/alerts/{notification.alert_id}"

    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">ALERT — {notification.severity.value.upper()}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{title}</h3>
        <p>{message}</p>
        <hr>
        <p><strong>Issued:</strong> {issued}</p>
        <div style="margin-top:16px;">
          <a href="{base}/read"
             style="background:{colour};color:white;padding:10px 20px;text-decoration:none;border-radius:4px;margin-right:8px;">
            Mark as read
          </a>
          <a href="{base}/snooze"
             style="background:#555;color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
            Snooze for today
          </a>
        </div>
      </div>
    </div>
    """


def build_plain_body(notification: Notification) -> str:
    return (
        f"ALERT — {notification.severity.value.upper()}\n\n"
        f"{notification.title}\n"
        f"{notification.message}\n\n"
        f"Issued: {notification.timestamp.strftime('%Y-%m-%d %H:%M %Z')}\n"
    )


class EmailChannel(DeliveryChannel):
    """Sends alerts by email."""

    channel_type = DeliveryType.EMAIL

    @classmethod
    def default_configuration(cls) -> ChannelConfiguration:
        return ChannelConfiguration(
            name="Email Notifications",
            max_concurrency=20,
            timeout_ms=10_000,
            retry_policy=RetryPolicy(max_attempts=5, base_delay_ms=5_000,
                                     max_delay_ms=300_000, jitter_factor=0.2),
            rate_limit=RateLimitConfig(max_requests=100, window_seconds=60.0),
            provider_settings={"provider": "simulation",
                               "from_address": "alerts@example.com"},
        )

    @classmethod
    def from_settings(cls, settings) -> "EmailChannel":
        config = cls.default_configuration()
        config.timeout_ms = settings.EMAIL_TIMEOUT_MS
        config.rate_limit = RateLimitConfig(settings.EMAIL_RATE_LIMIT_MAX,
                                            settings.RATE_LIMIT_WINDOW_SECONDS)
        config.provider_settings = {
            "provider": settings.EMAIL_PROVIDER,
            "from_address": settings.EMAIL_FROM_ADDRESS,
        }
        return cls(config)

    def supports_user(self, user: User) -> bool:
        return user.is_active and bool(user.email)

    def _validate_channel(self, notification, user, errors, warnings) -> None:
        if not user.email:
            errors.append("User email address is missing")
        elif not EMAIL_PATTERN.match(user.email):
            errors.append("Invalid email address")
        if notification.title and len(notification.title) > 78:
            warnings.append("Subject longer than 78 characters may be folded by mail clients")

    async def deliver(self, notification: Notification, user: User) -> DeliveryResult:
        subject = build_subject(notification)
        html_body = build_html_body(notification)
        plain_body = build_plain_body(notification)

        if self.provider == "simulation":
            logger.info(
                "[EMAIL] Alert %s → %s (%s): Subject='%s'",
                notification.alert_id, user.email, user.name, subject,
                extra={"alert_id": notification.alert_id, "user_id": user.id,
                       "channel": self.channel_type.value},
            )
            response = {
                "mode": "simulated",
                "subject": subject,
                "html_size": len(html_body),
                "plain_size": len(plain_body),
                "to": user.email,
            }
        else:
            self._raise_unknown_provider(notification)

        now = utcnow()
        return DeliveryResult(
            success=True,
            delivery_id=f"email-{notification.id}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            provider_response=response,
        )

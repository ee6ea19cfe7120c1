"""
in_app.py — In-app notification channel.

Delivery mechanism:
    • Notification is appended to the user's in-app inbox
    • The UI polls GET /api/v1/users/{id}/alerts (or reads the inbox)
    • No external provider; always the fastest channel

The inbox is bounded per user (oldest entries fall off first).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from alerting.alerts.channels.base import ChannelConfiguration, DeliveryChannel
from alerting.alerts.delivery import RateLimitConfig, RetryPolicy
from alerting.alerts.models import DeliveryResult, DeliveryType, Notification, User, utcnow

logger = logging.getLogger(__name__)

INBOX_MAX_SIZE = 500


class InAppChannel(DeliveryChannel):
    """Stores notifications in a per-user in-process inbox."""

    channel_type = DeliveryType.IN_APP

    def __init__(self, configuration: Optional[ChannelConfiguration] = None, **kwargs):
        super().__init__(configuration, **kwargs)
        self._inboxes: Dict[str, Deque[Notification]] = {}
        self._lock = threading.Lock()

    @classmethod
    def default_configuration(cls) -> ChannelConfiguration:
        return ChannelConfiguration(
            name="In-App Notifications",
            max_concurrency=100,
            timeout_ms=5_000,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=1_000,
                                     max_delay_ms=60_000, jitter_factor=0.1),
            rate_limit=RateLimitConfig(max_requests=1_000, window_seconds=60.0),
            provider_settings={"provider": "simulation"},
        )

    @classmethod
    def from_settings(cls, settings) -> "InAppChannel":
        config = cls.default_configuration()
        config.timeout_ms = settings.IN_APP_TIMEOUT_MS
        config.rate_limit = RateLimitConfig(settings.IN_APP_RATE_LIMIT_MAX,
                                            settings.RATE_LIMIT_WINDOW_SECONDS)
        return cls(config)

    def supports_user(self, user: User) -> bool:
        return user.is_active

    def _validate_channel(self, notification, user, errors, warnings) -> None:
        if notification.title and len(notification.title) > 100:
            warnings.append("Title longer than 100 characters may be truncated in the app")

    async def deliver(self, notification: Notification, user: User) -> DeliveryResult:
        if self.provider != "simulation":
            self._raise_unknown_provider(notification)

        with self._lock:
            inbox = self._inboxes.setdefault(user.id, deque(maxlen=INBOX_MAX_SIZE))
            inbox.append(notification)
            unread = len(inbox)

        now = utcnow()
        logger.info(
            "[IN_APP] Alert %s → %s (%s): '%s'",
            notification.alert_id, user.id, user.name, notification.title,
            extra={"alert_id": notification.alert_id, "user_id": user.id,
                   "channel": self.channel_type.value},
        )
        return DeliveryResult(
            success=True,
            delivery_id=f"inapp-{notification.id}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            provider_response={"mode": "simulated", "inbox_size": unread},
        )

    def inbox(self, user_id: str) -> List[Notification]:
        with self._lock:
            return list(self._inboxes.get(user_id, ()))

    def clear_inbox(self, user_id: str) -> None:
        with self._lock:
            self._inboxes.pop(user_id, None)

"""
base.py — Shared contract for delivery channels.

Every channel implements:
    deliver(notification, user) → DeliveryResult     (async)
    supports_user(user)         → bool              (contact capability)
    _validate_channel(notification, user, errors, warnings)

and inherits configuration handling, common validation and the
per-user rate limiter from DeliveryChannel. Retry lives in the
dispatcher, not here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, NoReturn, Optional

from alerting.alerts.delivery import RateLimitConfig, RetryPolicy, SlidingWindowRateLimiter
from alerting.alerts.models import (
    MESSAGE_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    DeliveryResult,
    DeliveryType,
    Notification,
    User,
)
from alerting.core.errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass
class ChannelConfiguration:
    """Tunables for one channel. ``get_configuration()`` hands out copies."""
    name: str
    enabled: bool = True
    max_concurrency: int = 10
    timeout_ms: int = 30_000
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    provider_settings: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "ChannelConfiguration":
        return replace(self, provider_settings=dict(self.provider_settings))


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class DeliveryChannel(ABC):
    """Abstract delivery channel with config, validation and rate limiting."""

    channel_type: DeliveryType

    def __init__(
        self,
        configuration: Optional[ChannelConfiguration] = None,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self._configuration = configuration or self.default_configuration()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter.from_config(
            self._configuration.rate_limit
        )

    @classmethod
    def default_configuration(cls) -> ChannelConfiguration:
        return ChannelConfiguration(name=cls.channel_type.value)

    # ── Contract ──

    @abstractmethod
    async def deliver(self, notification: Notification, user: User) -> DeliveryResult:
        """Send one notification; provider errors raise DeliveryError."""

    @abstractmethod
    def supports_user(self, user: User) -> bool:
        """Does ``user`` have what this channel needs (active, contact details)?"""

    def _validate_channel(self, notification: Notification, user: User,
                          errors: List[str], warnings: List[str]) -> None:
        """Channel-specific checks; append to ``errors`` / ``warnings``."""

    # ── Shared behaviour ──

    def get_channel_type(self) -> DeliveryType:
        return self.channel_type

    def get_configuration(self) -> ChannelConfiguration:
        return self._configuration.copy()

    @property
    def provider(self) -> str:
        return self._configuration.provider_settings.get("provider", "simulation")

    def can_deliver(self, user: User) -> bool:
        """Capability and rate-limit headroom. Consumes no rate-limit slot."""
        return self.supports_user(user) and self.rate_limiter.allows(user.id)

    def validate_delivery(self, notification: Notification, user: User) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if not notification.id or not notification.id.strip():
            errors.append("Notification ID is required")
        if not notification.title or not notification.title.strip():
            errors.append("Notification title is required")
        elif len(notification.title) > TITLE_MAX_LENGTH:
            errors.append(f"Notification title is too long (max {TITLE_MAX_LENGTH} characters)")
        if not notification.message or not notification.message.strip():
            errors.append("Notification message is required")
        elif len(notification.message) > MESSAGE_MAX_LENGTH:
            errors.append(
                f"Notification message is too long (max {MESSAGE_MAX_LENGTH} characters)"
            )

        if not user.id or not user.id.strip():
            errors.append("User ID is required")
        if not user.is_active:
            errors.append("User not active")

        self._validate_channel(notification, user, errors, warnings)
        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _raise_unknown_provider(self, notification: Notification) -> NoReturn:
        message = f"Unknown {self.channel_type.value} provider: {self.provider}"
        logger.error(message, extra={"alert_id": notification.alert_id,
                                     "channel": self.channel_type.value})
        raise DeliveryError(message, channel=self.channel_type.value, retryable=True)

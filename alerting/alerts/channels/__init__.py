"""
channels — Per-channel delivery backends.

Each channel class exposes:
    deliver(notification, user) → DeliveryResult    (async)
    validate_delivery(notification, user) → ValidationResult
    can_deliver(user) → bool

Channels own their rate limiter; retry lives in alerts.delivery.
"""

from alerting.alerts.channels.base import ChannelConfiguration, DeliveryChannel, ValidationResult
from alerting.alerts.channels.email import EmailChannel
from alerting.alerts.channels.in_app import InAppChannel
from alerting.alerts.channels.sms import SmsChannel

__all__ = [
    "ChannelConfiguration",
    "DeliveryChannel",
    "EmailChannel",
    "InAppChannel",
    "SmsChannel",
    "ValidationResult",
]

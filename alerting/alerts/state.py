"""
state.py — Per-(user, alert) read / snooze / delivery state.

A row is created lazily on first interaction. Absence of a row means
"unread, not snoozed, never delivered" and is modelled explicitly by
``UserAlertState.default_for(user_id, alert_id)``.

═══════════════════════════════════════════════════════════════════════════
SNOOZE STATES
═══════════════════════════════════════════════════════════════════════════

    is_snoozed   snooze_until   meaning
    ──────────   ────────────   ─────────────────────────────────────
    False        None           not snoozed
    True         None           indefinite (needs explicit unsnooze)
    True         t > now        timed, in effect
    True         t ≤ now        timed, lapsed — still recorded as
                                snoozed until reset_snooze_if_expired()

Reads never self-heal a lapsed snooze; only ``reset_snooze_if_expired``
clears it. Every mutator moves ``updated_at`` forward (never back).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from typing import Any, Dict, Optional

from alerting.alerts.models import utcnow
from alerting.core.errors import InvalidArgumentError

_ZERO = timedelta(0)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def end_of_day(now: datetime) -> datetime:
    """Last representable instant of ``now``'s calendar day, in ``now``'s timezone."""
    return datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)


@dataclass
class UserAlertState:
    user_id: str
    alert_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_read: bool = False
    is_snoozed: bool = False
    snooze_until: Optional[datetime] = None
    last_delivered: Optional[datetime] = None
    delivery_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def default_for(cls, user_id: str, alert_id: str,
                    now: Optional[datetime] = None) -> "UserAlertState":
        now = now or utcnow()
        return cls(user_id=user_id, alert_id=alert_id, created_at=now, updated_at=now)

    def copy(self) -> "UserAlertState":
        return replace(self)

    def _touch(self, now: datetime) -> None:
        if now > self.updated_at:
            self.updated_at = now

    # ── Read state ──

    def mark_as_read(self, now: Optional[datetime] = None) -> None:
        self.is_read = True
        self._touch(now or utcnow())

    def mark_as_unread(self, now: Optional[datetime] = None) -> None:
        self.is_read = False
        self._touch(now or utcnow())

    # ── Snooze ──

    def snooze_for_day(self, now: Optional[datetime] = None) -> None:
        """Snooze until the end of the caller's local day (23:59:59.999999)."""
        now = now or _local_now()
        self.is_snoozed = True
        self.snooze_until = end_of_day(now)
        self._touch(now)

    def snooze_until_time(self, until: datetime, now: Optional[datetime] = None) -> None:
        """
        Snooze until ``until``.

        Raises
        ------
        InvalidArgumentError
            If ``until`` is not strictly in the future.
        """
        now = now or utcnow()
        if until.tzinfo is None:
            raise InvalidArgumentError("Snooze time must be timezone-aware", field="until")
        if until <= now:
            raise InvalidArgumentError("Snooze time must be in the future", field="until")
        self.is_snoozed = True
        self.snooze_until = until
        self._touch(now)

    def snooze_indefinitely(self, now: Optional[datetime] = None) -> None:
        self.is_snoozed = True
        self.snooze_until = None
        self._touch(now or utcnow())

    def unsnooze(self, now: Optional[datetime] = None) -> None:
        self.is_snoozed = False
        self.snooze_until = None
        self._touch(now or utcnow())

    def is_currently_snoozed(self, now: Optional[datetime] = None) -> bool:
        if not self.is_snoozed:
            return False
        if self.snooze_until is None:
            return True
        return (now or utcnow()) < self.snooze_until

    def reset_snooze_if_expired(self, now: Optional[datetime] = None) -> bool:
        """Clear a lapsed timed snooze. Returns True if the state changed."""
        now = now or utcnow()
        if self.is_snoozed and self.snooze_until is not None and now >= self.snooze_until:
            self.is_snoozed = False
            self.snooze_until = None
            self._touch(now)
            return True
        return False

    def get_snooze_time_remaining(self, now: Optional[datetime] = None) -> timedelta:
        """Time left on a timed snooze; zero for indefinite, lapsed or no snooze."""
        if not self.is_snoozed or self.snooze_until is None:
            return _ZERO
        remaining = self.snooze_until - (now or utcnow())
        return remaining if remaining > _ZERO else _ZERO

    # ── Delivery ──

    def record_delivery(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.last_delivered = now
        self.delivery_count += 1
        self._touch(now)

    def should_receive_reminder(self, now: Optional[datetime] = None) -> bool:
        return not self.is_currently_snoozed(now)

    def has_been_delivered(self) -> bool:
        return self.delivery_count > 0

    def time_since_last_delivery(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.last_delivered is None:
            return None
        return (now or utcnow()) - self.last_delivered

    def is_reminder_due(self, frequency_hours: float, now: Optional[datetime] = None) -> bool:
        """True if never delivered or ``frequency_hours`` have passed since the last delivery."""
        elapsed = self.time_since_last_delivery(now)
        if elapsed is None:
            return True
        return elapsed >= timedelta(hours=frequency_hours)

    # ── Serialisation ──

    def state_info(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        since = self.time_since_last_delivery(now)
        return {
            "is_read": self.is_read,
            "is_snoozed": self.is_snoozed,
            "is_currently_snoozed": self.is_currently_snoozed(now),
            "snooze_time_remaining_seconds": self.get_snooze_time_remaining(now).total_seconds(),
            "delivery_count": self.delivery_count,
            "has_been_delivered": self.has_been_delivered(),
            "seconds_since_last_delivery": since.total_seconds() if since is not None else None,
            "should_receive_reminder": self.should_receive_reminder(now),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_id": self.alert_id,
            "is_read": self.is_read,
            "is_snoozed": self.is_snoozed,
            "snooze_until": self.snooze_until.isoformat() if self.snooze_until else None,
            "last_delivered": self.last_delivered.isoformat() if self.last_delivered else None,
            "delivery_count": self.delivery_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

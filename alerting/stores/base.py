"""
base.py — Persistence interfaces.

All methods are coroutines so the SQL backend and the in-memory backend
are interchangeable. Implementations return detached copies; mutating a
returned entity never changes the stored one until it is written back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from alerting.alerts.models import Alert, AlertPatch, User
from alerting.alerts.state import UserAlertState


class AlertStore(ABC):

    @abstractmethod
    async def create(self, alert: Alert) -> Alert:
        """Insert a new alert."""

    @abstractmethod
    async def get_by_id(self, alert_id: str) -> Optional[Alert]:
        ...

    @abstractmethod
    async def save(self, alert: Alert) -> Alert:
        """Overwrite an existing alert with ``alert``'s fields."""

    @abstractmethod
    async def list_all(self) -> List[Alert]:
        ...

    async def update(self, alert_id: str, patch: AlertPatch,
                     now: Optional[datetime] = None) -> Optional[Alert]:
        """Validate and apply ``patch``. Returns None if the alert is absent."""
        alert = await self.get_by_id(alert_id)
        if alert is None:
            return None
        alert.update(patch, now=now)
        return await self.save(alert)

    async def archive(self, alert_id: str) -> Optional[Alert]:
        """Archive the alert (idempotent). Returns None if absent."""
        alert = await self.get_by_id(alert_id)
        if alert is None:
            return None
        if alert.archive():
            alert = await self.save(alert)
        return alert

    @abstractmethod
    async def find_active_alerts(self, now: datetime) -> List[Alert]:
        """Status ACTIVE and start_time ≤ now < expiry_time."""

    @abstractmethod
    async def find_active_alerts_needing_reminders(self, now: datetime) -> List[Alert]:
        """Active, reminders enabled, started, not yet expired."""

    @abstractmethod
    async def find_alerts_visible_to(self, user_id: str, team_id: Optional[str],
                                     organization_id: Optional[str],
                                     now: datetime) -> List[Alert]:
        ...

    @abstractmethod
    async def mark_expired_alerts(self, now: datetime) -> int:
        """Move ACTIVE alerts past their expiry to EXPIRED. Returns the count."""


class UserAlertStateStore(ABC):

    @abstractmethod
    async def find_by_user_and_alert(self, user_id: str,
                                     alert_id: str) -> Optional[UserAlertState]:
        ...

    @abstractmethod
    async def upsert(self, state: UserAlertState) -> UserAlertState:
        """
        Insert or update ``state``.

        Raises ConcurrencyConflict if the stored row's version differs
        from ``state.version``. The returned copy carries the new version.
        """

    @abstractmethod
    async def record_delivery(self, user_id: str, alert_id: str,
                              now: datetime) -> UserAlertState:
        """Atomically increment delivery_count and set last_delivered."""

    @abstractmethod
    async def bulk_update_snooze_status(self, user_ids: Iterable[str], alert_id: str,
                                        snoozed: bool) -> int:
        """Set or clear an indefinite snooze for many users. Returns rows touched."""

    @abstractmethod
    async def find_expired_snoozes(self, now: datetime) -> List[UserAlertState]:
        """States still marked snoozed whose snooze_until has passed."""

    @abstractmethod
    async def find_by_user(self, user_id: str) -> List[UserAlertState]:
        ...

    @abstractmethod
    async def find_by_alert(self, alert_id: str) -> List[UserAlertState]:
        ...

    @abstractmethod
    async def list_all(self) -> List[UserAlertState]:
        ...


class UserDirectory(ABC):

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def list_users(self) -> List[User]:
        ...

    @abstractmethod
    async def add_user(self, user: User) -> None:
        """Insert or replace a directory entry."""

"""
memory.py — Thread-safe in-process stores.

Used by default (STORE_BACKEND=memory) and throughout the tests. Every
read returns a copy and every write stores a copy, so callers never
share mutable entities with the store.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from alerting.alerts.models import Alert, AlertStatus, User
from alerting.alerts.state import UserAlertState
from alerting.alerts.visibility import sort_for_display, visible_alerts
from alerting.core.errors import ConcurrencyConflict, NotFoundError
from alerting.stores.base import AlertStore, UserAlertStateStore, UserDirectory

logger = logging.getLogger(__name__)


class InMemoryAlertStore(AlertStore):

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._lock = threading.Lock()

    async def create(self, alert: Alert) -> Alert:
        with self._lock:
            if alert.id in self._alerts:
                raise ValueError(f"Alert {alert.id} already exists")
            self._alerts[alert.id] = alert.copy()
        return alert.copy()

    async def get_by_id(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.copy() if alert else None

    async def save(self, alert: Alert) -> Alert:
        with self._lock:
            stored = self._alerts.get(alert.id)
            if stored is None:
                raise NotFoundError("Alert", alert_id=alert.id)
            # Lifecycle is monotonic: a stale copy cannot revive a terminal alert.
            if stored.status != AlertStatus.ACTIVE:
                alert = alert.copy()
                alert.status = stored.status
            self._alerts[alert.id] = alert.copy()
        return alert.copy()

    async def list_all(self) -> List[Alert]:
        with self._lock:
            alerts = [a.copy() for a in self._alerts.values()]
        return sort_for_display(alerts)

    async def find_active_alerts(self, now: datetime) -> List[Alert]:
        with self._lock:
            alerts = [
                a.copy() for a in self._alerts.values()
                if a.status == AlertStatus.ACTIVE and a.start_time <= now < a.expiry_time
            ]
        return sort_for_display(alerts)

    async def find_active_alerts_needing_reminders(self, now: datetime) -> List[Alert]:
        with self._lock:
            return [
                a.copy() for a in self._alerts.values()
                if a.status == AlertStatus.ACTIVE
                and a.reminder_enabled
                and a.start_time <= now < a.expiry_time
            ]

    async def find_alerts_visible_to(self, user_id: str, team_id: Optional[str],
                                     organization_id: Optional[str],
                                     now: datetime) -> List[Alert]:
        with self._lock:
            alerts = [a.copy() for a in self._alerts.values()]
        return visible_alerts(alerts, user_id, team_id, organization_id, now)

    async def mark_expired_alerts(self, now: datetime) -> int:
        count = 0
        with self._lock:
            for alert in self._alerts.values():
                if alert.status == AlertStatus.ACTIVE and alert.is_expired(now):
                    alert.mark_expired()
                    count += 1
        if count:
            logger.info("Marked %d alerts as expired", count)
        return count


class InMemoryUserAlertStateStore(UserAlertStateStore):

    def __init__(self):
        self._states: Dict[Tuple[str, str], UserAlertState] = {}
        self._lock = threading.Lock()

    async def find_by_user_and_alert(self, user_id: str,
                                     alert_id: str) -> Optional[UserAlertState]:
        with self._lock:
            state = self._states.get((user_id, alert_id))
            return state.copy() if state else None

    async def upsert(self, state: UserAlertState) -> UserAlertState:
        key = (state.user_id, state.alert_id)
        with self._lock:
            stored = self._states.get(key)
            stored_version = stored.version if stored else 0
            if state.version != stored_version:
                raise ConcurrencyConflict("UserAlertState", user_id=state.user_id,
                                          alert_id=state.alert_id)
            saved = state.copy()
            if stored is not None:
                saved.id = stored.id
                saved.created_at = stored.created_at
            saved.version = stored_version + 1
            self._states[key] = saved
            return saved.copy()

    async def record_delivery(self, user_id: str, alert_id: str,
                              now: datetime) -> UserAlertState:
        key = (user_id, alert_id)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = UserAlertState.default_for(user_id, alert_id, now=now)
                self._states[key] = state
            state.record_delivery(now)
            state.version += 1
            return state.copy()

    async def bulk_update_snooze_status(self, user_ids: Iterable[str], alert_id: str,
                                        snoozed: bool) -> int:
        touched = 0
        with self._lock:
            for user_id in dict.fromkeys(user_ids):
                key = (user_id, alert_id)
                state = self._states.get(key)
                if state is None:
                    state = self._states[key] = UserAlertState.default_for(user_id, alert_id)
                if snoozed:
                    state.snooze_indefinitely()
                else:
                    state.unsnooze()
                state.version += 1
                touched += 1
        return touched

    async def find_expired_snoozes(self, now: datetime) -> List[UserAlertState]:
        with self._lock:
            return [
                s.copy() for s in self._states.values()
                if s.is_snoozed and s.snooze_until is not None and s.snooze_until <= now
            ]

    async def find_by_user(self, user_id: str) -> List[UserAlertState]:
        with self._lock:
            return [s.copy() for s in self._states.values() if s.user_id == user_id]

    async def find_by_alert(self, alert_id: str) -> List[UserAlertState]:
        with self._lock:
            return [s.copy() for s in self._states.values() if s.alert_id == alert_id]

    async def list_all(self) -> List[UserAlertState]:
        with self._lock:
            return [s.copy() for s in self._states.values()]


class InMemoryUserDirectory(UserDirectory):

    def __init__(self, users: Optional[Iterable[User]] = None):
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()
        for user in users or ():
            self._users[user.id] = user

    async def add_user(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = user

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    async def list_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

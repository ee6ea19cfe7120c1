"""
services.py — Administrative and per-user operations.

Thin orchestration over the stores; all rules live on the entities.

    AlertService      — create / update / archive / read alerts
    UserAlertService  — read, snooze and list alerts for one user
    UserService       — register and look up recipients

User-state writes are optimistic: a ConcurrencyConflict from the store
is retried once against a fresh copy, then surfaced to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from alerting.alerts.models import Alert, AlertPatch, User, utcnow
from alerting.alerts.state import UserAlertState
from alerting.core.errors import AlreadyExistsError, ConcurrencyConflict, NotFoundError
from alerting.stores.base import AlertStore, UserAlertStateStore, UserDirectory

logger = logging.getLogger(__name__)


class AlertService:

    def __init__(self, alert_store: AlertStore, *, clock: Callable[[], datetime] = utcnow):
        self._alerts = alert_store
        self._clock = clock

    async def create_alert(self, **fields: Any) -> Alert:
        """Validate via ``Alert.create`` and persist. Raises ValidationError."""
        alert = Alert.create(**fields, now=self._clock())
        alert = await self._alerts.create(alert)
        logger.info("Created %s alert %s: %s", alert.severity.value, alert.id, alert.title,
                    extra={"alert_id": alert.id})
        return alert

    async def update_alert(self, alert_id: str,
                           patch: Union[AlertPatch, Mapping[str, Any]]) -> Alert:
        if not isinstance(patch, AlertPatch):
            patch = AlertPatch.from_mapping(patch)
        alert = await self._alerts.update(alert_id, patch, now=self._clock())
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        logger.info("Updated alert %s (%s)", alert_id, ", ".join(sorted(patch.provided())),
                    extra={"alert_id": alert_id})
        return alert

    async def archive_alert(self, alert_id: str) -> Alert:
        alert = await self._alerts.archive(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        logger.info("Archived alert %s", alert_id, extra={"alert_id": alert_id})
        return alert

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self._alerts.get_by_id(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def list_active_alerts(self) -> List[Alert]:
        return await self._alerts.find_active_alerts(self._clock())

    async def list_alerts(self) -> List[Alert]:
        return await self._alerts.list_all()


@dataclass
class UserAlertView:
    """An alert as one user sees it."""
    alert: Alert
    state: UserAlertState

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {**self.alert.to_dict(), "user_state": self.state.state_info(now)}


class UserAlertService:

    def __init__(
        self,
        alert_store: AlertStore,
        state_store: UserAlertStateStore,
        user_directory: UserDirectory,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._alerts = alert_store
        self._states = state_store
        self._users = user_directory
        self._clock = clock

    async def _require_user(self, user_id: str) -> User:
        user = await self._users.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)
        return user

    async def _require_alert(self, alert_id: str) -> Alert:
        alert = await self._alerts.get_by_id(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def _mutate(self, user_id: str, alert_id: str,
                      action: Callable[[UserAlertState], None]) -> UserAlertState:
        await self._require_user(user_id)
        await self._require_alert(alert_id)

        state = await self.get_state(user_id, alert_id)
        action(state)
        try:
            return await self._states.upsert(state)
        except ConcurrencyConflict:
            logger.info("State for %s/%s changed concurrently, retrying", user_id, alert_id,
                        extra={"user_id": user_id, "alert_id": alert_id})

        state = await self.get_state(user_id, alert_id)
        action(state)
        return await self._states.upsert(state)

    async def get_state(self, user_id: str, alert_id: str) -> UserAlertState:
        state = await self._states.find_by_user_and_alert(user_id, alert_id)
        return state or UserAlertState.default_for(user_id, alert_id, now=self._clock())

    async def mark_read(self, user_id: str, alert_id: str) -> UserAlertState:
        return await self._mutate(user_id, alert_id,
                                  lambda s: s.mark_as_read(self._clock()))

    async def mark_unread(self, user_id: str, alert_id: str) -> UserAlertState:
        return await self._mutate(user_id, alert_id,
                                  lambda s: s.mark_as_unread(self._clock()))

    async def snooze_for_day(self, user_id: str, alert_id: str,
                             now: Optional[datetime] = None) -> UserAlertState:
        """Snooze until the end of the day in ``now``'s timezone (local clock by default)."""
        state = await self._mutate(user_id, alert_id, lambda s: s.snooze_for_day(now))
        logger.info("User %s snoozed alert %s until %s", user_id, alert_id,
                    state.snooze_until.isoformat(),
                    extra={"user_id": user_id, "alert_id": alert_id})
        return state

    async def snooze_until(self, user_id: str, alert_id: str,
                           until: datetime) -> UserAlertState:
        return await self._mutate(user_id, alert_id,
                                  lambda s: s.snooze_until_time(until, self._clock()))

    async def unsnooze(self, user_id: str, alert_id: str) -> UserAlertState:
        return await self._mutate(user_id, alert_id,
                                  lambda s: s.unsnooze(self._clock()))

    async def list_alerts_for_user(self, user_id: str) -> List[UserAlertView]:
        """Alerts currently visible to the user, with their per-user state."""
        user = await self._require_user(user_id)
        now = self._clock()
        alerts = await self._alerts.find_alerts_visible_to(
            user.id, user.team_id, user.organization_id, now,
        )
        states = {s.alert_id: s for s in await self._states.find_by_user(user.id)}
        views = []
        for alert in alerts:
            state = states.get(alert.id) or UserAlertState.default_for(user.id, alert.id, now=now)
            views.append(UserAlertView(alert, state))
        return views


class UserService:
    """Registers and looks up recipients in the user directory."""

    def __init__(self, user_directory: UserDirectory):
        self._users = user_directory

    async def register_user(self, **fields: Any) -> User:
        """Validate via ``User.create`` and add. Raises AlreadyExistsError on a taken id."""
        user = User.create(**fields)
        if await self._users.get_user(user.id) is not None:
            raise AlreadyExistsError("User", user_id=user.id)
        await self._users.add_user(user)
        logger.info("Registered user %s (team=%s, org=%s)", user.id, user.team_id,
                    user.organization_id, extra={"user_id": user.id})
        return user

    async def get_user(self, user_id: str) -> User:
        user = await self._users.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)
        return user

    async def list_users(self, team_id: Optional[str] = None,
                         organization_id: Optional[str] = None) -> List[User]:
        return [
            user for user in await self._users.list_users()
            if (team_id is None or user.team_id == team_id)
            and (organization_id is None or user.organization_id == organization_id)
        ]

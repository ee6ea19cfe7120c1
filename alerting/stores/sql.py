"""
sql.py — SQLAlchemy 2.0 async stores.

Tables:
    alerts              — one row per Alert; target_ids stored as JSON
    user_alert_states   — one row per (user_id, alert_id), unique
    users               — recipient directory

Visibility matching runs in Python (alerting.alerts.visibility) over the
rows that pass the status/time filter in SQL, so the memory and SQL
stores share one definition of "visible".

Concurrency:
    • upsert() is optimistic: UPDATE ... WHERE version = :expected,
      zero rows → ConcurrencyConflict.
    • record_delivery() is a single UPDATE with
      delivery_count = delivery_count + 1; a missing row is inserted,
      and a lost insert race is retried once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    literal,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from alerting.alerts.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    DeliveryType,
    User,
    Visibility,
    VisibilityType,
)
from alerting.alerts.state import UserAlertState
from alerting.alerts.visibility import sort_for_display, visible_alerts
from alerting.core.database import Base, Database, UTCDateTime
from alerting.core.errors import ConcurrencyConflict, NotFoundError
from alerting.stores.base import AlertStore, UserAlertStateStore, UserDirectory

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Rows
# ═══════════════════════════════════════════════════════════════════════════

class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(16))
    delivery_type: Mapped[str] = mapped_column(String(16))
    visibility_type: Mapped[str] = mapped_column(String(16))
    target_ids: Mapped[list] = mapped_column(JSON, default=list)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime)
    expiry_time: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    reminder_frequency_hours: Mapped[float] = mapped_column(Float, default=2.0)
    created_by: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String(16), index=True)

    def apply(self, alert: Alert) -> None:
        self.title = alert.title
        self.message = alert.message
        self.severity = alert.severity.value
        self.delivery_type = alert.delivery_type.value
        self.visibility_type = alert.visibility.type.value
        self.target_ids = sorted(alert.visibility.target_ids)
        self.start_time = alert.start_time
        self.expiry_time = alert.expiry_time
        self.reminder_enabled = alert.reminder_enabled
        self.reminder_frequency_hours = alert.reminder_frequency_hours
        self.created_by = alert.created_by
        self.status = alert.status.value

    def to_entity(self) -> Alert:
        return Alert(
            id=self.id,
            title=self.title,
            message=self.message,
            severity=AlertSeverity(self.severity),
            delivery_type=DeliveryType(self.delivery_type),
            visibility=Visibility(VisibilityType(self.visibility_type),
                                  frozenset(self.target_ids or ())),
            start_time=self.start_time,
            expiry_time=self.expiry_time,
            reminder_enabled=self.reminder_enabled,
            reminder_frequency_hours=self.reminder_frequency_hours,
            created_by=self.created_by,
            created_at=self.created_at,
            status=AlertStatus(self.status),
        )


class UserAlertStateRow(Base):
    __tablename__ = "user_alert_states"
    __table_args__ = (UniqueConstraint("user_id", "alert_id", name="uq_user_alert"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    alert_id: Mapped[str] = mapped_column(String(36), index=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_snoozed: Mapped[bool] = mapped_column(Boolean, default=False)
    snooze_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_delivered: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    version: Mapped[int] = mapped_column(Integer, default=1)

    @classmethod
    def from_entity(cls, state: UserAlertState) -> "UserAlertStateRow":
        return cls(
            id=state.id,
            user_id=state.user_id,
            alert_id=state.alert_id,
            is_read=state.is_read,
            is_snoozed=state.is_snoozed,
            snooze_until=state.snooze_until,
            last_delivered=state.last_delivered,
            delivery_count=state.delivery_count,
            created_at=state.created_at,
            updated_at=state.updated_at,
            version=state.version,
        )

    def to_entity(self) -> UserAlertState:
        return UserAlertState(
            id=self.id,
            user_id=self.user_id,
            alert_id=self.alert_id,
            is_read=self.is_read,
            is_snoozed=self.is_snoozed,
            snooze_until=self.snooze_until,
            last_delivered=self.last_delivered,
            delivery_count=self.delivery_count,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
        )


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    team_id: Mapped[str] = mapped_column(String(64), index=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_entity(self) -> User:
        return User(
            id=self.id,
            name=self.name,
            email=self.email,
            phone_number=self.phone_number,
            team_id=self.team_id,
            organization_id=self.organization_id,
            is_active=self.is_active,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Alert Store
# ═══════════════════════════════════════════════════════════════════════════

def _in_window(now: datetime):
    return (
        AlertRow.status == AlertStatus.ACTIVE.value,
        AlertRow.start_time <= now,
        AlertRow.expiry_time > now,
    )


class SqlAlertStore(AlertStore):

    def __init__(self, db: Database):
        self._db = db

    async def create(self, alert: Alert) -> Alert:
        row = AlertRow(id=alert.id, created_at=alert.created_at)
        row.apply(alert)
        async with self._db.session() as session:
            session.add(row)
        return alert.copy()

    async def get_by_id(self, alert_id: str) -> Optional[Alert]:
        async with self._db.session() as session:
            row = await session.get(AlertRow, alert_id)
            return row.to_entity() if row else None

    async def save(self, alert: Alert) -> Alert:
        async with self._db.session() as session:
            row = await session.get(AlertRow, alert.id, with_for_update=True)
            if row is None:
                raise NotFoundError("Alert", alert_id=alert.id)
            stored_status = row.status
            row.apply(alert)
            if stored_status != AlertStatus.ACTIVE.value:
                row.status = stored_status
            return row.to_entity()

    async def list_all(self) -> List[Alert]:
        async with self._db.session() as session:
            rows = (await session.scalars(select(AlertRow))).all()
            return sort_for_display(row.to_entity() for row in rows)

    async def find_active_alerts(self, now: datetime) -> List[Alert]:
        async with self._db.session() as session:
            rows = (await session.scalars(select(AlertRow).where(*_in_window(now)))).all()
            return sort_for_display(row.to_entity() for row in rows)

    async def find_active_alerts_needing_reminders(self, now: datetime) -> List[Alert]:
        stmt = select(AlertRow).where(*_in_window(now), AlertRow.reminder_enabled.is_(True))
        async with self._db.session() as session:
            rows = (await session.scalars(stmt)).all()
            return [row.to_entity() for row in rows]

    async def find_alerts_visible_to(self, user_id: str, team_id: Optional[str],
                                     organization_id: Optional[str],
                                     now: datetime) -> List[Alert]:
        candidates = await self.find_active_alerts(now)
        return visible_alerts(candidates, user_id, team_id, organization_id, now)

    async def mark_expired_alerts(self, now: datetime) -> int:
        stmt = (
            update(AlertRow)
            .where(AlertRow.status == AlertStatus.ACTIVE.value, AlertRow.expiry_time < now)
            .values(status=AlertStatus.EXPIRED.value)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
        if result.rowcount:
            logger.info("Marked %d alerts as expired", result.rowcount)
        return result.rowcount or 0


# ═══════════════════════════════════════════════════════════════════════════
# User Alert State Store
# ═══════════════════════════════════════════════════════════════════════════

def _pair(user_id: str, alert_id: str):
    return (UserAlertStateRow.user_id == user_id, UserAlertStateRow.alert_id == alert_id)


class SqlUserAlertStateStore(UserAlertStateStore):

    def __init__(self, db: Database):
        self._db = db

    async def find_by_user_and_alert(self, user_id: str,
                                     alert_id: str) -> Optional[UserAlertState]:
        async with self._db.session() as session:
            row = await session.scalar(select(UserAlertStateRow).where(*_pair(user_id, alert_id)))
            return row.to_entity() if row else None

    async def upsert(self, state: UserAlertState) -> UserAlertState:
        conflict = ConcurrencyConflict("UserAlertState", user_id=state.user_id,
                                       alert_id=state.alert_id)
        try:
            async with self._db.session() as session:
                if state.version == 0:
                    saved = state.copy()
                    saved.version = 1
                    session.add(UserAlertStateRow.from_entity(saved))
                    await session.flush()
                    return saved

                stmt = (
                    update(UserAlertStateRow)
                    .where(*_pair(state.user_id, state.alert_id),
                           UserAlertStateRow.version == state.version)
                    .values(
                        is_read=state.is_read,
                        is_snoozed=state.is_snoozed,
                        snooze_until=state.snooze_until,
                        last_delivered=state.last_delivered,
                        updated_at=state.updated_at,
                        version=UserAlertStateRow.version + 1,
                    )
                )
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    raise conflict
                row = await session.scalar(
                    select(UserAlertStateRow)
                    .where(*_pair(state.user_id, state.alert_id))
                    .execution_options(populate_existing=True)
                )
                return row.to_entity()
        except IntegrityError:
            raise conflict

    async def record_delivery(self, user_id: str, alert_id: str,
                              now: datetime) -> UserAlertState:
        bound_now = literal(now, type_=UTCDateTime())
        stmt = (
            update(UserAlertStateRow)
            .where(*_pair(user_id, alert_id))
            .values(
                delivery_count=UserAlertStateRow.delivery_count + 1,
                last_delivered=now,
                updated_at=case(
                    (UserAlertStateRow.updated_at < bound_now, bound_now),
                    else_=UserAlertStateRow.updated_at,
                ),
                version=UserAlertStateRow.version + 1,
            )
        )
        try:
            return await self._increment(stmt, user_id, alert_id, now)
        except IntegrityError:
            # Lost the insert race for the first delivery; the row exists now.
            logger.debug("Concurrent first delivery for %s/%s, retrying", user_id, alert_id,
                         extra={"user_id": user_id, "alert_id": alert_id})
            return await self._increment(stmt, user_id, alert_id, now)

    async def _increment(self, stmt, user_id: str, alert_id: str,
                         now: datetime) -> UserAlertState:
        async with self._db.session() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                state = UserAlertState.default_for(user_id, alert_id, now=now)
                state.record_delivery(now)
                state.version = 1
                session.add(UserAlertStateRow.from_entity(state))
                await session.flush()
                return state
            row = await session.scalar(
                select(UserAlertStateRow)
                .where(*_pair(user_id, alert_id))
                .execution_options(populate_existing=True)
            )
            return row.to_entity()

    async def bulk_update_snooze_status(self, user_ids: Iterable[str], alert_id: str,
                                        snoozed: bool) -> int:
        touched = 0
        async with self._db.session() as session:
            for user_id in dict.fromkeys(user_ids):
                row = await session.scalar(
                    select(UserAlertStateRow).where(*_pair(user_id, alert_id))
                    .with_for_update()
                )
                state = row.to_entity() if row else UserAlertState.default_for(user_id, alert_id)
                if snoozed:
                    state.snooze_indefinitely()
                else:
                    state.unsnooze()
                if row is None:
                    state.version = 1
                    session.add(UserAlertStateRow.from_entity(state))
                else:
                    row.is_snoozed = state.is_snoozed
                    row.snooze_until = state.snooze_until
                    row.updated_at = state.updated_at
                    row.version = row.version + 1
                touched += 1
        return touched

    async def find_expired_snoozes(self, now: datetime) -> List[UserAlertState]:
        stmt = select(UserAlertStateRow).where(
            UserAlertStateRow.is_snoozed.is_(True),
            UserAlertStateRow.snooze_until.is_not(None),
            UserAlertStateRow.snooze_until <= now,
        )
        return await self._select(stmt)

    async def find_by_user(self, user_id: str) -> List[UserAlertState]:
        return await self._select(
            select(UserAlertStateRow).where(UserAlertStateRow.user_id == user_id)
        )

    async def find_by_alert(self, alert_id: str) -> List[UserAlertState]:
        return await self._select(
            select(UserAlertStateRow).where(UserAlertStateRow.alert_id == alert_id)
        )

    async def list_all(self) -> List[UserAlertState]:
        return await self._select(select(UserAlertStateRow))

    async def _select(self, stmt) -> List[UserAlertState]:
        async with self._db.session() as session:
            rows = (await session.scalars(stmt)).all()
            return [row.to_entity() for row in rows]


# ═══════════════════════════════════════════════════════════════════════════
# User Directory
# ═══════════════════════════════════════════════════════════════════════════

class SqlUserDirectory(UserDirectory):

    def __init__(self, db: Database):
        self._db = db

    async def add_user(self, user: User) -> None:
        async with self._db.session() as session:
            await session.merge(UserRow(**user.to_dict()))

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._db.session() as session:
            row = await session.get(UserRow, user_id)
            return row.to_entity() if row else None

    async def list_users(self) -> List[User]:
        async with self._db.session() as session:
            rows = (await session.scalars(select(UserRow))).all()
            return [row.to_entity() for row in rows]

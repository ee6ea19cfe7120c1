"""
Wiring — builds stores, channels, dispatcher, scheduler and services
from Settings and keeps them together for the app lifespan.

Usage:
    container = build_container()           # from environment settings
    container = build_container(settings, users=[...])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from alerting.alerts.analytics import AnalyticsService
from alerting.alerts.delivery import DeliveryDispatcher, build_default_channels
from alerting.alerts.models import User
from alerting.alerts.scheduler import ReminderScheduler
from alerting.alerts.services import AlertService, UserAlertService, UserService
from alerting.core.config import Settings, get_settings
from alerting.core.database import Database
from alerting.stores.base import AlertStore, UserAlertStateStore, UserDirectory
from alerting.stores.memory import (
    InMemoryAlertStore,
    InMemoryUserAlertStateStore,
    InMemoryUserDirectory,
)

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    alert_store: AlertStore
    state_store: UserAlertStateStore
    user_directory: UserDirectory
    dispatcher: DeliveryDispatcher
    scheduler: ReminderScheduler
    alert_service: AlertService
    user_alert_service: UserAlertService
    user_service: UserService
    analytics: AnalyticsService
    database: Optional[Database] = None

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.init_models()
        if self.settings.SCHEDULER_ENABLED:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        if self.database is not None:
            await self.database.close()


def build_container(
    settings: Optional[Settings] = None,
    *,
    users: Optional[Iterable[User]] = None,
    dispatcher: Optional[DeliveryDispatcher] = None,
) -> Container:
    """Assemble the object graph for ``settings.STORE_BACKEND``."""
    settings = settings or get_settings()
    database: Optional[Database] = None

    if settings.STORE_BACKEND == "sql":
        from alerting.stores.sql import SqlAlertStore, SqlUserAlertStateStore, SqlUserDirectory

        database = Database(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
        )
        alert_store: AlertStore = SqlAlertStore(database)
        state_store: UserAlertStateStore = SqlUserAlertStateStore(database)
        user_directory: UserDirectory = SqlUserDirectory(database)
    elif settings.STORE_BACKEND == "memory":
        alert_store = InMemoryAlertStore()
        state_store = InMemoryUserAlertStateStore()
        user_directory = InMemoryUserDirectory(users)
    else:
        raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")

    dispatcher = dispatcher or DeliveryDispatcher(build_default_channels(settings))
    scheduler = ReminderScheduler(
        alert_store,
        state_store,
        user_directory,
        dispatcher,
        interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
        max_workers=settings.SCHEDULER_MAX_WORKERS,
        drain_timeout=settings.SCHEDULER_DRAIN_TIMEOUT_SECONDS,
    )

    logger.info("Container built (store=%s, channels=%s)", settings.STORE_BACKEND,
                ", ".join(sorted(t.value for t in dispatcher.channels)))

    return Container(
        settings=settings,
        alert_store=alert_store,
        state_store=state_store,
        user_directory=user_directory,
        dispatcher=dispatcher,
        scheduler=scheduler,
        alert_service=AlertService(alert_store),
        user_alert_service=UserAlertService(alert_store, state_store, user_directory),
        user_service=UserService(user_directory),
        analytics=AnalyticsService(alert_store, state_store),
        database=database,
    )

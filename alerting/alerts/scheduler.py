"""
scheduler.py — Reminder control loop.

A fixed-interval asyncio loop that re-delivers active alerts until each
recipient snoozes, the alert expires, or it is archived.

═══════════════════════════════════════════════════════════════════════════
TICK FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Sweep           │  ACTIVE alerts past expiry → EXPIRED
    │                     │  lapsed timed snoozes → cleared
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Due alerts      │  active, reminders on, start ≤ now < expiry
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Recipients      │  visibility scope over the user directory
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Per (alert,     │  load state (absent → default)
    │     user) unit      │  reset lapsed snooze, persist if changed
    │                     │  skip if snoozed or reminder not yet due
    │                     │  dispatch; on success record_delivery
    └─────────────────────┘

Units run concurrently under a semaphore (max_workers). A failure in one
unit is logged and counted; it never aborts the others.

═══════════════════════════════════════════════════════════════════════════
OVERLAP POLICY
═══════════════════════════════════════════════════════════════════════════

    A fire that lands while the previous tick is still running is
    skipped, not queued (counted in ``skipped_ticks``). run_tick()
    itself refuses to overlap and returns None.

    stop() cancels the timer, then waits up to ``drain_timeout`` for the
    in-flight tick before cancelling it. Every mutation a tick performs
    is independently idempotent, so an abandoned tick leaves no corrupt
    state behind.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from alerting.alerts.delivery import DeliveryDispatcher
from alerting.alerts.models import Alert, Notification, User, utcnow
from alerting.alerts.visibility import resolve_recipients
from alerting.core.errors import ConcurrencyConflict
from alerting.core.logging_config import set_request_context
from alerting.stores.base import AlertStore, UserAlertStateStore, UserDirectory

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
FAILED = "failed"
SNOOZED = "snoozed"
NOT_DUE = "not_due"


@dataclass
class TickReport:
    """Counters for one tick."""
    tick: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    alerts: int = 0
    recipients: int = 0
    delivered: int = 0
    failed: int = 0
    snoozed: int = 0
    not_due: int = 0
    alerts_expired: int = 0
    snoozes_reset: int = 0
    errors: int = 0
    rate_limit_keys_dropped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class ReminderScheduler:
    """
    Periodic reminder delivery.

    Usage:
        scheduler = ReminderScheduler(alerts, states, users, dispatcher)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        alert_store: AlertStore,
        state_store: UserAlertStateStore,
        user_directory: UserDirectory,
        dispatcher: DeliveryDispatcher,
        *,
        interval_seconds: float = 60.0,
        max_workers: int = 8,
        drain_timeout: Optional[float] = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._alerts = alert_store
        self._states = state_store
        self._users = user_directory
        self._dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self.drain_timeout = drain_timeout
        self._clock = clock

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._current_tick: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

        self.tick_count = 0
        self.skipped_ticks = 0
        self.last_report: Optional[TickReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ──

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("Reminder scheduler started (interval=%.1fs, workers=%d)",
                    self.interval_seconds, self.max_workers)

    async def stop(self) -> None:
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tick = self._current_tick
        if tick is not None and not tick.done():
            logger.info("Draining in-flight tick (timeout=%s)", self.drain_timeout)
            try:
                await asyncio.wait_for(asyncio.shield(tick), timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Tick did not finish within %.1fs, cancelling",
                               self.drain_timeout)
                tick.cancel()
                try:
                    await tick
                except asyncio.CancelledError:
                    pass
        logger.info("Reminder scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self._fire()
            await asyncio.sleep(self.interval_seconds)

    def _fire(self) -> bool:
        """Start a tick unless one is in flight. Returns False when skipped."""
        if self._current_tick is not None and not self._current_tick.done():
            self.skipped_ticks += 1
            logger.warning("Previous tick still running, skipping (skipped=%d)",
                           self.skipped_ticks)
            return False
        self._current_tick = asyncio.create_task(self._guarded_tick())
        return True

    async def _guarded_tick(self) -> Optional[TickReport]:
        try:
            return await self.run_tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Reminder tick failed: %s", exc)
            return None

    # ── Tick ──

    async def run_tick(self, now: Optional[datetime] = None) -> Optional[TickReport]:
        """Run one full tick. Returns None if another tick is in progress."""
        if self._tick_lock.locked():
            logger.debug("Tick already in progress")
            return None

        async with self._tick_lock:
            self.tick_count += 1
            now = now or self._clock()
            report = TickReport(tick=self.tick_count, started_at=now)
            set_request_context(tick=report.tick)
            try:
                report.alerts_expired = await self._alerts.mark_expired_alerts(now)
                report.snoozes_reset = await self._reset_expired_snoozes(now)

                alerts = await self._alerts.find_active_alerts_needing_reminders(now)
                users = await self._users.list_users()
                units = [
                    (alert, user)
                    for alert in alerts
                    for user in resolve_recipients(alert, users)
                ]
                report.alerts = len(alerts)
                report.recipients = len(units)

                semaphore = asyncio.Semaphore(self.max_workers)

                async def worker(alert: Alert, user: User) -> None:
                    async with semaphore:
                        await self._process_unit(alert, user, now, report)

                await asyncio.gather(*(worker(a, u) for a, u in units))
                report.rate_limit_keys_dropped = self._dispatcher.cleanup_rate_limits()
            finally:
                report.finished_at = self._clock()
                self.last_report = report
                set_request_context()

        logger.info(
            "Tick %d: %d alerts, %d recipients → %d delivered, %d failed, "
            "%d snoozed, %d not due, %d errors",
            report.tick, report.alerts, report.recipients, report.delivered,
            report.failed, report.snoozed, report.not_due, report.errors,
            extra={"tick": report.tick, "recipient_count": report.recipients},
        )
        return report

    async def _reset_expired_snoozes(self, now: datetime) -> int:
        reset = 0
        for state in await self._states.find_expired_snoozes(now):
            if not state.reset_snooze_if_expired(now):
                continue
            try:
                await self._states.upsert(state)
                reset += 1
            except ConcurrencyConflict:
                logger.debug("Snooze reset for %s/%s lost a race, leaving it to the next tick",
                             state.user_id, state.alert_id)
        return reset

    async def _process_unit(self, alert: Alert, user: User, now: datetime,
                            report: TickReport) -> None:
        try:
            result = await self._remind(alert, user, now, report)
        except Exception as exc:
            report.errors += 1
            logger.exception(
                "Reminder for alert %s to %s failed: %s", alert.id, user.id, exc,
                extra={"alert_id": alert.id, "user_id": user.id},
            )
            return
        if result == DELIVERED:
            report.delivered += 1
        elif result == FAILED:
            report.failed += 1
        elif result == SNOOZED:
            report.snoozed += 1
        else:
            report.not_due += 1

    async def _remind(self, alert: Alert, user: User, now: datetime,
                      report: TickReport) -> str:
        state = await self._states.find_by_user_and_alert(user.id, alert.id)

        if state is not None:
            if state.reset_snooze_if_expired(now):
                state = await self._states.upsert(state)
                report.snoozes_reset += 1
            if not state.should_receive_reminder(now):
                return SNOOZED
            if not state.is_reminder_due(alert.reminder_frequency_hours, now):
                return NOT_DUE

        notification = Notification.for_alert(alert, user, now)
        outcome = await self._dispatcher.dispatch(notification, user)
        if not outcome.success:
            logger.warning(
                "Reminder for alert %s to %s not delivered after %d attempts: %s",
                alert.id, user.id, outcome.attempts, outcome.result.error_message,
                extra={"alert_id": alert.id, "user_id": user.id},
            )
            return FAILED

        await self._states.record_delivery(user.id, alert.id, now)
        return DELIVERED

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "skipped_ticks": self.skipped_ticks,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

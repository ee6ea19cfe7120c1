"""
analytics.py — Read-only system metrics.

    total_alerts_created     all alerts ever created (any status)
    delivered_vs_read        states with ≥1 delivery, states marked read,
                             and the total number of deliveries
    snoozed_per_alert        users currently snoozed, per alert id
    severity_breakdown       alert count per severity (every level listed)
    status_breakdown         alert count per lifecycle status
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict

from alerting.alerts.models import AlertSeverity, AlertStatus, utcnow
from alerting.stores.base import AlertStore, UserAlertStateStore

logger = logging.getLogger(__name__)


class AnalyticsService:

    def __init__(self, alert_store: AlertStore, state_store: UserAlertStateStore, *,
                 clock: Callable[[], datetime] = utcnow):
        self._alerts = alert_store
        self._states = state_store
        self._clock = clock

    async def get_system_metrics(self) -> Dict[str, Any]:
        now = self._clock()
        alerts = await self._alerts.list_all()
        states = await self._states.list_all()

        severity = Counter(a.severity for a in alerts)
        status = Counter(a.status for a in alerts)
        snoozed = Counter(s.alert_id for s in states if s.is_currently_snoozed(now))

        delivered = sum(1 for s in states if s.has_been_delivered())
        read = sum(1 for s in states if s.is_read)

        metrics = {
            "total_alerts_created": len(alerts),
            "delivered_vs_read": {
                "delivered": delivered,
                "read": read,
                "total_deliveries": sum(s.delivery_count for s in states),
                "read_rate": round(read / delivered, 4) if delivered else 0.0,
            },
            "snoozed_per_alert": dict(snoozed),
            "severity_breakdown": {sev.value: severity.get(sev, 0) for sev in AlertSeverity},
            "status_breakdown": {st.value: status.get(st, 0) for st in AlertStatus},
            "generated_at": now.isoformat(),
        }
        logger.debug("Computed system metrics over %d alerts, %d states",
                     len(alerts), len(states))
        return metrics

"""
visibility.py — Audience targeting for alerts.

Determines which users an alert is addressed to, and which alerts a
given user can currently see.

═══════════════════════════════════════════════════════════════════════════
SCOPE RULES
═══════════════════════════════════════════════════════════════════════════

    Visibility type   candidate matches when
    ───────────────   ─────────────────────────────────────────────
    organization      organization_id ∈ target_ids
                      (empty target_ids → every candidate)
    team              team_id ∈ target_ids
    user              user_id ∈ target_ids

A user's visible set is the union of all three predicates, restricted
to alerts that are ACTIVE and inside their window (start ≤ now < expiry).
Results are ordered most severe first, newest first within a severity.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional

from alerting.alerts.models import (
    Alert,
    AlertStatus,
    User,
    Visibility,
    VisibilityType,
    utcnow,
)

logger = logging.getLogger(__name__)


def _candidate_id(candidate: Any) -> Optional[str]:
    return getattr(candidate, "user_id", None) or getattr(candidate, "id", None)


def matches(visibility: Visibility, candidate: Any) -> bool:
    """
    Does ``candidate`` fall inside ``visibility``?

    ``candidate`` needs ``user_id`` (or ``id``), ``team_id`` and
    ``organization_id`` attributes; a ``User`` works as is.
    """
    if visibility.type == VisibilityType.ORGANIZATION:
        if not visibility.target_ids:
            return True
        return getattr(candidate, "organization_id", None) in visibility.target_ids
    if visibility.type == VisibilityType.TEAM:
        return getattr(candidate, "team_id", None) in visibility.target_ids
    if visibility.type == VisibilityType.USER:
        return _candidate_id(candidate) in visibility.target_ids
    return False


def resolve_recipients(alert: Alert, users: Iterable[User]) -> List[User]:
    """Active users in scope of ``alert``, first occurrence per id, input order kept."""
    seen = set()
    recipients: List[User] = []
    for user in users:
        if not user.is_active or user.id in seen:
            continue
        if matches(alert.visibility, user):
            seen.add(user.id)
            recipients.append(user)

    logger.debug(
        "Resolved %d recipients for alert %s (scope=%s)",
        len(recipients), alert.id, alert.visibility.type.value,
        extra={"alert_id": alert.id, "recipient_count": len(recipients)},
    )
    return recipients


class _Candidate:
    __slots__ = ("user_id", "team_id", "organization_id")

    def __init__(self, user_id: str, team_id: Optional[str], organization_id: Optional[str]):
        self.user_id = user_id
        self.team_id = team_id
        self.organization_id = organization_id


def sort_for_display(alerts: Iterable[Alert]) -> List[Alert]:
    """Severity descending, then newest first."""
    return sorted(
        alerts,
        key=lambda a: (a.severity.rank, a.created_at),
        reverse=True,
    )


def visible_alerts(
    alerts: Iterable[Alert],
    user_id: str,
    team_id: Optional[str],
    organization_id: Optional[str],
    now: Optional[datetime] = None,
) -> List[Alert]:
    """Alerts the given user can see right now, de-duplicated and sorted."""
    now = now or utcnow()
    candidate = _Candidate(user_id, team_id, organization_id)

    found = {}
    for alert in alerts:
        if alert.id in found:
            continue
        if alert.status != AlertStatus.ACTIVE:
            continue
        if not (alert.start_time <= now < alert.expiry_time):
            continue
        if matches(alert.visibility, candidate):
            found[alert.id] = alert

    return sort_for_display(found.values())

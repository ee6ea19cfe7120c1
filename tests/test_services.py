"""
test_services.py — Tests for AlertService, UserAlertService, UserService and analytics.

Run with:
    pytest tests/test_services.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from alerting.alerts.analytics import AnalyticsService
from alerting.alerts.models import AlertSeverity, AlertStatus, User
from alerting.alerts.services import AlertService, UserAlertService, UserService
from alerting.core.errors import (
    AlreadyExistsError,
    ConcurrencyConflict,
    InvalidArgumentError,
    NotFoundError,
    ValidationError,
)
from alerting.stores.memory import (
    InMemoryAlertStore,
    InMemoryUserAlertStateStore,
    InMemoryUserDirectory,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _make_fields(**overrides):
    fields = dict(
        title="Quarterly security training",
        message="Complete the module by Friday.",
        severity="info",
        delivery_type="in_app",
        visibility={"type": "organization", "target_ids": ["org-a"]},
        start_time=NOW - timedelta(minutes=5),
        expiry_time=NOW + timedelta(days=3),
        created_by="admin",
    )
    fields.update(overrides)
    return fields


class _Services:
    def __init__(self):
        self.alerts = InMemoryAlertStore()
        self.states = InMemoryUserAlertStateStore()
        self.users = InMemoryUserDirectory([
            User(id="u1", name="Ana", team_id="team-a", organization_id="org-a"),
            User(id="u2", name="Ben", team_id="team-b", organization_id="org-b"),
        ])
        self.admin = AlertService(self.alerts, clock=_clock)
        self.inbox = UserAlertService(self.alerts, self.states, self.users, clock=_clock)
        self.analytics = AnalyticsService(self.alerts, self.states, clock=_clock)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: AlertService
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertService:

    def test_create_and_get(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            return alert, await svc.admin.get_alert(alert.id)

        created, loaded = asyncio.run(scenario())
        assert loaded.id == created.id
        assert loaded.created_at == NOW

    def test_create_invalid_persists_nothing(self):
        async def scenario():
            svc = _Services()
            with pytest.raises(ValidationError):
                await svc.admin.create_alert(**_make_fields(title=""))
            return await svc.admin.list_alerts()

        assert asyncio.run(scenario()) == []

    def test_update_from_mapping(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            return await svc.admin.update_alert(alert.id, {"severity": "critical"})

        assert asyncio.run(scenario()).severity == AlertSeverity.CRITICAL

    def test_update_rejects_status(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            await svc.admin.update_alert(alert.id, {"status": "archived"})

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_missing_alert(self):
        async def scenario():
            svc = _Services()
            await svc.admin.archive_alert("missing")

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

    def test_archive_removes_from_active(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            archived = await svc.admin.archive_alert(alert.id)
            return archived, await svc.admin.list_active_alerts()

        archived, active = asyncio.run(scenario())
        assert archived.status == AlertStatus.ARCHIVED
        assert active == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: UserAlertService
# ═══════════════════════════════════════════════════════════════════════════

class TestUserAlertService:

    def test_default_state_without_row(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            state = await svc.inbox.get_state("u1", alert.id)
            return state, await svc.states.find_by_user_and_alert("u1", alert.id)

        state, stored = asyncio.run(scenario())
        assert not state.is_read
        assert stored is None

    def test_mark_read_and_unread(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            read = await svc.inbox.mark_read("u1", alert.id)
            unread = await svc.inbox.mark_unread("u1", alert.id)
            return read, unread

        read, unread = asyncio.run(scenario())
        assert read.is_read and read.version == 1
        assert not unread.is_read and unread.version == 2

    def test_snooze_for_day_uses_given_clock(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            return await svc.inbox.snooze_for_day("u1", alert.id, now=NOW)

        state = asyncio.run(scenario())
        assert state.snooze_until == datetime(2025, 3, 10, 23, 59, 59, 999999,
                                              tzinfo=timezone.utc)

    def test_snooze_until_and_unsnooze(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            snoozed = await svc.inbox.snooze_until("u1", alert.id, NOW + timedelta(hours=4))
            cleared = await svc.inbox.unsnooze("u1", alert.id)
            return snoozed, cleared

        snoozed, cleared = asyncio.run(scenario())
        assert snoozed.is_currently_snoozed(NOW)
        assert not cleared.is_snoozed

    def test_snooze_in_past_rejected(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            await svc.inbox.snooze_until("u1", alert.id, NOW - timedelta(minutes=1))

        with pytest.raises(InvalidArgumentError):
            asyncio.run(scenario())

    def test_unknown_user_or_alert(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            with pytest.raises(NotFoundError) as user_exc:
                await svc.inbox.mark_read("ghost", alert.id)
            with pytest.raises(NotFoundError) as alert_exc:
                await svc.inbox.mark_read("u1", "ghost")
            return user_exc.value, alert_exc.value

        user_err, alert_err = asyncio.run(scenario())
        assert user_err.details["resource"] == "User"
        assert alert_err.details["resource"] == "Alert"

    def test_conflict_retried_once(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            real_upsert = svc.states.upsert
            calls = []

            async def flaky(state):
                calls.append(state.version)
                if len(calls) == 1:
                    raise ConcurrencyConflict("UserAlertState", user_id="u1")
                return await real_upsert(state)

            with patch.object(svc.states, "upsert", side_effect=flaky):
                state = await svc.inbox.mark_read("u1", alert.id)
            return state, calls

        state, calls = asyncio.run(scenario())
        assert state.is_read
        assert len(calls) == 2

    def test_conflict_surfaces_after_retry(self):
        async def scenario():
            svc = _Services()
            alert = await svc.admin.create_alert(**_make_fields())
            conflict = ConcurrencyConflict("UserAlertState", user_id="u1")
            with patch.object(svc.states, "upsert", side_effect=conflict) as upsert:
                with pytest.raises(ConcurrencyConflict):
                    await svc.inbox.mark_read("u1", alert.id)
            return upsert.await_count

        assert asyncio.run(scenario()) == 2

    def test_list_alerts_for_user(self):
        async def scenario():
            svc = _Services()
            org_a = await svc.admin.create_alert(**_make_fields())
            await svc.admin.create_alert(**_make_fields(
                visibility={"type": "organization", "target_ids": ["org-b"]}))
            direct = await svc.admin.create_alert(**_make_fields(
                severity="critical", visibility={"type": "user", "target_ids": ["u1"]}))
            await svc.inbox.mark_read("u1", org_a.id)
            views = await svc.inbox.list_alerts_for_user("u1")
            return org_a, direct, views

        org_a, direct, views = asyncio.run(scenario())
        assert [v.alert.id for v in views] == [direct.id, org_a.id]
        assert views[1].state.is_read
        assert not views[0].state.is_read
        assert views[0].to_dict(NOW)["user_state"]["should_receive_reminder"] is True


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Analytics
# ═══════════════════════════════════════════════════════════════════════════

class TestAnalytics:

    def test_empty_system(self):
        metrics = asyncio.run(_Services().analytics.get_system_metrics())
        assert metrics["total_alerts_created"] == 0
        assert metrics["delivered_vs_read"]["read_rate"] == 0.0
        assert metrics["severity_breakdown"] == {"info": 0, "warning": 0, "critical": 0}
        assert metrics["status_breakdown"] == {"active": 0, "expired": 0, "archived": 0}

    def test_system_metrics(self):
        async def scenario():
            svc = _Services()
            a1 = await svc.admin.create_alert(**_make_fields())
            a2 = await svc.admin.create_alert(**_make_fields(severity="critical"))
            await svc.admin.archive_alert(a2.id)
            await svc.states.record_delivery("u1", a1.id, NOW)
            await svc.states.record_delivery("u1", a1.id, NOW)
            await svc.states.record_delivery("u2", a1.id, NOW)
            await svc.inbox.mark_read("u1", a1.id)
            await svc.inbox.snooze_until("u2", a1.id, NOW + timedelta(hours=1))
            return a1, await svc.analytics.get_system_metrics()

        a1, metrics = asyncio.run(scenario())
        assert metrics["total_alerts_created"] == 2
        assert metrics["delivered_vs_read"] == {
            "delivered": 2, "read": 1, "total_deliveries": 3, "read_rate": 0.5,
        }
        assert metrics["snoozed_per_alert"] == {a1.id: 1}
        assert metrics["severity_breakdown"]["critical"] == 1
        assert metrics["status_breakdown"]["archived"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: UserService
# ═══════════════════════════════════════════════════════════════════════════

class TestUserService:

    def test_registered_user_receives_alerts(self):
        async def scenario():
            svc = _Services()
            users = UserService(svc.users)
            await users.register_user(id="u3", name="Cy", team_id="team-c",
                                      organization_id="org-a")
            alert = await svc.admin.create_alert(**_make_fields())
            return await svc.inbox.mark_read("u3", alert.id)

        assert asyncio.run(scenario()).is_read

    def test_duplicate_rejected(self):
        async def scenario():
            svc = _Services()
            await UserService(svc.users).register_user(
                id="u1", name="Other", team_id="team-z", organization_id="org-z")

        with pytest.raises(AlreadyExistsError):
            asyncio.run(scenario())

    def test_get_and_filter(self):
        async def scenario():
            users = UserService(_Services().users)
            by_org = await users.list_users(organization_id="org-b")
            by_team = await users.list_users(team_id="team-a", organization_id="org-a")
            with pytest.raises(NotFoundError):
                await users.get_user("ghost")
            return await users.get_user("u1"), by_org, by_team

        found, by_org, by_team = asyncio.run(scenario())
        assert found.name == "Ana"
        assert [u.id for u in by_org] == ["u2"]
        assert [u.id for u in by_team] == ["u1"]

"""
test_alert_model.py — Tests for the Alert entity and its value types.

Covers:
    • Alert.create validation (title, message, window, frequency, creator)
    • Visibility construction and coercion
    • Partial updates (staged, all-or-nothing)
    • Lifecycle transitions (archive / expire are final)
    • Time predicates (is_active / is_expired)

Run with:
    pytest tests/test_alert_model.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from alerting.alerts.models import (
    DEFAULT_REMINDER_FREQUENCY_HOURS,
    Alert,
    AlertPatch,
    AlertSeverity,
    AlertStatus,
    DeliveryResult,
    DeliveryType,
    Notification,
    User,
    Visibility,
    VisibilityType,
)
from alerting.core.errors import ValidationError


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _make_alert(**overrides) -> Alert:
    fields = dict(
        title="Database failover tonight",
        message="Expect 5 minutes of read-only mode at 22:00 UTC.",
        severity=AlertSeverity.WARNING,
        delivery_type=DeliveryType.IN_APP,
        visibility={"type": "organization", "target_ids": ["org-a"]},
        start_time=NOW - timedelta(seconds=1),
        expiry_time=NOW + timedelta(days=1),
        created_by="admin-1",
    )
    fields.update(overrides)
    return Alert.create(**fields, now=NOW)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Enums
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertSeverity:

    def test_rank_ordering(self):
        assert AlertSeverity.INFO.rank < AlertSeverity.WARNING.rank < AlertSeverity.CRITICAL.rank

    def test_string_values(self):
        assert AlertSeverity("critical") is AlertSeverity.CRITICAL
        assert DeliveryType.IN_APP.value == "in_app"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Alert.create
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertCreate:

    def test_defaults(self):
        alert = _make_alert()
        assert alert.status == AlertStatus.ACTIVE
        assert alert.reminder_enabled is True
        assert alert.reminder_frequency_hours == DEFAULT_REMINDER_FREQUENCY_HOURS
        assert alert.created_at == NOW
        assert alert.id

    def test_ids_are_unique(self):
        assert _make_alert().id != _make_alert().id

    def test_accepts_string_enums(self):
        alert = _make_alert(severity="critical", delivery_type="sms")
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.delivery_type == DeliveryType.SMS

    def test_title_is_trimmed(self):
        assert _make_alert(title="  Outage  ").title == "Outage"

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(title="   ")
        assert exc.value.message == "Alert title is required"
        assert exc.value.field == "title"

    def test_title_length_limit(self):
        _make_alert(title="x" * 255)
        with pytest.raises(ValidationError) as exc:
            _make_alert(title="x" * 256)
        assert exc.value.message == "Alert title must be 255 characters or less"

    def test_message_length_limit(self):
        _make_alert(message="m" * 5000)
        with pytest.raises(ValidationError) as exc:
            _make_alert(message="m" * 5001)
        assert exc.value.field == "message"

    def test_expiry_must_be_in_future(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(start_time=NOW - timedelta(hours=2), expiry_time=NOW)
        assert exc.value.message == "Alert expiry time must be in the future"
        assert exc.value.field == "expiry_time"

    def test_start_must_precede_expiry(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(start_time=NOW + timedelta(hours=3), expiry_time=NOW + timedelta(hours=2))
        assert exc.value.message == "Alert start time must be before expiry time"
        assert exc.value.field == "start_time"

    def test_start_in_future_allowed(self):
        alert = _make_alert(start_time=NOW + timedelta(hours=1))
        assert not alert.is_active(NOW)

    @pytest.mark.parametrize("frequency", [0, -1, -0.5])
    def test_frequency_must_be_positive(self, frequency):
        with pytest.raises(ValidationError) as exc:
            _make_alert(reminder_frequency_hours=frequency)
        assert exc.value.message == "Reminder frequency must be greater than 0"

    def test_fractional_frequency_allowed(self):
        assert _make_alert(reminder_frequency_hours=0.5).reminder_frequency_hours == 0.5

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(start_time=datetime(2025, 3, 10, 11, 0))
        assert exc.value.field == "start_time"

    def test_creator_required(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(created_by="")
        assert exc.value.message == "Alert creator is required"

    def test_invalid_severity(self):
        with pytest.raises(ValidationError) as exc:
            _make_alert(severity="catastrophic")
        assert exc.value.field == "severity"

    def test_reminders_can_be_disabled(self):
        assert _make_alert(reminder_enabled=False).reminder_enabled is False

    def test_to_dict(self):
        d = _make_alert().to_dict()
        assert d["severity"] == "warning"
        assert d["delivery_type"] == "in_app"
        assert d["visibility"] == {"type": "organization", "target_ids": ["org-a"]}
        assert d["status"] == "active"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Visibility
# ═══════════════════════════════════════════════════════════════════════════

class TestVisibility:

    def test_team_requires_targets(self):
        with pytest.raises(ValidationError) as exc:
            Visibility.create("team", [])
        assert exc.value.message == "At least one target ID is required for visibility type: team"

    def test_user_requires_targets(self):
        with pytest.raises(ValidationError):
            Visibility.create(VisibilityType.USER, None)

    def test_organization_may_be_empty(self):
        vis = Visibility.create("organization", [])
        assert vis.type == VisibilityType.ORGANIZATION
        assert vis.target_ids == frozenset()

    def test_blank_target_rejected(self):
        with pytest.raises(ValidationError) as exc:
            Visibility.create("team", ["team-a", " "])
        assert exc.value.message == "All target IDs must be non-empty strings"

    def test_non_string_target_rejected(self):
        with pytest.raises(ValidationError):
            Visibility.create("user", [42])

    def test_duplicates_collapse(self):
        vis = Visibility.create("user", ["u1", "u1", "u2"])
        assert vis.to_dict() == {"type": "user", "target_ids": ["u1", "u2"]}

    def test_coerce_mapping(self):
        vis = Visibility.coerce({"type": "team", "target_ids": ["t1"]})
        assert vis == Visibility(VisibilityType.TEAM, frozenset({"t1"}))

    def test_coerce_rejects_garbage(self):
        with pytest.raises(ValidationError) as exc:
            Visibility.coerce(None)
        assert exc.value.message == "Visibility configuration is required"

    def test_invalid_type(self):
        with pytest.raises(ValidationError):
            Visibility.create("planet", ["x"])


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Updates
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertUpdate:

    def test_updates_provided_fields_only(self):
        alert = _make_alert()
        alert.update({"title": "New title", "severity": "critical"}, now=NOW)
        assert alert.title == "New title"
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.message.startswith("Expect")

    def test_rejected_patch_leaves_alert_unchanged(self):
        alert = _make_alert()
        before = alert.to_dict()
        with pytest.raises(ValidationError):
            alert.update(AlertPatch(title="Valid title", reminder_frequency_hours=0), now=NOW)
        assert alert.to_dict() == before

    def test_window_rechecked_against_merged_values(self):
        alert = _make_alert()
        with pytest.raises(ValidationError) as exc:
            alert.update({"start_time": alert.expiry_time + timedelta(hours=1)}, now=NOW)
        assert exc.value.field == "start_time"

    def test_moving_expiry_into_past_rejected(self):
        alert = _make_alert()
        with pytest.raises(ValidationError) as exc:
            alert.update({"expiry_time": NOW - timedelta(minutes=1),
                          "start_time": NOW - timedelta(hours=1)}, now=NOW)
        assert exc.value.field == "expiry_time"

    def test_non_window_edit_after_expiry_allowed(self):
        alert = _make_alert()
        alert.update({"message": "Postponed"}, now=NOW + timedelta(days=2))
        assert alert.message == "Postponed"

    def test_status_not_patchable(self):
        with pytest.raises(ValidationError) as exc:
            AlertPatch.from_mapping({"status": "archived"})
        assert exc.value.message == "Field cannot be updated: status"

    def test_visibility_patch(self):
        alert = _make_alert()
        alert.update({"visibility": {"type": "user", "target_ids": ["u9"]}}, now=NOW)
        assert alert.visibility.type == VisibilityType.USER

    def test_provided_ignores_none(self):
        assert AlertPatch(title="x").provided() == {"title": "x"}


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Lifecycle & Time Predicates
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertLifecycle:

    def test_archive_is_idempotent(self):
        alert = _make_alert()
        assert alert.archive() is True
        assert alert.archive() is False
        assert alert.status == AlertStatus.ARCHIVED

    def test_terminal_states_are_final(self):
        alert = _make_alert()
        alert.archive()
        assert alert.mark_expired() is False
        assert alert.status == AlertStatus.ARCHIVED

        expired = _make_alert()
        assert expired.mark_expired() is True
        assert expired.archive() is False
        assert expired.status == AlertStatus.EXPIRED

    def test_is_active_window_inclusive(self):
        alert = _make_alert()
        assert alert.is_active(alert.start_time)
        assert alert.is_active(alert.expiry_time)
        assert not alert.is_active(alert.start_time - timedelta(microseconds=1))
        assert not alert.is_active(alert.expiry_time + timedelta(microseconds=1))

    def test_archived_is_not_active(self):
        alert = _make_alert()
        alert.archive()
        assert not alert.is_active(NOW)

    def test_is_expired(self):
        alert = _make_alert()
        assert not alert.is_expired(NOW)
        assert alert.is_expired(alert.expiry_time + timedelta(seconds=1))
        alert.mark_expired()
        assert alert.is_expired(NOW)

    def test_copy_is_independent(self):
        alert = _make_alert()
        clone = alert.copy()
        clone.archive()
        assert alert.status == AlertStatus.ACTIVE


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Notification & DeliveryResult
# ═══════════════════════════════════════════════════════════════════════════

class TestNotification:

    def test_for_alert(self):
        alert = _make_alert()
        user = User(id="u1", name="Ana", team_id="t1", organization_id="org-a")
        n = Notification.for_alert(alert, user, NOW)
        assert n.alert_id == alert.id
        assert n.user_id == "u1"
        assert n.delivery_type == DeliveryType.IN_APP
        assert n.timestamp == NOW

    def test_failure_result(self):
        result = DeliveryResult.failure("boom", notification_id="n1")
        assert not result.success
        assert result.error_message == "boom"
        assert result.to_dict()["success"] is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 7: User records
# ═══════════════════════════════════════════════════════════════════════════

class TestUserCreate:

    def test_trims_and_keeps_given_id(self):
        user = User.create(id=" u1 ", name="  Ana ", team_id="team-a", organization_id="org-a",
                           email=" ana@example.com ", phone_number="+15551234567")
        assert user.id == "u1"
        assert user.name == "Ana"
        assert user.email == "ana@example.com"
        assert user.is_active

    def test_generates_id(self):
        first = User.create(name="Ana", team_id="t", organization_id="o")
        second = User.create(name="Ana", team_id="t", organization_id="o")
        assert first.id and first.id != second.id

    @pytest.mark.parametrize("field,value", [
        ("name", "  "), ("team_id", ""), ("organization_id", None),
    ])
    def test_required_fields(self, field, value):
        fields = dict(name="Ana", team_id="t", organization_id="o")
        fields[field] = value
        with pytest.raises(ValidationError) as exc:
            User.create(**fields)
        assert exc.value.details["field"] == field

    def test_malformed_contacts(self):
        with pytest.raises(ValidationError) as exc:
            User.create(name="Ana", team_id="t", organization_id="o", email="ana@")
        assert exc.value.details["field"] == "email"
        with pytest.raises(ValidationError) as exc:
            User.create(name="Ana", team_id="t", organization_id="o", phone_number="5551234")
        assert exc.value.details["field"] == "phone_number"

"""
models.py — Shared data structures for the alerting system.

Defines:
    • AlertSeverity   — info / warning / critical, with a sort rank
    • AlertStatus     — lifecycle: active → expired | archived
    • VisibilityType  — organization / team / user scope
    • DeliveryType    — in_app / email / sms channel tag
    • Visibility      — scope + target ids
    • Alert           — validated, time-bounded alert definition
    • AlertPatch      — partial update for an Alert
    • User            — directory record of a potential recipient
    • Notification    — per-(alert, user) message handed to a channel
    • DeliveryResult  — outcome of one channel send

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌────────┐  archive()      ┌──────────┐
    │ active │ ──────────────▶ │ archived │
    └───┬────┘                 └──────────┘
        │ mark_expired()       ┌──────────┐
        └────────────────────▶ │ expired  │
                               └──────────┘

Both terminal states are final: archiving an expired alert or expiring
an archived one leaves the status untouched. Alerts are never deleted.

"Active" as a time predicate is narrower than the status:

    is_active(now)  = status == active  and  start_time ≤ now ≤ expiry_time
    is_expired(now) = now > expiry_time or status == expired
"""

from __future__ import annotations

import dataclasses
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Type, TypeVar, Union

from alerting.core.errors import ValidationError

TITLE_MAX_LENGTH = 255
MESSAGE_MAX_LENGTH = 5000
DEFAULT_REMINDER_FREQUENCY_HOURS = 2
NAME_MAX_LENGTH = 255

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO     = "info"
    WARNING  = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key — higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Dict[AlertSeverity, int] = {
    AlertSeverity.INFO: 1,
    AlertSeverity.WARNING: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    ACTIVE   = "active"
    EXPIRED  = "expired"
    ARCHIVED = "archived"


class VisibilityType(str, Enum):
    """Who an alert is addressed to."""
    ORGANIZATION = "organization"
    TEAM         = "team"
    USER         = "user"


class DeliveryType(str, Enum):
    """Available delivery channels."""
    IN_APP = "in_app"
    EMAIL  = "email"
    SMS    = "sms"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

E = TypeVar("E", bound=Enum)


def _generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_enum(enum_cls: Type[E], value: Any, *, field_name: str, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {label}: {value!r}", field=field_name)


def _clean_text(value: Any, *, field_name: str, label: str, max_length: int) -> str:
    """Trim and length-check a required text field."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", field=field_name)
    cleaned = value.strip()
    if len(cleaned) > max_length:
        raise ValidationError(
            f"{label} must be {max_length} characters or less",
            field=field_name,
            max_length=max_length,
        )
    return cleaned


def _require_aware(value: Any, *, field_name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field_name} must be a datetime", field=field_name)
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field_name} must be timezone-aware", field=field_name)
    return value


def _check_frequency(value: Any) -> Union[int, float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError(
            "Reminder frequency must be greater than 0",
            field="reminder_frequency_hours",
        )
    return value


def _check_time_window(start: datetime, expiry: datetime, now: Optional[datetime]) -> None:
    """Expiry must be in the future (when ``now`` given) and after start."""
    if now is not None and expiry <= now:
        raise ValidationError("Alert expiry time must be in the future", field="expiry_time")
    if start >= expiry:
        raise ValidationError("Alert start time must be before expiry time", field="start_time")


# ═══════════════════════════════════════════════════════════════════════════
# Visibility
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Visibility:
    """
    Visibility scope of an alert.

    ``target_ids`` holds organization, team or user ids depending on
    ``type``. An organization scope may leave it empty, which addresses
    every user of the deployment.
    """
    type: VisibilityType
    target_ids: FrozenSet[str] = frozenset()

    @classmethod
    def create(cls, type: Any, target_ids: Optional[Iterable[str]] = None) -> "Visibility":
        vtype = _coerce_enum(VisibilityType, type, field_name="visibility.type",
                             label="visibility type")
        if isinstance(target_ids, str):
            raise ValidationError(
                "Target IDs must be a collection of ids",
                field="visibility.target_ids",
            )
        ids = []
        for target in target_ids or ():
            if not isinstance(target, str) or not target.strip():
                raise ValidationError(
                    "All target IDs must be non-empty strings",
                    field="visibility.target_ids",
                )
            ids.append(target.strip())

        if vtype != VisibilityType.ORGANIZATION and not ids:
            raise ValidationError(
                f"At least one target ID is required for visibility type: {vtype.value}",
                field="visibility.target_ids",
            )
        return cls(type=vtype, target_ids=frozenset(ids))

    @classmethod
    def coerce(cls, value: Any) -> "Visibility":
        """Accept a Visibility or a ``{"type", "target_ids"}`` mapping."""
        if isinstance(value, Visibility):
            return cls.create(value.type, value.target_ids)
        if isinstance(value, Mapping):
            return cls.create(value.get("type"), value.get("target_ids"))
        raise ValidationError("Visibility configuration is required", field="visibility")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "target_ids": sorted(self.target_ids)}


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

_PATCHABLE_FIELDS = (
    "title", "message", "severity", "delivery_type", "visibility",
    "start_time", "expiry_time", "reminder_enabled", "reminder_frequency_hours",
)


@dataclass
class AlertPatch:
    """Partial update for an Alert. ``None`` means "leave unchanged"."""
    title: Optional[str] = None
    message: Optional[str] = None
    severity: Optional[Union[AlertSeverity, str]] = None
    delivery_type: Optional[Union[DeliveryType, str]] = None
    visibility: Optional[Union[Visibility, Mapping[str, Any]]] = None
    start_time: Optional[datetime] = None
    expiry_time: Optional[datetime] = None
    reminder_enabled: Optional[bool] = None
    reminder_frequency_hours: Optional[float] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AlertPatch":
        unknown = sorted(set(data) - set(_PATCHABLE_FIELDS))
        if unknown:
            raise ValidationError(
                f"Field cannot be updated: {', '.join(unknown)}",
                field=unknown[0],
            )
        return cls(**dict(data))

    def provided(self) -> Dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in _PATCHABLE_FIELDS
            if getattr(self, name) is not None
        }


@dataclass
class Alert:
    """A time-bounded alert definition. Build new ones via ``Alert.create``."""
    title: str
    message: str
    severity: AlertSeverity
    delivery_type: DeliveryType
    visibility: Visibility
    start_time: datetime
    expiry_time: datetime
    created_by: str
    reminder_enabled: bool = True
    reminder_frequency_hours: float = DEFAULT_REMINDER_FREQUENCY_HOURS
    id: str = field(default_factory=_generate_id)
    created_at: datetime = field(default_factory=utcnow)
    status: AlertStatus = AlertStatus.ACTIVE

    # ── Construction ──

    @classmethod
    def create(
        cls,
        title: str,
        message: str,
        severity: Union[AlertSeverity, str],
        delivery_type: Union[DeliveryType, str],
        visibility: Union[Visibility, Mapping[str, Any]],
        start_time: datetime,
        expiry_time: datetime,
        created_by: str,
        reminder_enabled: Optional[bool] = None,
        reminder_frequency_hours: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Alert":
        """
        Validate the inputs and return a new active alert.

        Raises
        ------
        ValidationError
            Naming the first violated rule (``err.field`` says which).
        """
        now = now or utcnow()
        clean_title = _clean_text(title, field_name="title", label="Alert title",
                                  max_length=TITLE_MAX_LENGTH)
        clean_message = _clean_text(message, field_name="message", label="Alert message",
                                    max_length=MESSAGE_MAX_LENGTH)
        sev = _coerce_enum(AlertSeverity, severity, field_name="severity",
                           label="alert severity")
        dtype = _coerce_enum(DeliveryType, delivery_type, field_name="delivery_type",
                             label="delivery type")
        vis = Visibility.coerce(visibility)
        start = _require_aware(start_time, field_name="start_time")
        expiry = _require_aware(expiry_time, field_name="expiry_time")
        _check_time_window(start, expiry, now)

        frequency = DEFAULT_REMINDER_FREQUENCY_HOURS
        if reminder_frequency_hours is not None:
            frequency = _check_frequency(reminder_frequency_hours)

        if not isinstance(created_by, str) or not created_by.strip():
            raise ValidationError("Alert creator is required", field="created_by")

        return cls(
            title=clean_title,
            message=clean_message,
            severity=sev,
            delivery_type=dtype,
            visibility=vis,
            start_time=start,
            expiry_time=expiry,
            created_by=created_by.strip(),
            reminder_enabled=True if reminder_enabled is None else bool(reminder_enabled),
            reminder_frequency_hours=frequency,
            created_at=now,
        )

    # ── Mutation ──

    def update(self, patch: Union[AlertPatch, Mapping[str, Any]], *,
               now: Optional[datetime] = None) -> None:
        """
        Apply the provided fields of ``patch``.

        Every field is validated and the merged start/expiry window is
        re-checked before anything is assigned, so a rejected patch
        leaves the alert exactly as it was. Expiry must still lie in the
        future when the patch moves either end of the window.
        """
        if not isinstance(patch, AlertPatch):
            patch = AlertPatch.from_mapping(patch)
        changes = patch.provided()
        staged: Dict[str, Any] = {}

        if "title" in changes:
            staged["title"] = _clean_text(changes["title"], field_name="title",
                                          label="Alert title", max_length=TITLE_MAX_LENGTH)
        if "message" in changes:
            staged["message"] = _clean_text(changes["message"], field_name="message",
                                            label="Alert message",
                                            max_length=MESSAGE_MAX_LENGTH)
        if "severity" in changes:
            staged["severity"] = _coerce_enum(AlertSeverity, changes["severity"],
                                              field_name="severity", label="alert severity")
        if "delivery_type" in changes:
            staged["delivery_type"] = _coerce_enum(DeliveryType, changes["delivery_type"],
                                                   field_name="delivery_type",
                                                   label="delivery type")
        if "visibility" in changes:
            staged["visibility"] = Visibility.coerce(changes["visibility"])
        if "start_time" in changes:
            staged["start_time"] = _require_aware(changes["start_time"], field_name="start_time")
        if "expiry_time" in changes:
            staged["expiry_time"] = _require_aware(changes["expiry_time"],
                                                   field_name="expiry_time")
        if "reminder_enabled" in changes:
            staged["reminder_enabled"] = bool(changes["reminder_enabled"])
        if "reminder_frequency_hours" in changes:
            staged["reminder_frequency_hours"] = _check_frequency(
                changes["reminder_frequency_hours"]
            )

        window_changed = "start_time" in staged or "expiry_time" in staged
        _check_time_window(
            staged.get("start_time", self.start_time),
            staged.get("expiry_time", self.expiry_time),
            (now or utcnow()) if window_changed else None,
        )

        for name, value in staged.items():
            setattr(self, name, value)

    def archive(self) -> bool:
        """Move to ARCHIVED. Returns True if the status changed."""
        if self.status != AlertStatus.ACTIVE:
            return False
        self.status = AlertStatus.ARCHIVED
        return True

    def mark_expired(self) -> bool:
        """Move to EXPIRED (periodic sweep). Returns True if the status changed."""
        if self.status != AlertStatus.ACTIVE:
            return False
        self.status = AlertStatus.EXPIRED
        return True

    # ── Queries ──

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == AlertStatus.ACTIVE
            and self.start_time <= now <= self.expiry_time
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now > self.expiry_time or self.status == AlertStatus.EXPIRED

    def copy(self) -> "Alert":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "delivery_type": self.delivery_type.value,
            "visibility": self.visibility.to_dict(),
            "start_time": self.start_time.isoformat(),
            "expiry_time": self.expiry_time.isoformat(),
            "reminder_enabled": self.reminder_enabled,
            "reminder_frequency_hours": self.reminder_frequency_hours,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Recipients & Messages
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class User:
    """
    A potential alert recipient.

    Attributes
    ----------
    id : str
        Unique identifier.
    name : str
        Display name.
    email : str | None
        Address for the email channel.
    phone_number : str | None
        E.164 number for the SMS channel (+15551234567).
    team_id, organization_id : str
        Scope memberships used by visibility resolution.
    is_active : bool
        Inactive users receive nothing.
    """
    id: str
    name: str
    team_id: str
    organization_id: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True

    @classmethod
    def create(
        cls,
        name: str,
        team_id: str,
        organization_id: str,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        is_active: bool = True,
        id: Optional[str] = None,
    ) -> "User":
        """
        Validate a directory record. A missing ``id`` gets a fresh uuid4.

        Raises
        ------
        ValidationError
            For blank name / team / organization or malformed contacts.
        """
        clean_name = _clean_text(name, field_name="name", label="User name",
                                 max_length=NAME_MAX_LENGTH)
        clean_team = _clean_text(team_id, field_name="team_id", label="Team id",
                                 max_length=NAME_MAX_LENGTH)
        clean_org = _clean_text(organization_id, field_name="organization_id",
                                label="Organization id", max_length=NAME_MAX_LENGTH)
        email = email.strip() if email else None
        if email and not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", field="email")
        phone_number = phone_number.strip() if phone_number else None
        if phone_number and not E164_PATTERN.match(phone_number):
            raise ValidationError("Phone number must be in E.164 format",
                                  field="phone_number")
        user_id = id.strip() if id and id.strip() else str(uuid.uuid4())
        return cls(
            id=user_id,
            name=clean_name,
            team_id=clean_team,
            organization_id=clean_org,
            email=email,
            phone_number=phone_number,
            is_active=is_active,
        )

    @property
    def user_id(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone_number": self.phone_number,
            "team_id": self.team_id,
            "organization_id": self.organization_id,
            "is_active": self.is_active,
        }


@dataclass
class Notification:
    """The message a channel delivers for one (alert, user) pair."""
    alert_id: str
    user_id: str
    title: str
    message: str
    severity: AlertSeverity
    delivery_type: DeliveryType
    id: str = field(default_factory=_generate_id)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def for_alert(cls, alert: Alert, user: User,
                  now: Optional[datetime] = None) -> "Notification":
        return cls(
            alert_id=alert.id,
            user_id=user.id,
            title=alert.title,
            message=alert.message,
            severity=alert.severity,
            delivery_type=alert.delivery_type,
            timestamp=now or utcnow(),
        )


@dataclass
class DeliveryResult:
    """Outcome of a single channel send."""
    success: bool
    delivery_id: str
    timestamp: datetime = field(default_factory=utcnow)
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, error_message: str, *, notification_id: str = "") -> "DeliveryResult":
        now = utcnow()
        return cls(
            success=False,
            delivery_id=f"failed-{notification_id}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            error_message=error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "delivery_id": self.delivery_id,
            "timestamp": self.timestamp.isoformat(),
            "error_message": self.error_message,
        }

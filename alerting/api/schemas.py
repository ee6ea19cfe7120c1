"""
Pydantic schemas for the alerting API.

Kept apart from the route handlers so they are reusable in tests and
background tooling. Domain rules (lengths, time windows, target ids)
are enforced by the entities; these models only shape the payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from alerting.alerts.models import AlertSeverity, AlertStatus, DeliveryType, VisibilityType


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class VisibilityIn(BaseModel):
    type: VisibilityType = Field(..., examples=["team"])
    target_ids: List[str] = Field(default_factory=list, examples=[["team-ops"]])


class AlertCreateRequest(BaseModel):
    """Create a new alert."""
    title: str = Field(..., examples=["Database failover tonight"])
    message: str = Field(..., examples=["Expect 5 minutes of read-only mode at 22:00 UTC."])
    severity: AlertSeverity = Field(..., examples=["warning"])
    delivery_type: DeliveryType = Field(DeliveryType.IN_APP, examples=["email"])
    visibility: VisibilityIn
    start_time: datetime
    expiry_time: datetime
    reminder_enabled: Optional[bool] = None
    reminder_frequency_hours: Optional[float] = Field(None, examples=[2])
    created_by: str = Field(..., examples=["admin-1"])


class AlertUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    message: Optional[str] = None
    severity: Optional[AlertSeverity] = None
    delivery_type: Optional[DeliveryType] = None
    visibility: Optional[VisibilityIn] = None
    start_time: Optional[datetime] = None
    expiry_time: Optional[datetime] = None
    reminder_enabled: Optional[bool] = None
    reminder_frequency_hours: Optional[float] = None

    def to_patch_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UserCreateRequest(BaseModel):
    """Register a recipient. Omit ``id`` to have one generated."""
    id: Optional[str] = Field(None, examples=["u-ana"])
    name: str = Field(..., examples=["Ana Lima"])
    team_id: str = Field(..., examples=["team-ops"])
    organization_id: str = Field(..., examples=["org-acme"])
    email: Optional[str] = Field(None, examples=["ana@example.com"])
    phone_number: Optional[str] = Field(None, examples=["+15551234567"])
    is_active: bool = True


class SnoozeRequest(BaseModel):
    """Omit ``until`` to snooze for the rest of the day."""
    until: Optional[datetime] = Field(None, description="Timezone-aware snooze end")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class UserOut(BaseModel):
    id: str
    name: str
    team_id: str
    organization_id: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool


class VisibilityOut(BaseModel):
    type: VisibilityType
    target_ids: List[str]


class AlertOut(BaseModel):
    id: str
    title: str
    message: str
    severity: AlertSeverity
    delivery_type: DeliveryType
    visibility: VisibilityOut
    start_time: datetime
    expiry_time: datetime
    reminder_enabled: bool
    reminder_frequency_hours: float
    created_by: str
    created_at: datetime
    status: AlertStatus


class UserAlertStateOut(BaseModel):
    user_id: str
    alert_id: str
    is_read: bool
    is_snoozed: bool
    snooze_until: Optional[datetime] = None
    last_delivered: Optional[datetime] = None
    delivery_count: int
    updated_at: datetime


class UserStateInfo(BaseModel):
    is_read: bool
    is_snoozed: bool
    is_currently_snoozed: bool
    snooze_time_remaining_seconds: float
    delivery_count: int
    has_been_delivered: bool
    seconds_since_last_delivery: Optional[float] = None
    should_receive_reminder: bool


class UserAlertOut(AlertOut):
    user_state: UserStateInfo


class DeliveredVsRead(BaseModel):
    delivered: int
    read: int
    total_deliveries: int
    read_rate: float


class SystemMetricsOut(BaseModel):
    total_alerts_created: int
    delivered_vs_read: DeliveredVsRead
    snoozed_per_alert: Dict[str, int]
    severity_breakdown: Dict[str, int]
    status_breakdown: Dict[str, int]
    generated_at: datetime


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    environment: str
    store_backend: str
    scheduler: Dict[str, Any]
    channels: List[str]

"""
FastAPI route: administrative alert management.

Provides endpoints to:
    POST  /api/v1/alerts                 — create an alert
    GET   /api/v1/alerts/active          — alerts currently in their window
    GET   /api/v1/alerts/{id}            — fetch one alert
    PATCH /api/v1/alerts/{id}            — partial update
    POST  /api/v1/alerts/{id}/archive    — archive (idempotent)
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from alerting.alerts.services import AlertService
from alerting.api.deps import get_alert_service
from alerting.api.schemas import AlertCreateRequest, AlertOut, AlertUpdateRequest

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.post("", response_model=AlertOut, status_code=status.HTTP_201_CREATED)
async def create_alert(
    request: AlertCreateRequest,
    service: AlertService = Depends(get_alert_service),
):
    """Create an alert. Rule violations return 422 naming the field."""
    alert = await service.create_alert(
        title=request.title,
        message=request.message,
        severity=request.severity,
        delivery_type=request.delivery_type,
        visibility=request.visibility.model_dump(),
        start_time=request.start_time,
        expiry_time=request.expiry_time,
        created_by=request.created_by,
        reminder_enabled=request.reminder_enabled,
        reminder_frequency_hours=request.reminder_frequency_hours,
    )
    return alert.to_dict()


@router.get("/active", response_model=List[AlertOut])
async def list_active_alerts(service: AlertService = Depends(get_alert_service)):
    """Active alerts, most severe first."""
    return [a.to_dict() for a in await service.list_active_alerts()]


@router.get("/{alert_id}", response_model=AlertOut)
async def get_alert(alert_id: str, service: AlertService = Depends(get_alert_service)):
    return (await service.get_alert(alert_id)).to_dict()


@router.patch("/{alert_id}", response_model=AlertOut)
async def update_alert(
    alert_id: str,
    request: AlertUpdateRequest,
    service: AlertService = Depends(get_alert_service),
):
    alert = await service.update_alert(alert_id, request.to_patch_fields())
    return alert.to_dict()


@router.post("/{alert_id}/archive", response_model=AlertOut)
async def archive_alert(alert_id: str, service: AlertService = Depends(get_alert_service)):
    return (await service.archive_alert(alert_id)).to_dict()

"""
FastAPI route: user directory, per-user alert inbox and state changes.

Provides endpoints to:
    POST /api/v1/users                                        — register a user
    GET  /api/v1/users                                        — list users (team / org filter)
    GET  /api/v1/users/{user_id}                              — one user
    GET  /api/v1/users/{user_id}/alerts                       — visible alerts + state
    GET  /api/v1/users/{user_id}/alerts/{alert_id}/state      — current state
    POST /api/v1/users/{user_id}/alerts/{alert_id}/read       — mark read
    POST /api/v1/users/{user_id}/alerts/{alert_id}/unread     — mark unread
    POST /api/v1/users/{user_id}/alerts/{alert_id}/snooze     — snooze
    POST /api/v1/users/{user_id}/alerts/{alert_id}/unsnooze   — clear snooze
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from alerting.alerts.services import UserAlertService, UserService
from alerting.api.deps import get_user_alert_service, get_user_service
from alerting.api.schemas import (
    SnoozeRequest,
    UserAlertOut,
    UserAlertStateOut,
    UserCreateRequest,
    UserOut,
)

router = APIRouter(prefix="/api/v1/users", tags=["user-alerts"])


@router.post("", response_model=UserOut, status_code=201)
async def register_user(
    request: UserCreateRequest,
    service: UserService = Depends(get_user_service),
):
    return (await service.register_user(**request.model_dump())).to_dict()


@router.get("", response_model=List[UserOut])
async def list_users(
    team_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    service: UserService = Depends(get_user_service),
):
    users = await service.list_users(team_id=team_id, organization_id=organization_id)
    return [user.to_dict() for user in users]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    service: UserService = Depends(get_user_service),
):
    return (await service.get_user(user_id)).to_dict()


@router.get("/{user_id}/alerts", response_model=List[UserAlertOut])
async def list_user_alerts(
    user_id: str,
    service: UserAlertService = Depends(get_user_alert_service),
):
    return [view.to_dict() for view in await service.list_alerts_for_user(user_id)]


@router.get("/{user_id}/alerts/{alert_id}/state", response_model=UserAlertStateOut)
async def get_state(
    user_id: str,
    alert_id: str,
    service: UserAlertService = Depends(get_user_alert_service),
):
    return (await service.get_state(user_id, alert_id)).to_dict()


@router.post("/{user_id}/alerts/{alert_id}/read", response_model=UserAlertStateOut)
async def mark_read(
    user_id: str,
    alert_id: str,
    service: UserAlertService = Depends(get_user_alert_service),
):
    return (await service.mark_read(user_id, alert_id)).to_dict()


@router.post("/{user_id}/alerts/{alert_id}/unread", response_model=UserAlertStateOut)
async def mark_unread(
    user_id: str,
    alert_id: str,
    service: UserAlertService = Depends(get_user_alert_service),
):
    return (await service.mark_unread(user_id, alert_id)).to_dict()


@router.post("/{user_id}/alerts/{alert_id}/snooze", response_model=UserAlertStateOut)
async def snooze(
    user_id: str,
    alert_id: str,
    request: Optional[SnoozeRequest] = None,
    service: UserAlertService = Depends(get_user_alert_service),
):
    """Snooze until ``until``, or until the end of today when omitted."""
    if request is not None and request.until is not None:
        state = await service.snooze_until(user_id, alert_id, request.until)
    else:
        state = await service.snooze_for_day(user_id, alert_id)
    return state.to_dict()


@router.post("/{user_id}/alerts/{alert_id}/unsnooze", response_model=UserAlertStateOut)
async def unsnooze(
    user_id: str,
    alert_id: str,
    service: UserAlertService = Depends(get_user_alert_service),
):
    return (await service.unsnooze(user_id, alert_id)).to_dict()

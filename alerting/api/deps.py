"""
FastAPI dependencies — resolve services from the app's Container.
"""

from __future__ import annotations

from fastapi import Depends, Request

from alerting.alerts.analytics import AnalyticsService
from alerting.alerts.services import AlertService, UserAlertService, UserService
from alerting.container import Container


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_alert_service(container: Container = Depends(get_container)) -> AlertService:
    return container.alert_service


def get_user_alert_service(container: Container = Depends(get_container)) -> UserAlertService:
    return container.user_alert_service


def get_user_service(container: Container = Depends(get_container)) -> UserService:
    return container.user_service


def get_analytics_service(container: Container = Depends(get_container)) -> AnalyticsService:
    return container.analytics

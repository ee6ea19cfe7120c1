"""
FastAPI route: system metrics.

    GET /api/v1/analytics/metrics — totals, delivered vs read, snoozes, severity mix
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from alerting.alerts.analytics import AnalyticsService
from alerting.api.deps import get_analytics_service
from alerting.api.schemas import SystemMetricsOut

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])


@router.get("/metrics", response_model=SystemMetricsOut)
async def get_metrics(service: AnalyticsService = Depends(get_analytics_service)):
    return await service.get_system_metrics()

"""
Funnel analytics: the public event tracker and the admin dashboard.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from ..config import get_config
from ..services import DiagnosticsService, FunnelService
from ..services.funnel_service import TrackEvent
from ..utils.auth import AuthenticatedUser
from .dependencies import get_diagnostics_service, get_funnel_service, parse_date_param, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Tracking"])


class TrackRequest(BaseModel):
    """Event posted by the funnel pages."""
    model_config = ConfigDict(populate_by_name=True)

    event_type: Optional[str] = Field(None, alias="eventType")
    funnel_step: Optional[str] = Field(None, alias="funnelStep")
    variant: Optional[str] = None
    revenue_cents: Optional[int] = Field(None, alias="revenueCents")
    product_slug: Optional[str] = Field(None, alias="productSlug")
    utm_source: Optional[str] = Field(None, alias="utmSource")
    utm_medium: Optional[str] = Field(None, alias="utmMedium")
    utm_campaign: Optional[str] = Field(None, alias="utmCampaign")
    referrer: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@router.post("/track", response_model=Dict[str, Any])
async def track_event(
    payload: TrackRequest,
    request: Request,
    response: Response,
    funnel: FunnelService = Depends(get_funnel_service),
):
    """Record a funnel event and refresh the visitor, session and A/B cookies."""
    event = TrackEvent(**payload.model_dump(exclude_none=True))
    result = await funnel.track(event, request.cookies, request.headers)

    secure = get_config().is_production
    for cookie in result.cookies:
        response.set_cookie(
            key=cookie.name,
            value=cookie.value,
            max_age=cookie.max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )
    return result.body


@router.get("/dashboard/metrics", response_model=Dict[str, Any])
async def dashboard_metrics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    admin: AuthenticatedUser = Depends(require_admin),
    funnel: FunnelService = Depends(get_funnel_service),
):
    start = parse_date_param(start_date)
    end = parse_date_param(end_date, end_of_day=True)
    return await funnel.get_metrics(start, end)


@router.get("/dashboard/active-sessions", response_model=Dict[str, Any])
async def active_sessions(
    admin: AuthenticatedUser = Depends(require_admin),
    funnel: FunnelService = Depends(get_funnel_service),
):
    """Sessions with an event in the last five minutes."""
    return await funnel.count_active_sessions()


@router.get("/dashboard/debug", response_model=Dict[str, Any])
async def dashboard_debug(
    response: Response,
    admin: AuthenticatedUser = Depends(require_admin),
    diagnostics: DiagnosticsService = Depends(get_diagnostics_service),
):
    """Configuration flags, event counts and latest rows for tracking issues."""
    response.headers["Cache-Control"] = "no-store"
    return await diagnostics.run()

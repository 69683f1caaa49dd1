"""
Member portal endpoints: product catalog, lesson progress, in-portal
purchases, activity heartbeat and the admin member views and metrics.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ..schemas.database_models import LessonProgressUpdate
from ..services import CheckoutService, CourseService, MemberService
from ..utils.auth import AuthenticatedUser, require_authentication
from .dependencies import (
    PaginationParams,
    get_checkout_service,
    get_course_service,
    get_member_service,
    pagination,
    parse_date_param,
    require_admin,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/portal", tags=["Portal"])


class ProgressRequest(BaseModel):
    """Progress report from the lesson player."""
    model_config = ConfigDict(populate_by_name=True)

    lesson_id: Optional[str] = Field(None, alias="lessonId")
    progress_percent: Optional[int] = Field(None, ge=0, le=100, alias="progressPercent")
    last_position_seconds: Optional[int] = Field(None, ge=0, alias="lastPositionSeconds")
    completed: bool = False


class CourseCompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="productId")


class PortalCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_slug: Optional[str] = Field(None, alias="productSlug")
    full_name: Optional[str] = Field(None, alias="fullName")


class ConfirmPurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")


@router.get("/products", response_model=Dict[str, Any])
async def list_products(
    user: AuthenticatedUser = Depends(require_authentication),
    courses: CourseService = Depends(get_course_service),
):
    return await courses.list_products(user.id)


@router.get("/products/{slug}", response_model=Dict[str, Any])
async def get_product(
    slug: str,
    user: AuthenticatedUser = Depends(require_authentication),
    courses: CourseService = Depends(get_course_service),
):
    """Course outline with the caller's per-lesson progress."""
    return await courses.get_product(slug, user.id)


@router.post("/progress", response_model=Dict[str, Any])
async def update_progress(
    request: ProgressRequest,
    user: AuthenticatedUser = Depends(require_authentication),
    courses: CourseService = Depends(get_course_service),
):
    update = LessonProgressUpdate(
        progress_percent=request.progress_percent,
        last_position_seconds=request.last_position_seconds,
        completed=request.completed,
    )
    return await courses.update_progress(user.id, request.lesson_id, update)


@router.post("/check-course-completion", response_model=Dict[str, Any])
async def check_course_completion(
    request: CourseCompletionRequest,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_authentication),
    courses: CourseService = Depends(get_course_service),
):
    """Report completion and schedule the course completed automation."""
    result = await courses.check_course_completion(user.id, request.product_id)
    if result.get("completed"):
        background_tasks.add_task(courses.fire_course_completed, user.id, request.product_id)
    return result


@router.post("/checkout", response_model=Dict[str, Any])
async def portal_checkout(
    request: PortalCheckoutRequest,
    user: AuthenticatedUser = Depends(require_authentication),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return await checkout.create_portal_payment_intent(user, request.product_slug, request.full_name)


@router.post("/confirm-purchase", response_model=Dict[str, Any])
async def confirm_purchase(
    request: ConfirmPurchaseRequest,
    user: AuthenticatedUser = Depends(require_authentication),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return await checkout.confirm_portal_purchase(request.payment_intent_id)


@router.post("/activity", response_model=Dict[str, Any])
async def record_activity(
    user: AuthenticatedUser = Depends(require_authentication),
    members: MemberService = Depends(get_member_service),
):
    return await members.record_activity(user.id)


@router.get("/admin/members", response_model=Dict[str, Any])
async def list_members(
    search: Optional[str] = None,
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    paging: PaginationParams = Depends(pagination(20, 50)),
    admin: AuthenticatedUser = Depends(require_admin),
    members: MemberService = Depends(get_member_service),
):
    """Members with lifetime value, products owned and overall progress."""
    return await members.list_members(paging.page, paging.limit, search, sort_by, sort_order)


@router.get("/admin/members/{member_id}", response_model=Dict[str, Any])
async def get_member_detail(
    member_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    members: MemberService = Depends(get_member_service),
):
    """Profile, spend, per-lesson progress tree and community stats of one member."""
    return await members.get_member_detail(member_id)


@router.get("/admin/metrics", response_model=Dict[str, Any])
async def portal_metrics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    admin: AuthenticatedUser = Depends(require_admin),
    members: MemberService = Depends(get_member_service),
):
    start = parse_date_param(start_date)
    end = parse_date_param(end_date, end_of_day=True)
    return await members.get_metrics(start, end)

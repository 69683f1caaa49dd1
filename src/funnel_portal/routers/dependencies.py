"""
FastAPI dependencies shared by the API routers.

Provides:
- Service instances (overridable through ``app.dependency_overrides``)
- Member and admin resolution on top of the access token dependencies
- Pagination parameters clamped to each endpoint's limits
- Date range query parsing
"""

import logging
from datetime import datetime, time, timezone
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status

from ..repositories.profile_repository import ProfileRepository
from ..services import (
    AccountService,
    AutomationAdminService,
    AutomationService,
    CheckoutService,
    ContentService,
    CourseService,
    DiagnosticsService,
    DiscussionService,
    FunnelService,
    MemberService,
    MessagingService,
    get_automation_service,
)
from ..utils.auth import AuthenticatedUser, require_authentication

logger = logging.getLogger(__name__)


# ============================================================================
# SERVICES
# ============================================================================


def get_profile_repository() -> ProfileRepository:
    return ProfileRepository()


def get_account_service() -> AccountService:
    return AccountService()


def get_checkout_service() -> CheckoutService:
    return CheckoutService()


def get_funnel_service() -> FunnelService:
    return FunnelService()


def get_course_service() -> CourseService:
    return CourseService()


def get_diagnostics_service() -> DiagnosticsService:
    return DiagnosticsService()


def get_content_service() -> ContentService:
    return ContentService()


def get_discussion_service() -> DiscussionService:
    return DiscussionService()


def get_messaging_service() -> MessagingService:
    return MessagingService()


def get_member_service() -> MemberService:
    return MemberService()


def get_automation_admin_service() -> AutomationAdminService:
    return AutomationAdminService()


def get_automation_engine() -> AutomationService:
    return get_automation_service()


# ============================================================================
# MEMBERS AND ADMINS
# ============================================================================


async def get_member(
    user: AuthenticatedUser = Depends(require_authentication),
    profiles: ProfileRepository = Depends(get_profile_repository),
) -> AuthenticatedUser:
    """
    Authenticated caller with ``is_admin`` taken from their profile.

    Raises:
        HTTPException: 401 when the caller is anonymous
    """
    profile = await profiles.get_by_id(user.id)
    return user.model_copy(update={"is_admin": bool(profile and profile.is_admin)})


async def require_admin(member: AuthenticatedUser = Depends(get_member)) -> AuthenticatedUser:
    """
    Require an admin profile.

    Raises:
        HTTPException: 403 when the caller is not an admin
    """
    if not member.is_admin:
        logger.warning(f"Admin access denied for user {member.id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden"
        )
    return member


# ============================================================================
# PAGINATION
# ============================================================================


class PaginationParams:
    """Page number and page size for list endpoints."""

    def __init__(self, page: int, limit: int, max_limit: int):
        self.page = max(page, 1)
        self.limit = min(max(limit, 1), max_limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def pagination(default_limit: int = 20, max_limit: int = 50) -> Callable[..., PaginationParams]:
    """
    Build a pagination dependency with its own default and ceiling.

    Example:
        @router.get("/posts")
        async def list_posts(paging: PaginationParams = Depends(pagination(20, 50))):
            ...
    """
    async def get_pagination_params(page: int = 1, limit: int = default_limit) -> PaginationParams:
        return PaginationParams(page=page, limit=limit, max_limit=max_limit)

    return get_pagination_params


# ============================================================================
# DATES
# ============================================================================


def parse_date_param(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse a ``YYYY-MM-DD`` or ISO timestamp query value as UTC.

    Bare dates cover the whole day when used as the range end.
    """
    if not value:
        return None
    try:
        if len(value) == 10:
            day = datetime.strptime(value, "%Y-%m-%d").date()
            parsed = datetime.combine(day, time.max if end_of_day else time.min)
        else:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid date: {value}"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

"""
Business services for the funnel and member portal.

Services hold the request-independent rules and raise ``ServiceError``
subclasses that the API renders as error responses.
"""

from .account_service import AccountService
from .automation_admin_service import AutomationAdminService
from .automation_service import AutomationService, TriggerContext, get_automation_service
from .checkout_service import CheckoutService
from .content_service import ContentService
from .course_service import CourseService
from .diagnostics_service import DiagnosticsService
from .discussion_service import DiscussionService
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailedError,
    ProvisioningError,
    ServiceError,
    ValidationFailedError,
)
from .funnel_service import FunnelService
from .member_service import MemberService
from .messaging_service import MessagingService
from .purchase_service import GrantResult, PurchaseService

__all__ = [
    "AccountService",
    "AutomationAdminService",
    "AutomationService",
    "TriggerContext",
    "get_automation_service",
    "CheckoutService",
    "ContentService",
    "CourseService",
    "DiagnosticsService",
    "DiscussionService",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "PaymentFailedError",
    "ProvisioningError",
    "ServiceError",
    "ValidationFailedError",
    "FunnelService",
    "MemberService",
    "MessagingService",
    "GrantResult",
    "PurchaseService",
]

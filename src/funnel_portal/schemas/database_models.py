"""
Database Schema Models for the funnel and member portal.

This module contains Pydantic models that represent rows of the Supabase
Postgres schema, providing type safety, validation, and serialization for
profiles, catalog, purchases, progress, community, messaging and
automation entities.

Features:
- UUID columns normalised to strings
- Integer precision for money (cents)
- Enum definitions for constrained fields
- Create/Update variants for tables written by the service
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _uuid_to_str(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


IdStr = Annotated[str, BeforeValidator(_uuid_to_str)]


class BaseEntity(BaseModel):
    """Base model for all database entities."""
    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )


# Enums
class ProductType(str, Enum):
    MAIN = "main"
    ORDER_BUMP = "order_bump"
    UPSELL = "upsell"
    DOWNSELL = "downsell"


class ContentType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    PDF = "pdf"
    TEXT = "text"
    DOWNLOAD = "download"


class PurchaseStatus(str, Enum):
    ACTIVE = "active"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PurchaseSource(str, Enum):
    FUNNEL = "funnel"
    PORTAL = "portal"


class ReactionType(str, Enum):
    LIKE = "like"
    HEART = "heart"
    CELEBRATE = "celebrate"


class NotificationType(str, Enum):
    MENTION = "mention"
    REPLY_TO_POST = "reply_to_post"
    REPLY_TO_COMMENT = "reply_to_comment"
    REACTION = "reaction"


class TriggerType(str, Enum):
    """Lifecycle events that can fire a DM automation."""
    WELCOME = "welcome"
    PURCHASE = "purchase"
    PURCHASE_SPECIFIC = "purchase_specific"
    COURSE_STARTED = "course_started"
    COURSE_PROGRESS_25 = "course_progress_25"
    COURSE_PROGRESS_50 = "course_progress_50"
    COURSE_PROGRESS_75 = "course_progress_75"
    COURSE_COMPLETED = "course_completed"
    INACTIVITY_7D = "inactivity_7d"
    INACTIVITY_14D = "inactivity_14d"
    INACTIVITY_30D = "inactivity_30d"
    ANNIVERSARY_30D = "anniversary_30d"
    ANNIVERSARY_90D = "anniversary_90d"
    ANNIVERSARY_1Y = "anniversary_1y"
    FIRST_COMMUNITY_POST = "first_community_post"


class AutomationLogStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Profile Models
class Profile(BaseEntity):
    """Member profile, keyed by the auth user id."""
    id: IdStr
    email: str
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    is_admin: bool = False
    last_active_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class ProfileUpsert(BaseEntity):
    """Profile write model used by registration and purchase provisioning."""
    id: str
    email: str
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Emails are stored trimmed and lowercased."""
        v = v.strip().lower()
        if '@' not in v:
            raise ValueError('Invalid email format')
        return v


# Catalog Models
class Product(BaseEntity):
    """Sellable product (course, kit, guide)."""
    id: IdStr
    slug: str
    name: str
    description: Optional[str] = None
    price_cents: int = 0
    portal_price_cents: Optional[int] = None
    stripe_price_id: Optional[str] = None
    product_type: ProductType = ProductType.MAIN
    thumbnail_url: Optional[str] = None
    is_active: bool = True
    is_lead_magnet: bool = False
    sort_order: int = 0
    created_at: Optional[datetime] = None

    @property
    def portal_price(self) -> int:
        """Price charged inside the portal, falling back to the list price."""
        return self.portal_price_cents or self.price_cents


class Module(BaseEntity):
    id: IdStr
    product_id: IdStr
    slug: str
    title: str
    description: Optional[str] = None
    sort_order: int = 0
    is_published: bool = True


class Lesson(BaseEntity):
    id: IdStr
    module_id: IdStr
    slug: str
    title: str
    description: Optional[str] = None
    content_type: ContentType
    content_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    sort_order: int = 0
    is_published: bool = True
    is_free_preview: bool = False


class LessonResource(BaseEntity):
    id: IdStr
    lesson_id: IdStr
    title: str
    file_path: str
    file_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    sort_order: int = 0


# Purchase / Progress Models
class UserPurchase(BaseEntity):
    id: IdStr
    user_id: IdStr
    product_id: IdStr
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.ACTIVE
    purchase_source: PurchaseSource = PurchaseSource.FUNNEL
    purchased_at: Optional[datetime] = None


class UserPurchaseCreate(BaseEntity):
    user_id: str
    product_id: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    purchase_source: PurchaseSource = PurchaseSource.FUNNEL


class LessonProgress(BaseEntity):
    id: IdStr
    user_id: IdStr
    lesson_id: IdStr
    progress_percent: int = 0
    completed_at: Optional[datetime] = None
    last_position_seconds: Optional[int] = None
    updated_at: Optional[datetime] = None


class LessonProgressUpdate(BaseEntity):
    """Progress report from the lesson player."""
    progress_percent: Optional[int] = Field(None, ge=0, le=100)
    last_position_seconds: Optional[int] = Field(None, ge=0)
    completed: bool = False


# Funnel Analytics
class FunnelEventCreate(BaseEntity):
    visitor_id: str
    funnel_session_id: str
    event_type: str
    funnel_step: str
    variant: Optional[str] = None
    revenue_cents: Optional[int] = None
    product_slug: Optional[str] = None
    user_agent: Optional[str] = None
    ip_hash: str = "unknown"
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FunnelEvent(FunnelEventCreate):
    id: IdStr
    created_at: datetime


# Community Models
class DiscussionPost(BaseEntity):
    id: IdStr
    user_id: IdStr
    body: str
    image_urls: List[str] = Field(default_factory=list)
    embedded_media: List[Any] = Field(default_factory=list)
    is_pinned: bool = False
    is_hidden: bool = False
    hidden_reason: Optional[str] = None
    hidden_by: Optional[IdStr] = None
    edited_at: Optional[datetime] = None
    created_at: datetime

    @field_validator('image_urls', 'embedded_media', mode='before')
    @classmethod
    def default_empty_list(cls, v: Any) -> Any:
        return v if v is not None else []


class DiscussionComment(BaseEntity):
    id: IdStr
    post_id: IdStr
    user_id: IdStr
    parent_id: Optional[IdStr] = None
    body: str
    edited_at: Optional[datetime] = None
    created_at: datetime


class DiscussionReaction(BaseEntity):
    id: IdStr
    user_id: IdStr
    post_id: Optional[IdStr] = None
    comment_id: Optional[IdStr] = None
    reaction_type: ReactionType


class Notification(BaseEntity):
    id: IdStr
    user_id: IdStr
    actor_id: Optional[IdStr] = None
    type: NotificationType
    post_id: Optional[IdStr] = None
    comment_id: Optional[IdStr] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime


class NotificationCreate(BaseEntity):
    user_id: str
    actor_id: Optional[str] = None
    type: NotificationType
    post_id: Optional[str] = None
    comment_id: Optional[str] = None


# Messaging Models
class Conversation(BaseEntity):
    id: IdStr
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None


class ConversationParticipant(BaseEntity):
    id: IdStr
    conversation_id: IdStr
    user_id: IdStr
    is_admin: bool = False
    unread_count: int = 0
    last_read_at: Optional[datetime] = None


class DirectMessage(BaseEntity):
    id: IdStr
    conversation_id: IdStr
    sender_id: IdStr
    content: str
    is_edited: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None


# Automation Models
class DmAutomation(BaseEntity):
    id: IdStr
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    message_template: str
    sender_id: Optional[IdStr] = None
    is_enabled: bool = False
    delay_minutes: int = 0
    created_by: Optional[IdStr] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('trigger_config', mode='before')
    @classmethod
    def default_config(cls, v: Any) -> Any:
        return v if v is not None else {}


class DmAutomationCreate(BaseEntity):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    message_template: str = Field(..., min_length=1)
    sender_id: Optional[str] = None
    is_enabled: bool = False
    delay_minutes: int = Field(0, ge=0)

    @field_validator('name', 'message_template')
    @classmethod
    def validate_required_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Field cannot be blank')
        return v


class DmAutomationUpdate(BaseEntity):
    """Only these fields may be changed on an existing automation."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    message_template: Optional[str] = Field(None, min_length=1)
    sender_id: Optional[str] = None
    is_enabled: Optional[bool] = None
    delay_minutes: Optional[int] = Field(None, ge=0)


class DmAutomationLog(BaseEntity):
    id: IdStr
    automation_id: IdStr
    recipient_id: IdStr
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    status: AutomationLogStatus = AutomationLogStatus.PENDING
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    conversation_id: Optional[IdStr] = None
    message_id: Optional[IdStr] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator('trigger_data', mode='before')
    @classmethod
    def default_trigger_data(cls, v: Any) -> Any:
        return v if v is not None else {}


class DmCannedResponse(BaseEntity):
    id: IdStr
    title: str
    content: str
    shortcut: Optional[str] = None
    category: Optional[str] = None
    is_shared: bool = True
    usage_count: int = 0
    created_by: Optional[IdStr] = None
    created_at: Optional[datetime] = None


class DmCannedResponseCreate(BaseEntity):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    shortcut: Optional[str] = None
    category: Optional[str] = None
    is_shared: bool = True

"""
Repository package for database operations.

Each repository wraps one table (or a tight group of related tables) of
the Supabase Postgres schema.
"""

from .base_repository import (
    BaseRepository,
    DatabaseOperationError,
    EntityValidationError,
    RepositoryError,
)
from .automation_repository import AutomationLogRepository, AutomationRepository, CannedResponseRepository
from .catalog_repository import LessonRepository, LessonResourceRepository, ModuleRepository, ProductRepository
from .discussion_repository import CommentRepository, NotificationRepository, PostRepository, ReactionRepository
from .funnel_event_repository import FunnelEventRepository
from .messaging_repository import ConversationRepository, MessageRepository
from .profile_repository import ProfileRepository
from .progress_repository import LessonProgressRepository
from .purchase_repository import PurchaseRepository

__all__ = [
    "BaseRepository",
    "RepositoryError",
    "EntityValidationError",
    "DatabaseOperationError",
    "AutomationRepository",
    "AutomationLogRepository",
    "CannedResponseRepository",
    "ProductRepository",
    "ModuleRepository",
    "LessonRepository",
    "LessonResourceRepository",
    "PostRepository",
    "CommentRepository",
    "ReactionRepository",
    "NotificationRepository",
    "FunnelEventRepository",
    "ConversationRepository",
    "MessageRepository",
    "ProfileRepository",
    "LessonProgressRepository",
    "PurchaseRepository",
]

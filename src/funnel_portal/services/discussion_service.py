"""
Community discussion: posts, threaded comments, reactions, mentions and
notifications.
"""

import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..repositories.discussion_repository import (
    CommentRepository,
    NotificationRepository,
    PostRepository,
    ReactionRepository,
)
from ..repositories.profile_repository import ProfileRepository
from ..schemas.database_models import NotificationCreate, NotificationType, ReactionType
from ..utils.job_logger import run_non_critical
from .automation_service import AutomationService, get_automation_service
from .errors import ForbiddenError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

MAX_POST_LENGTH = 10000
MAX_COMMENT_LENGTH = 5000

MENTION_PATTERN = re.compile(r"@([\w.-]+)")
HASHTAG_PATTERN = re.compile(r"#(\w+)")

PINNED_LIMIT = 5
TRENDING_WINDOW = timedelta(days=7)
TRENDING_CANDIDATES = 10
TRENDING_LIMIT = 3
HOT_TOPICS_WINDOW = timedelta(days=30)
HOT_TOPICS_POSTS = 100
HOT_TOPICS_LIMIT = 8


def extract_mentions(text: str) -> List[str]:
    """Unique lowercased ``@handles`` in order of appearance."""
    seen: List[str] = []
    for handle in MENTION_PATTERN.findall(text or ""):
        handle = handle.rstrip(".-").lower()
        if handle and handle not in seen:
            seen.append(handle)
    return seen


def extract_hashtags(text: str) -> List[str]:
    return [tag.lower() for tag in HASHTAG_PATTERN.findall(text or "")]


def hot_topics(bodies: List[str], limit: int = HOT_TOPICS_LIMIT) -> List[Dict[str, Any]]:
    counts = Counter(tag for body in bodies for tag in extract_hashtags(body))
    return [{"tag": tag, "count": count} for tag, count in counts.most_common(limit)]


def _normalize(row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: str(value) if isinstance(value, UUID) else value for key, value in row.items()}


def with_author(row: Dict[str, Any]) -> Dict[str, Any]:
    """Fold the ``author_*`` columns of a view row into an ``author`` object."""
    item = _normalize(row)
    item["author"] = {
        "id": item.get("user_id"),
        "full_name": item.pop("author_full_name", None),
        "first_name": item.pop("author_first_name", None),
        "avatar_url": item.pop("author_avatar_url", None),
        "is_admin": bool(item.pop("author_is_admin", False)),
    }
    if "reaction_counts" in item and item["reaction_counts"] is None:
        item["reaction_counts"] = {}
    return item


def build_comment_tree(comments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Nest comments under their parents.

    Comments whose parent is missing are promoted to the top level.
    """
    by_id = {}
    for comment in comments:
        node = dict(comment)
        node["replies"] = []
        by_id[node["id"]] = node

    roots = []
    for node in by_id.values():
        parent = by_id.get(node.get("parent_id")) if node.get("parent_id") else None
        if parent is not None:
            parent["replies"].append(node)
        else:
            roots.append(node)
    return roots


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    return {"page": page, "limit": limit, "total": total, "hasMore": page * limit < total}


def _validate_post_fields(
    body: Optional[str], image_urls: Optional[Any], embedded_media: Optional[Any], required: bool
) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if body is not None or required:
        text = (body or "").strip()
        if not text:
            raise ValidationFailedError("Post body cannot be empty")
        if len(text) > MAX_POST_LENGTH:
            raise ValidationFailedError(f"Post body is too long (max {MAX_POST_LENGTH} characters)")
        values["body"] = text
    if image_urls is not None:
        if not isinstance(image_urls, list) or not all(isinstance(url, str) for url in image_urls):
            raise ValidationFailedError("image_urls must be an array of strings")
        values["image_urls"] = image_urls
    if embedded_media is not None:
        if not isinstance(embedded_media, list):
            raise ValidationFailedError("embedded_media must be an array")
        values["embedded_media"] = embedded_media
    return values


def _validate_comment_body(body: Optional[str]) -> str:
    text = (body or "").strip()
    if not text:
        raise ValidationFailedError("Comment body cannot be empty")
    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationFailedError(f"Comment is too long (max {MAX_COMMENT_LENGTH} characters)")
    return text


class DiscussionService:
    """Community feed operations."""

    def __init__(
        self,
        posts: Optional[PostRepository] = None,
        comments: Optional[CommentRepository] = None,
        reactions: Optional[ReactionRepository] = None,
        notifications: Optional[NotificationRepository] = None,
        profiles: Optional[ProfileRepository] = None,
        automations: Optional[AutomationService] = None,
    ):
        self.posts = posts or PostRepository()
        self.comments = comments or CommentRepository()
        self.reactions = reactions or ReactionRepository()
        self.notifications = notifications or NotificationRepository()
        self.profiles = profiles or ProfileRepository()
        self.automations = automations or get_automation_service()

    async def _notify_mentions(
        self, text: str, actor_id: str, post_id: str, comment_id: Optional[str] = None,
        skip: Optional[set] = None,
    ) -> List[NotificationCreate]:
        handles = extract_mentions(text)
        if not handles:
            return []
        skip = skip or set()
        mentioned = await self.profiles.find_by_handles(handles)
        return [
            NotificationCreate(
                user_id=profile.id,
                actor_id=actor_id,
                type=NotificationType.MENTION,
                post_id=post_id,
                comment_id=comment_id,
            )
            for profile in mentioned
            if profile.id != actor_id and profile.id not in skip
        ]

    # Posts
    async def list_posts(self, user_id: str, is_admin: bool, page: int, limit: int) -> Dict[str, Any]:
        offset = (page - 1) * limit
        rows = await self.posts.list_visible(user_id, is_admin, limit, offset)
        total = await self.posts.count_visible(user_id, is_admin)
        return {"posts": [with_author(row) for row in rows], "pagination": pagination(page, limit, total)}

    async def create_post(
        self,
        user_id: str,
        body: Optional[str],
        image_urls: Optional[Any] = None,
        embedded_media: Optional[Any] = None,
    ) -> Dict[str, Any]:
        values = _validate_post_fields(body, image_urls, embedded_media, required=True)
        post = await self.posts.create(
            user_id, values["body"], values.get("image_urls", []), values.get("embedded_media", [])
        )
        logger.info(f"Member {user_id} created post {post.id}")

        mentions = await self._notify_mentions(values["body"], user_id, post.id)
        await run_non_critical(self.notifications.create_many(mentions), f"Mention notifications for post {post.id}")

        if await self.posts.count_by_user(user_id) == 1:
            await run_non_critical(
                self.automations.trigger_first_community_post(user_id),
                f"First post automation for {user_id}",
            )

        view = await self.posts.get_view(post.id, user_id)
        return with_author(view) if view else post.model_dump(mode="json")

    async def _load_post(self, post_id: str):
        post = await self.posts.get_by_id(post_id)
        if not post:
            raise NotFoundError("Post not found")
        return post

    async def get_post(self, post_id: str, user_id: str, is_admin: bool) -> Dict[str, Any]:
        view = await self.posts.get_view(post_id, user_id)
        if not view:
            raise NotFoundError("Post not found")
        if view["is_hidden"] and not is_admin and str(view["user_id"]) != user_id:
            raise NotFoundError("Post not found")
        return with_author(view)

    async def update_post(
        self,
        post_id: str,
        user_id: str,
        body: Optional[str] = None,
        image_urls: Optional[Any] = None,
        embedded_media: Optional[Any] = None,
    ) -> Dict[str, Any]:
        post = await self._load_post(post_id)
        if post.user_id != user_id:
            raise ForbiddenError("You can only edit your own posts")

        values = _validate_post_fields(body, image_urls, embedded_media, required=False)
        values["edited_at"] = datetime.now(timezone.utc)
        updated = await self.posts.update_fields(post_id, values)
        return updated.model_dump(mode="json")

    async def delete_post(self, post_id: str, user_id: str, is_admin: bool) -> Dict[str, Any]:
        post = await self._load_post(post_id)
        if post.user_id != user_id and not is_admin:
            raise ForbiddenError("You can only delete your own posts")
        await self.posts.delete(post_id)
        logger.info(f"Post {post_id} deleted by {user_id}")
        return {"success": True}

    async def pin_post(self, post_id: str, is_admin: bool, pinned: bool) -> Dict[str, Any]:
        if not is_admin:
            raise ForbiddenError("Only admins can pin posts")
        await self._load_post(post_id)
        updated = await self.posts.update_fields(post_id, {"is_pinned": bool(pinned)})
        return updated.model_dump(mode="json")

    async def hide_post(
        self, post_id: str, admin_id: str, is_admin: bool, hidden: bool, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        if not is_admin:
            raise ForbiddenError("Only admins can hide posts")
        await self._load_post(post_id)
        if hidden:
            values = {"is_hidden": True, "hidden_reason": reason, "hidden_by": admin_id}
        else:
            values = {"is_hidden": False, "hidden_reason": None, "hidden_by": None}
        updated = await self.posts.update_fields(post_id, values)
        logger.info(f"Post {post_id} {'hidden' if hidden else 'unhidden'} by {admin_id}")
        return updated.model_dump(mode="json")

    # Comments
    async def list_comments(self, post_id: str, user_id: str) -> Dict[str, Any]:
        await self._load_post(post_id)
        rows = await self.comments.list_views_for_post(post_id, user_id)
        return {"comments": build_comment_tree([with_author(row) for row in rows])}

    async def create_comment(
        self, post_id: str, user_id: str, body: Optional[str], parent_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Add a comment or reply and notify the people involved.

        Raises:
            NotFoundError: Unknown post
            ValidationFailedError: Empty or long body, or a parent on another post
        """
        post = await self._load_post(post_id)
        text = _validate_comment_body(body)

        parent = None
        if parent_id:
            parent = await self.comments.get_by_id(parent_id)
            if not parent or parent.post_id != post_id:
                raise ValidationFailedError("Parent comment not found on this post")

        comment = await self.comments.create(post_id, user_id, text, parent_id)

        notified = {user_id}
        pending: List[NotificationCreate] = []
        if post.user_id not in notified:
            pending.append(NotificationCreate(
                user_id=post.user_id, actor_id=user_id, type=NotificationType.REPLY_TO_POST,
                post_id=post_id, comment_id=comment.id,
            ))
            notified.add(post.user_id)
        if parent and parent.user_id not in notified:
            pending.append(NotificationCreate(
                user_id=parent.user_id, actor_id=user_id, type=NotificationType.REPLY_TO_COMMENT,
                post_id=post_id, comment_id=comment.id,
            ))
            notified.add(parent.user_id)
        pending.extend(await self._notify_mentions(text, user_id, post_id, comment.id, skip=notified))

        await run_non_critical(self.notifications.create_many(pending), f"Comment notifications for {comment.id}")
        return comment.model_dump(mode="json")

    async def update_comment(self, comment_id: str, user_id: str, body: Optional[str]) -> Dict[str, Any]:
        comment = await self.comments.get_by_id(comment_id)
        if not comment:
            raise NotFoundError("Comment not found")
        if comment.user_id != user_id:
            raise ForbiddenError("You can only edit your own comments")
        updated = await self.comments.update_fields(
            comment_id, {"body": _validate_comment_body(body), "edited_at": datetime.now(timezone.utc)}
        )
        return updated.model_dump(mode="json")

    async def delete_comment(self, comment_id: str, user_id: str, is_admin: bool) -> Dict[str, Any]:
        comment = await self.comments.get_by_id(comment_id)
        if not comment:
            raise NotFoundError("Comment not found")
        if comment.user_id != user_id and not is_admin:
            raise ForbiddenError("You can only delete your own comments")
        await self.comments.delete(comment_id)
        return {"success": True}

    # Reactions
    @staticmethod
    def _reaction_target(post_id: Optional[str], comment_id: Optional[str]) -> None:
        if bool(post_id) == bool(comment_id):
            raise ValidationFailedError("Provide exactly one of post_id or comment_id")

    async def toggle_reaction(
        self,
        user_id: str,
        reaction_type: Optional[str],
        post_id: Optional[str] = None,
        comment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Add, switch or remove the caller's reaction on a post or comment.

        Returns:
            ``{"action": "created" | "updated" | "removed", "reaction": ...}``
        """
        try:
            kind = ReactionType(reaction_type)
        except ValueError:
            raise ValidationFailedError("Invalid reaction type")
        self._reaction_target(post_id, comment_id)

        if post_id:
            target = await self.posts.get_by_id(post_id)
        else:
            target = await self.comments.get_by_id(comment_id)
        if not target:
            raise NotFoundError("Post not found" if post_id else "Comment not found")

        existing = await self.reactions.find(user_id, post_id, comment_id)
        if existing and existing.reaction_type == kind:
            await self.reactions.delete(existing.id)
            return {"action": "removed"}
        if existing:
            updated = await self.reactions.update_fields(existing.id, {"reaction_type": kind.value})
            return {"action": "updated", "reaction": updated.model_dump(mode="json")}

        reaction = await self.reactions.create(user_id, kind, post_id, comment_id)
        if target.user_id != user_id:
            notification = NotificationCreate(
                user_id=target.user_id,
                actor_id=user_id,
                type=NotificationType.REACTION,
                post_id=post_id or getattr(target, "post_id", None),
                comment_id=comment_id,
            )
            await run_non_critical(
                self.notifications.create_many([notification]), f"Reaction notification for {reaction.id}"
            )
        return {"action": "created", "reaction": reaction.model_dump(mode="json")}

    async def remove_reaction(
        self, user_id: str, post_id: Optional[str] = None, comment_id: Optional[str] = None
    ) -> Dict[str, Any]:
        self._reaction_target(post_id, comment_id)
        removed = await self.reactions.delete_for_target(user_id, post_id, comment_id)
        return {"success": True, "removed": removed}

    # Notifications
    async def list_notifications(self, user_id: str, unread_only: bool, page: int, limit: int) -> Dict[str, Any]:
        rows = await self.notifications.list_for_user(user_id, unread_only, limit, (page - 1) * limit)
        items = []
        for row in rows:
            item = _normalize(row)
            item["actor"] = {
                "id": item.get("actor_id"),
                "full_name": item.pop("actor_full_name", None),
                "first_name": item.pop("actor_first_name", None),
                "avatar_url": item.pop("actor_avatar_url", None),
            }
            items.append(item)

        total = await self.notifications.count_for_user(user_id, unread_only)
        unread = await self.notifications.count_for_user(user_id, unread_only=True)
        return {"notifications": items, "unreadCount": unread, "pagination": pagination(page, limit, total)}

    async def mark_notifications_read(
        self, user_id: str, notification_ids: Optional[List[str]] = None, mark_all: bool = False
    ) -> Dict[str, Any]:
        if mark_all:
            await self.notifications.mark_all_read(user_id)
        elif notification_ids:
            await self.notifications.mark_read(user_id, notification_ids)
        else:
            raise ValidationFailedError("Provide notification_ids or mark_all")
        unread = await self.notifications.count_for_user(user_id, unread_only=True)
        return {"success": True, "unreadCount": unread}

    # Discovery
    async def search_users(self, user_id: str, query: Optional[str], limit: int) -> Dict[str, Any]:
        if not query or not query.strip():
            raise ValidationFailedError("Search query is required")
        profiles = await self.profiles.search(query.strip(), user_id, limit)
        return {
            "users": [
                {
                    "id": profile.id,
                    "full_name": profile.full_name,
                    "first_name": profile.first_name,
                    "avatar_url": profile.avatar_url,
                }
                for profile in profiles
            ]
        }

    async def get_sidebar(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Pinned posts, trending posts and hot hashtags."""
        now = now or datetime.now(timezone.utc)

        pinned = await self.posts.list_pinned(user_id, PINNED_LIMIT)
        candidates = await self.posts.list_most_reacted_since(user_id, now - TRENDING_WINDOW, TRENDING_CANDIDATES)
        trending = sorted(
            candidates,
            key=lambda row: (row.get("reaction_count") or 0) + (row.get("comment_count") or 0),
            reverse=True,
        )[:TRENDING_LIMIT]
        bodies = await self.posts.list_bodies_since(now - HOT_TOPICS_WINDOW, HOT_TOPICS_POSTS)

        return {
            "pinned": [with_author(row) for row in pinned],
            "trending": [with_author(row) for row in trending],
            "hotTopics": hot_topics(bodies),
        }

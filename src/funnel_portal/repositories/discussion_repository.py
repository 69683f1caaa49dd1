"""
Discussion repositories: posts, comments, reactions and notifications.

List queries return "view" dicts that carry the author columns and
aggregate counts alongside the row so the routers can render a feed
without follow-up queries.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..schemas.database_models import (
    DiscussionComment,
    DiscussionPost,
    DiscussionReaction,
    Notification,
    NotificationCreate,
    ReactionType,
)
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository

# $1 is always the viewing user
_POST_VIEW = """
    SELECT p.*,
           pr.full_name AS author_full_name,
           pr.first_name AS author_first_name,
           pr.avatar_url AS author_avatar_url,
           pr.is_admin AS author_is_admin,
           (SELECT COUNT(*) FROM discussion_comments c WHERE c.post_id = p.id) AS comment_count,
           (SELECT COUNT(*) FROM discussion_reactions r WHERE r.post_id = p.id) AS reaction_count,
           (SELECT COALESCE(jsonb_object_agg(t.reaction_type, t.n), '{}'::jsonb)
              FROM (SELECT reaction_type, COUNT(*) AS n FROM discussion_reactions r
                    WHERE r.post_id = p.id GROUP BY reaction_type) t) AS reaction_counts,
           (SELECT r.reaction_type FROM discussion_reactions r
             WHERE r.post_id = p.id AND r.user_id = $1::uuid LIMIT 1) AS user_reaction
    FROM discussion_posts p
    JOIN profiles pr ON pr.id = p.user_id
"""

_COMMENT_VIEW = """
    SELECT c.*,
           pr.full_name AS author_full_name,
           pr.first_name AS author_first_name,
           pr.avatar_url AS author_avatar_url,
           pr.is_admin AS author_is_admin,
           (SELECT COUNT(*) FROM discussion_reactions r WHERE r.comment_id = c.id) AS reaction_count,
           (SELECT r.reaction_type FROM discussion_reactions r
             WHERE r.comment_id = c.id AND r.user_id = $1::uuid LIMIT 1) AS user_reaction
    FROM discussion_comments c
    JOIN profiles pr ON pr.id = c.user_id
"""


class PostRepository(BaseRepository[DiscussionPost]):
    """Repository for the ``discussion_posts`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DiscussionPost, "discussion_posts", db_client)

    async def list_visible(
        self, viewer_id: str, include_hidden: bool, limit: int, offset: int
    ) -> List[Dict[str, Any]]:
        """Feed page: pinned first, newest first."""
        query = _POST_VIEW + """
            WHERE ($2 OR p.is_hidden = FALSE OR p.user_id = $1::uuid)
            ORDER BY p.is_pinned DESC, p.created_at DESC
            LIMIT $3 OFFSET $4
        """
        rows = await self._execute_query(query, viewer_id, include_hidden, limit, offset, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def count_visible(self, viewer_id: str, include_hidden: bool) -> int:
        query = """
            SELECT COUNT(*) FROM discussion_posts p
            WHERE ($2 OR p.is_hidden = FALSE OR p.user_id = $1::uuid)
        """
        return int(await self._fetch_value(query, viewer_id, include_hidden) or 0)

    async def get_view(self, post_id: str, viewer_id: str) -> Optional[Dict[str, Any]]:
        query = _POST_VIEW + " WHERE p.id = $2"
        row = await self._execute_query(query, viewer_id, post_id, fetch_one=True)
        return dict(row) if row else None

    async def create(
        self, user_id: str, body: str, image_urls: List[str], embedded_media: List[Any]
    ) -> DiscussionPost:
        query = """
            INSERT INTO discussion_posts (user_id, body, image_urls, embedded_media)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        row = await self._execute_query(query, user_id, body, image_urls, embedded_media, fetch_one=True)
        return self._row_to_model(row)

    async def count_by_user(self, user_id: str) -> int:
        return await self.count("user_id = $1", user_id)

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        return await self.count("created_at >= $1 AND created_at <= $2", start, end)

    async def latest_created_at(self, user_id: str) -> Optional[datetime]:
        query = "SELECT MAX(created_at) FROM discussion_posts WHERE user_id = $1"
        return await self._fetch_value(query, user_id)

    async def list_pinned(self, viewer_id: str, limit: int) -> List[Dict[str, Any]]:
        query = _POST_VIEW + """
            WHERE p.is_pinned = TRUE AND p.is_hidden = FALSE
            ORDER BY p.created_at DESC
            LIMIT $2
        """
        rows = await self._execute_query(query, viewer_id, limit, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def list_most_reacted_since(
        self, viewer_id: str, since: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        """Recent unpinned visible posts ordered by reaction count."""
        query = "SELECT * FROM (" + _POST_VIEW + """
            WHERE p.created_at >= $2 AND p.is_pinned = FALSE AND p.is_hidden = FALSE
        ) feed
        ORDER BY reaction_count DESC, created_at DESC
        LIMIT $3
        """
        rows = await self._execute_query(query, viewer_id, since, limit, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def list_bodies_since(self, since: datetime, limit: int) -> List[str]:
        query = """
            SELECT body FROM discussion_posts
            WHERE created_at >= $1 AND is_hidden = FALSE
            ORDER BY created_at DESC
            LIMIT $2
        """
        rows = await self._execute_query(query, since, limit, fetch_all=True)
        return [row["body"] for row in rows or []]


class CommentRepository(BaseRepository[DiscussionComment]):
    """Repository for the ``discussion_comments`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DiscussionComment, "discussion_comments", db_client)

    async def count_by_user(self, user_id: str) -> int:
        return await self.count("user_id = $1", user_id)

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        return await self.count("created_at >= $1 AND created_at <= $2", start, end)

    async def list_views_for_post(self, post_id: str, viewer_id: str) -> List[Dict[str, Any]]:
        query = _COMMENT_VIEW + " WHERE c.post_id = $2 ORDER BY c.created_at"
        rows = await self._execute_query(query, viewer_id, post_id, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def create(
        self, post_id: str, user_id: str, body: str, parent_id: Optional[str] = None
    ) -> DiscussionComment:
        query = """
            INSERT INTO discussion_comments (post_id, user_id, body, parent_id)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        row = await self._execute_query(query, post_id, user_id, body, parent_id, fetch_one=True)
        return self._row_to_model(row)


class ReactionRepository(BaseRepository[DiscussionReaction]):
    """Repository for the ``discussion_reactions`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DiscussionReaction, "discussion_reactions", db_client)

    async def count_by_user(self, user_id: str) -> int:
        return await self.count("user_id = $1", user_id)

    @staticmethod
    def _target_clause(post_id: Optional[str]) -> str:
        return "post_id = $2" if post_id else "comment_id = $2"

    async def find(
        self, user_id: str, post_id: Optional[str] = None, comment_id: Optional[str] = None
    ) -> Optional[DiscussionReaction]:
        query = f"SELECT * FROM discussion_reactions WHERE user_id = $1 AND {self._target_clause(post_id)} LIMIT 1"
        row = await self._execute_query(query, user_id, post_id or comment_id, fetch_one=True)
        return self._row_to_model(row)

    async def create(
        self,
        user_id: str,
        reaction_type: ReactionType,
        post_id: Optional[str] = None,
        comment_id: Optional[str] = None,
    ) -> DiscussionReaction:
        query = """
            INSERT INTO discussion_reactions (user_id, reaction_type, post_id, comment_id)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        row = await self._execute_query(
            query, user_id, reaction_type.value, post_id, comment_id, fetch_one=True
        )
        return self._row_to_model(row)

    async def delete_for_target(
        self, user_id: str, post_id: Optional[str] = None, comment_id: Optional[str] = None
    ) -> bool:
        query = f"DELETE FROM discussion_reactions WHERE user_id = $1 AND {self._target_clause(post_id)} RETURNING id"
        rows = await self._execute_query(query, user_id, post_id or comment_id, fetch_all=True)
        return bool(rows)


class NotificationRepository(BaseRepository[Notification]):
    """Repository for the ``notifications`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Notification, "notifications", db_client)

    async def create_many(self, notifications: Sequence[NotificationCreate]) -> int:
        if not notifications:
            return 0
        query = """
            INSERT INTO notifications (user_id, actor_id, type, post_id, comment_id)
            SELECT * FROM UNNEST($1::uuid[], $2::uuid[], $3::text[], $4::uuid[], $5::uuid[])
        """
        await self._execute_query(
            query,
            [n.user_id for n in notifications],
            [n.actor_id for n in notifications],
            [n.type.value for n in notifications],
            [n.post_id for n in notifications],
            [n.comment_id for n in notifications],
            fetch_all=False,
        )
        return len(notifications)

    async def list_for_user(
        self, user_id: str, unread_only: bool, limit: int, offset: int
    ) -> List[Dict[str, Any]]:
        query = """
            SELECT n.*,
                   a.full_name AS actor_full_name,
                   a.first_name AS actor_first_name,
                   a.avatar_url AS actor_avatar_url
            FROM notifications n
            LEFT JOIN profiles a ON a.id = n.actor_id
            WHERE n.user_id = $1 AND (NOT $2 OR n.is_read = FALSE)
            ORDER BY n.created_at DESC
            LIMIT $3 OFFSET $4
        """
        rows = await self._execute_query(query, user_id, unread_only, limit, offset, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def count_for_user(self, user_id: str, unread_only: bool = False) -> int:
        if unread_only:
            return await self.count("user_id = $1 AND is_read = FALSE", user_id)
        return await self.count("user_id = $1", user_id)

    async def mark_read(self, user_id: str, notification_ids: Sequence[str]) -> None:
        query = """
            UPDATE notifications SET is_read = TRUE, read_at = NOW()
            WHERE user_id = $1 AND id = ANY($2::uuid[]) AND is_read = FALSE
        """
        await self._execute_query(query, user_id, list(notification_ids), fetch_all=False)

    async def mark_all_read(self, user_id: str) -> None:
        query = "UPDATE notifications SET is_read = TRUE, read_at = NOW() WHERE user_id = $1 AND is_read = FALSE"
        await self._execute_query(query, user_id, fetch_all=False)

"""
Messaging repositories: conversations, participants and direct messages.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from ..schemas.database_models import Conversation, ConversationParticipant, DirectMessage
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository

PREVIEW_LENGTH = 100


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for ``conversations`` and ``conversation_participants``."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Conversation, "conversations", db_client)

    async def find_shared(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """The most recently active conversation both users take part in."""
        query = """
            SELECT c.* FROM conversations c
            JOIN conversation_participants pa ON pa.conversation_id = c.id AND pa.user_id = $1
            JOIN conversation_participants pb ON pb.conversation_id = c.id AND pb.user_id = $2
            ORDER BY c.last_message_at DESC NULLS LAST, c.created_at DESC
            LIMIT 1
        """
        row = await self._execute_query(query, user_a, user_b, fetch_one=True)
        return self._row_to_model(row)

    async def create_with_participants(
        self,
        participants: Sequence[Tuple[str, bool]],
        connection: Optional[asyncpg.Connection] = None,
    ) -> Conversation:
        """
        Create a conversation and its participant rows.

        Args:
            participants: ``(user_id, is_admin)`` pairs
            connection: Connection of an enclosing transaction, if any
        """
        if connection is None:
            async with self.transaction() as conn:
                return await self.create_with_participants(participants, connection=conn)

        row = await self._execute_query(
            "INSERT INTO conversations DEFAULT VALUES RETURNING *",
            fetch_one=True,
            connection=connection,
        )
        conversation = self._row_to_model(row)
        await self._execute_query(
            """
            INSERT INTO conversation_participants (conversation_id, user_id, is_admin)
            SELECT $1::uuid, * FROM UNNEST($2::uuid[], $3::boolean[])
            """,
            conversation.id,
            [user_id for user_id, _ in participants],
            [is_admin for _, is_admin in participants],
            fetch_all=False,
            connection=connection,
        )
        self._logger.info(f"Created conversation {conversation.id} with {len(participants)} participants")
        return conversation

    async def get_participant(self, conversation_id: str, user_id: str) -> Optional[ConversationParticipant]:
        query = """
            SELECT * FROM conversation_participants
            WHERE conversation_id = $1 AND user_id = $2
        """
        row = await self._execute_query(query, conversation_id, user_id, fetch_one=True)
        if not row:
            return None
        return ConversationParticipant.model_validate(dict(row))

    async def list_participants(self, conversation_id: str) -> List[Dict[str, Any]]:
        query = """
            SELECT cp.user_id, cp.is_admin AS participant_is_admin, cp.unread_count, cp.last_read_at,
                   pr.full_name, pr.first_name, pr.email, pr.avatar_url, pr.is_admin
            FROM conversation_participants cp
            JOIN profiles pr ON pr.id = cp.user_id
            WHERE cp.conversation_id = $1
        """
        rows = await self._execute_query(query, conversation_id, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """
        Every conversation of a user with the other participant's profile.

        Sorted by last message, newest first.
        """
        query = """
            SELECT c.*, me.unread_count,
                   other.user_id AS other_user_id,
                   op.full_name AS other_full_name,
                   op.first_name AS other_first_name,
                   op.email AS other_email,
                   op.avatar_url AS other_avatar_url,
                   op.is_admin AS other_is_admin
            FROM conversations c
            JOIN conversation_participants me ON me.conversation_id = c.id AND me.user_id = $1
            LEFT JOIN LATERAL (
                SELECT cp.user_id FROM conversation_participants cp
                WHERE cp.conversation_id = c.id AND cp.user_id <> $1
                LIMIT 1
            ) other ON TRUE
            LEFT JOIN profiles op ON op.id = other.user_id
            ORDER BY c.last_message_at DESC NULLS LAST, c.created_at DESC
        """
        rows = await self._execute_query(query, user_id, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def mark_read(self, conversation_id: str, user_id: str) -> bool:
        query = """
            UPDATE conversation_participants SET unread_count = 0, last_read_at = NOW()
            WHERE conversation_id = $1 AND user_id = $2
            RETURNING id
        """
        row = await self._execute_query(query, conversation_id, user_id, fetch_one=True)
        return row is not None

    async def total_unread(self, user_id: str) -> int:
        query = "SELECT COALESCE(SUM(unread_count), 0) FROM conversation_participants WHERE user_id = $1"
        return int(await self._fetch_value(query, user_id) or 0)


class MessageRepository(BaseRepository[DirectMessage]):
    """Repository for ``direct_messages``."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DirectMessage, "direct_messages", db_client)

    async def create(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        connection: Optional[asyncpg.Connection] = None,
    ) -> DirectMessage:
        """
        Insert a message and update conversation bookkeeping atomically.

        The conversation's last message timestamp and preview move forward
        and every other participant's unread counter is incremented.
        """
        if connection is None:
            async with self.transaction() as conn:
                return await self.create(conversation_id, sender_id, content, connection=conn)

        row = await self._execute_query(
            """
            INSERT INTO direct_messages (conversation_id, sender_id, content)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            conversation_id, sender_id, content,
            fetch_one=True, connection=connection,
        )
        message = self._row_to_model(row)
        await self._execute_query(
            """
            UPDATE conversations
            SET last_message_at = $2, last_message_preview = $3, updated_at = NOW()
            WHERE id = $1
            """,
            conversation_id, message.created_at, content[:PREVIEW_LENGTH],
            fetch_all=False, connection=connection,
        )
        await self._execute_query(
            """
            UPDATE conversation_participants SET unread_count = unread_count + 1
            WHERE conversation_id = $1 AND user_id <> $2
            """,
            conversation_id, sender_id,
            fetch_all=False, connection=connection,
        )
        return message

    async def list_page(
        self, conversation_id: str, limit: int, before: Optional[datetime] = None
    ) -> List[DirectMessage]:
        """Non-deleted messages newest first, fetching ``limit`` rows."""
        query = """
            SELECT * FROM direct_messages
            WHERE conversation_id = $1 AND is_deleted = FALSE
              AND ($2::timestamptz IS NULL OR created_at < $2)
            ORDER BY created_at DESC
            LIMIT $3
        """
        rows = await self._execute_query(query, conversation_id, before, limit, fetch_all=True)
        return self._rows_to_models(rows)

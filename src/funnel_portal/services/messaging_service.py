"""
Direct messaging between members and admins.

Conversations are two-party threads. Only admins may open a conversation;
members reply inside existing ones.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..repositories.messaging_repository import ConversationRepository, MessageRepository
from ..repositories.profile_repository import ProfileRepository
from ..schemas.database_models import Conversation, DirectMessage
from .errors import ForbiddenError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000


def participant_view(row: Dict[str, Any], id_key: str = "user_id", prefix: str = "") -> Dict[str, Any]:
    """Public participant card: ``{id, name, avatarUrl, isAdmin}``."""
    name = row.get(f"{prefix}full_name") or row.get(f"{prefix}first_name") or row.get(f"{prefix}email") or "Member"
    user_id = row.get(id_key)
    return {
        "id": str(user_id) if user_id else None,
        "name": name,
        "avatarUrl": row.get(f"{prefix}avatar_url"),
        "isAdmin": bool(row.get(f"{prefix}is_admin")),
    }


class MessagingService:
    """Conversation management and message delivery."""

    def __init__(
        self,
        conversations: Optional[ConversationRepository] = None,
        messages: Optional[MessageRepository] = None,
        profiles: Optional[ProfileRepository] = None,
    ):
        self.conversations = conversations or ConversationRepository()
        self.messages = messages or MessageRepository()
        self.profiles = profiles or ProfileRepository()

    async def get_or_create_conversation(self, admin_id: str, member_id: str) -> Tuple[Conversation, bool]:
        """
        Reuse the conversation shared by two users or open a new one.

        Returns:
            The conversation and whether it was created
        """
        existing = await self.conversations.find_shared(admin_id, member_id)
        if existing:
            return existing, False

        conversation = await self.conversations.create_with_participants(
            [(admin_id, True), (member_id, False)]
        )
        return conversation, True

    async def start_conversation(
        self,
        admin_id: str,
        is_admin: bool,
        member_id: str,
        initial_message: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Admin-initiated conversation with a member.

        Returns:
            Response payload and whether a new conversation was created
        """
        if not is_admin:
            raise ForbiddenError("Only admins can start conversations")
        if not member_id:
            raise ValidationFailedError("memberId is required")

        member = await self.profiles.get_by_id(member_id)
        if not member:
            raise NotFoundError("Member not found")

        conversation, created = await self.get_or_create_conversation(admin_id, member_id)
        if not created:
            return {"conversation": conversation.model_dump(mode="json"), "isExisting": True}, False

        message = None
        if initial_message and initial_message.strip():
            message = await self.messages.create(conversation.id, admin_id, initial_message.strip()[:MAX_MESSAGE_LENGTH])

        logger.info(f"Admin {admin_id} started conversation {conversation.id} with {member_id}")
        payload = {
            "conversation": conversation.model_dump(mode="json"),
            "isExisting": False,
        }
        if message:
            payload["message"] = message.model_dump(mode="json")
        return payload, True

    async def send_message(self, conversation_id: str, sender_id: str, content: Optional[str]) -> Dict[str, Any]:
        """Post a message into a conversation the sender takes part in."""
        if not conversation_id or content is None:
            raise ValidationFailedError("conversationId and content are required")

        content = content.strip()
        if not content:
            raise ValidationFailedError("Message content cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationFailedError(f"Message must be {MAX_MESSAGE_LENGTH} characters or less")

        participant = await self.conversations.get_participant(conversation_id, sender_id)
        if not participant:
            raise NotFoundError("Conversation not found")

        message = await self.messages.create(conversation_id, sender_id, content)
        sender = await self.profiles.get_by_id(sender_id)

        payload = message.model_dump(mode="json")
        payload["sender"] = participant_view(
            sender.model_dump() if sender else {"id": sender_id}, id_key="id"
        )
        return {"message": payload}

    async def send_system_message(self, sender_id: str, recipient_id: str, content: str) -> Tuple[Conversation, DirectMessage]:
        """Deliver a message from an admin account, opening a thread if needed."""
        conversation, _ = await self.get_or_create_conversation(sender_id, recipient_id)
        message = await self.messages.create(conversation.id, sender_id, content)
        return conversation, message

    async def list_conversations(
        self, user_id: str, page: int, limit: int, search: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self.conversations.list_for_user(user_id)

        if search:
            term = search.lower()
            rows = [
                row for row in rows
                if term in (row.get("other_full_name") or "").lower()
                or term in (row.get("other_first_name") or "").lower()
                or term in (row.get("other_email") or "").lower()
            ]

        total = len(rows)
        offset = (page - 1) * limit
        conversations = []
        for row in rows[offset:offset + limit]:
            conversations.append({
                "id": str(row["id"]),
                "createdAt": row["created_at"].isoformat() if row.get("created_at") else None,
                "lastMessageAt": row["last_message_at"].isoformat() if row.get("last_message_at") else None,
                "lastMessagePreview": row.get("last_message_preview"),
                "unreadCount": int(row.get("unread_count") or 0),
                "otherParticipant": participant_view(row, id_key="other_user_id", prefix="other_"),
            })

        return {
            "conversations": conversations,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "hasMore": offset + limit < total,
            },
        }

    async def get_conversation(
        self, conversation_id: str, user_id: str, limit: int, before: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Conversation detail with one page of messages, oldest first."""
        participant = await self.conversations.get_participant(conversation_id, user_id)
        if not participant:
            raise NotFoundError("Conversation not found")

        participants = await self.conversations.list_participants(conversation_id)
        page = await self.messages.list_page(conversation_id, limit + 1, before)

        has_more = len(page) > limit
        page = list(reversed(page[:limit]))

        return {
            "conversation": {
                "id": conversation_id,
                "participants": [participant_view(row) for row in participants],
            },
            "messages": [message.model_dump(mode="json") for message in page],
            "pagination": {
                "hasMore": has_more,
                "nextCursor": page[0].created_at.isoformat() if has_more and page else None,
            },
        }

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        if not await self.conversations.mark_read(conversation_id, user_id):
            raise NotFoundError("Conversation not found")

    async def unread_count(self, user_id: str) -> int:
        return await self.conversations.total_unread(user_id)

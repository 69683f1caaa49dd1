"""
Direct messaging between members and admins.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field

from ..services import MemberService, MessagingService
from ..utils.auth import AuthenticatedUser
from .dependencies import (
    PaginationParams,
    get_member,
    get_member_service,
    get_messaging_service,
    pagination,
    require_admin,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["Messages"])


class StartConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: Optional[str] = Field(None, alias="memberId")
    initial_message: Optional[str] = Field(None, alias="initialMessage")


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(None, alias="conversationId")
    content: Optional[str] = None


@router.get("/conversations", response_model=Dict[str, Any])
async def list_conversations(
    search: Optional[str] = None,
    paging: PaginationParams = Depends(pagination(20, 50)),
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    """Caller's conversations, most recent activity first."""
    return await messaging.list_conversations(member.id, paging.page, paging.limit, search)


@router.post("/conversations", response_model=Dict[str, Any])
async def start_conversation(
    request: StartConversationRequest,
    response: Response,
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    payload, created = await messaging.start_conversation(
        member.id, member.is_admin, request.member_id, request.initial_message
    )
    if created:
        response.status_code = status.HTTP_201_CREATED
    return payload


@router.get("/conversations/{conversation_id}", response_model=Dict[str, Any])
async def get_conversation(
    conversation_id: str,
    before: Optional[datetime] = None,
    paging: PaginationParams = Depends(pagination(50, 100)),
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    """One page of messages; ``before`` is the cursor from the previous page."""
    return await messaging.get_conversation(conversation_id, member.id, paging.limit, before)


@router.post("/conversations/{conversation_id}/mark-read", response_model=Dict[str, Any])
async def mark_conversation_read(
    conversation_id: str,
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    await messaging.mark_read(conversation_id, member.id)
    return {"success": True}


@router.post("", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def send_message(
    request: SendMessageRequest,
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    return await messaging.send_message(request.conversation_id, member.id, request.content)


@router.get("/unread-count", response_model=Dict[str, Any])
async def unread_count(
    member: AuthenticatedUser = Depends(get_member),
    messaging: MessagingService = Depends(get_messaging_service),
):
    return {"unreadCount": await messaging.unread_count(member.id)}


@router.get("/member-context/{member_id}", response_model=Dict[str, Any])
async def member_context(
    member_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    members: MemberService = Depends(get_member_service),
):
    """Purchases, lifetime value, progress and community counts for the chat sidebar."""
    return await members.get_member_context(member_id)

"""
Community discussion endpoints: posts, threaded comments, reactions,
notifications, member search and the sidebar widgets.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from ..services import DiscussionService
from ..utils.auth import AuthenticatedUser
from .dependencies import PaginationParams, get_discussion_service, get_member, pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/discussion", tags=["Discussion"])


class PostRequest(BaseModel):
    body: Optional[str] = None
    image_urls: Optional[Any] = None
    embedded_media: Optional[Any] = None


class PinRequest(BaseModel):
    pinned: bool = True


class HideRequest(BaseModel):
    hidden: bool = True
    reason: Optional[str] = None


class CommentRequest(BaseModel):
    body: Optional[str] = None
    parent_id: Optional[str] = None


class ReactionRequest(BaseModel):
    type: Optional[str] = None
    post_id: Optional[str] = None
    comment_id: Optional[str] = None


class MarkReadRequest(BaseModel):
    notification_ids: Optional[List[str]] = None
    mark_all: bool = False


# Posts
@router.get("/posts", response_model=Dict[str, Any])
async def list_posts(
    paging: PaginationParams = Depends(pagination(20, 50)),
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    """Feed with pinned posts first, then newest."""
    return await discussion.list_posts(member.id, member.is_admin, paging.page, paging.limit)


@router.post("/posts", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_post(
    request: PostRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.create_post(member.id, request.body, request.image_urls, request.embedded_media)


@router.get("/posts/{post_id}", response_model=Dict[str, Any])
async def get_post(
    post_id: str,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.get_post(post_id, member.id, member.is_admin)


@router.patch("/posts/{post_id}", response_model=Dict[str, Any])
async def update_post(
    post_id: str,
    request: PostRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.update_post(
        post_id, member.id, request.body, request.image_urls, request.embedded_media
    )


@router.delete("/posts/{post_id}", response_model=Dict[str, Any])
async def delete_post(
    post_id: str,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.delete_post(post_id, member.id, member.is_admin)


@router.post("/posts/{post_id}/pin", response_model=Dict[str, Any])
async def pin_post(
    post_id: str,
    request: PinRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.pin_post(post_id, member.is_admin, request.pinned)


@router.post("/posts/{post_id}/hide", response_model=Dict[str, Any])
async def hide_post(
    post_id: str,
    request: HideRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    """Moderation: hide a post with a reason, or restore it."""
    return await discussion.hide_post(post_id, member.id, member.is_admin, request.hidden, request.reason)


# Comments
@router.get("/posts/{post_id}/comments", response_model=Dict[str, Any])
async def list_comments(
    post_id: str,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.list_comments(post_id, member.id)


@router.post("/posts/{post_id}/comments", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_comment(
    post_id: str,
    request: CommentRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.create_comment(post_id, member.id, request.body, request.parent_id)


@router.patch("/comments/{comment_id}", response_model=Dict[str, Any])
async def update_comment(
    comment_id: str,
    request: CommentRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.update_comment(comment_id, member.id, request.body)


@router.delete("/comments/{comment_id}", response_model=Dict[str, Any])
async def delete_comment(
    comment_id: str,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.delete_comment(comment_id, member.id, member.is_admin)


# Reactions
@router.post("/reactions", response_model=Dict[str, Any])
async def toggle_reaction(
    request: ReactionRequest,
    response: Response,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    """Same type removes the reaction, another type switches it."""
    result = await discussion.toggle_reaction(member.id, request.type, request.post_id, request.comment_id)
    if result["action"] == "created":
        response.status_code = status.HTTP_201_CREATED
    return result


@router.delete("/reactions", response_model=Dict[str, Any])
async def remove_reaction(
    post_id: Optional[str] = None,
    comment_id: Optional[str] = None,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.remove_reaction(member.id, post_id, comment_id)


# Notifications
@router.get("/notifications", response_model=Dict[str, Any])
async def list_notifications(
    unread_only: bool = False,
    paging: PaginationParams = Depends(pagination(20, 50)),
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.list_notifications(member.id, unread_only, paging.page, paging.limit)


@router.post("/notifications/read", response_model=Dict[str, Any])
async def mark_notifications_read(
    request: MarkReadRequest,
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.mark_notifications_read(member.id, request.notification_ids, request.mark_all)


@router.get("/users/search", response_model=Dict[str, Any])
async def search_users(
    q: Optional[str] = None,
    paging: PaginationParams = Depends(pagination(10, 20)),
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    """Member lookup for @mention autocomplete."""
    return await discussion.search_users(member.id, q, paging.limit)


@router.get("/sidebar", response_model=Dict[str, Any])
async def sidebar(
    member: AuthenticatedUser = Depends(get_member),
    discussion: DiscussionService = Depends(get_discussion_service),
):
    return await discussion.get_sidebar(member.id)

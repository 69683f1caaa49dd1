"""
Protected content delivery: signed lesson media URLs and resource downloads.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response

from ..services import ContentService
from ..utils.auth import AuthenticatedUser, require_authentication
from .dependencies import get_content_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Content"])

SIGNED_URL_CACHE_CONTROL = "private, max-age=3000"


@router.get("/content/signed-url", response_model=Dict[str, Any])
async def lesson_signed_url(
    response: Response,
    product: Optional[str] = None,
    module: Optional[str] = None,
    lesson: Optional[str] = None,
    user: AuthenticatedUser = Depends(require_authentication),
    content: ContentService = Depends(get_content_service),
):
    """Playable or downloadable URL for a lesson the caller may access."""
    result = await content.get_lesson_url(user.id, product, module, lesson)
    response.headers["Cache-Control"] = SIGNED_URL_CACHE_CONTROL
    return result


@router.get("/resources/{resource_id}", response_model=Dict[str, Any])
async def resource_download(
    resource_id: str,
    user: AuthenticatedUser = Depends(require_authentication),
    content: ContentService = Depends(get_content_service),
):
    return await content.get_resource_url(user.id, resource_id)

"""
Bunny Stream video delivery.

Token-authenticated CDN URLs for HLS playlists and thumbnails, embed URLs,
and video metadata from the Stream API.
"""

import hashlib
import logging
import re
import time
from typing import Any, Dict, Optional

import aiohttp
import tenacity
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config import get_config
from .errors import BunnyError

logger = logging.getLogger(__name__)

BUNNY_VIDEO_ID = re.compile(r"^[a-f0-9-]{36}$", re.IGNORECASE)


def is_bunny_video_id(value: Optional[str]) -> bool:
    """Bunny Stream video ids are GUIDs; anything else is an external URL."""
    return bool(value and BUNNY_VIDEO_ID.match(value))


def sign_token(token_key: str, path: str, expires: int) -> str:
    """Bunny token auth: sha256 hex of key + path + expiry."""
    return hashlib.sha256(f"{token_key}{path}{expires}".encode("utf-8")).hexdigest()


class BunnyClient:
    """Signed URL generation and Stream API access."""

    def __init__(self):
        self.config = get_config().bunny

    def _signed_url(self, path: str, expires_in: Optional[int], now: Optional[float]) -> Dict[str, Any]:
        expires_in = expires_in or self.config.url_expiry_seconds
        expires = int(now if now is not None else time.time()) + expires_in
        token = sign_token(self.config.token_key or "", path, expires)
        return {
            "url": f"https://{self.config.cdn_hostname}{path}?token={token}&expires={expires}",
            "expires": expires,
        }

    def signed_playlist_url(
        self, video_id: str, expires_in: Optional[int] = None, now: Optional[float] = None
    ) -> Dict[str, Any]:
        return self._signed_url(f"/{video_id}/playlist.m3u8", expires_in, now)

    def signed_thumbnail_url(
        self, video_id: str, expires_in: Optional[int] = None, now: Optional[float] = None
    ) -> Dict[str, Any]:
        return self._signed_url(f"/{video_id}/thumbnail.jpg", expires_in, now)

    def embed_url(self, video_id: str, autoplay: bool = False) -> str:
        return f"{self.config.embed_url}/{self.config.library_id}/{video_id}?autoplay={'true' if autoplay else 'false'}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=tenacity.retry_if_exception_type(aiohttp.ClientError),
        reraise=True,
    )
    async def get_video(self, video_id: str) -> Dict[str, Any]:
        """Fetch video metadata (title, length, status)."""
        url = f"{self.config.api_url}/{self.config.library_id}/videos/{video_id}"
        headers = {"AccessKey": self.config.api_key or "", "Accept": "application/json"}
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.get(url, headers=headers) as response:
                if response.status >= 400:
                    raise BunnyError(f"Failed to get video: {response.reason}", status=response.status)
                return await response.json(content_type=None)


# Global client instance
bunny_client: Optional[BunnyClient] = None


def get_bunny_client() -> BunnyClient:
    global bunny_client
    if bunny_client is None:
        bunny_client = BunnyClient()
    return bunny_client

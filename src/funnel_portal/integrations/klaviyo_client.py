"""
Klaviyo marketing client.

Profiles, list membership and metric events for the post-purchase email
flows. All calls use the JSON:API endpoints with a pinned revision.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
import tenacity
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config import get_config
from .errors import KlaviyoError

logger = logging.getLogger(__name__)


class FunnelEvents:
    """Metric names that start Klaviyo flows."""
    ORDER_COMPLETED = "Order Completed"


class KlaviyoClient:
    """Async Klaviyo API client."""

    def __init__(self):
        self.config = get_config().klaviyo

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Klaviyo-API-Key {self.config.api_key}",
            "revision": self.config.revision,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=tenacity.retry_if_exception_type(aiohttp.ClientError),
        reraise=True,
    )
    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.config.api_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, json=payload, headers=self._headers()) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise KlaviyoError(f"Klaviyo API error: {body}", status=response.status)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)

    async def upsert_profile(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Create or update a profile by email.

        Returns:
            The Klaviyo profile id
        """
        attributes: Dict[str, Any] = {"email": email}
        if first_name:
            attributes["first_name"] = first_name
        if last_name:
            attributes["last_name"] = last_name
        if properties:
            attributes["properties"] = properties

        result = await self._request(
            "POST", "/profile-import/", {"data": {"type": "profile", "attributes": attributes}}
        )
        profile_id = (result or {}).get("data", {}).get("id")
        logger.info(f"Upserted Klaviyo profile for {email}")
        return profile_id

    async def get_profile_id_by_email(self, email: str) -> str:
        result = await self._request("GET", f'/profiles/?filter=equals(email,"{email}")')
        data = (result or {}).get("data") or []
        if not data:
            raise KlaviyoError(f"Profile not found for email: {email}")
        return data[0]["id"]

    async def add_profile_to_list(self, list_id: str, email: str, profile_id: Optional[str] = None) -> None:
        profile_id = profile_id or await self.get_profile_id_by_email(email)
        await self._request(
            "POST",
            f"/lists/{list_id}/relationships/profiles/",
            {"data": [{"type": "profile", "id": profile_id}]},
        )

    async def track_event(
        self,
        email: str,
        event_name: str,
        properties: Optional[Dict[str, Any]] = None,
        value: Optional[float] = None,
    ) -> None:
        """Record a metric event for the profile with this email."""
        attributes: Dict[str, Any] = {
            "metric": {"data": {"type": "metric", "attributes": {"name": event_name}}},
            "profile": {"data": {"type": "profile", "attributes": {"email": email}}},
            "properties": properties or {},
            "time": datetime.now(timezone.utc).isoformat(),
        }
        if value is not None:
            attributes["value"] = value

        await self._request("POST", "/events/", {"data": {"type": "event", "attributes": attributes}})
        logger.info(f"Tracked Klaviyo event '{event_name}' for {email}")


# Global client instance
klaviyo_client: Optional[KlaviyoClient] = None


def get_klaviyo_client() -> KlaviyoClient:
    global klaviyo_client
    if klaviyo_client is None:
        klaviyo_client = KlaviyoClient()
    return klaviyo_client

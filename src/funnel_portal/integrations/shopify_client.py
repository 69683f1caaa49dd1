"""
Shopify Admin API client.

Mirrors funnel sales into Shopify as paid orders so fulfilment and
reporting live in one place.
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp
import tenacity
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config import get_config
from .errors import ShopifyError

logger = logging.getLogger(__name__)


class ShopifyLineItem(BaseModel):
    title: str
    quantity: int = 1
    price: str


def merge_tags(existing: Optional[str], new_tags: List[str]) -> str:
    """Union of a comma separated tag string and new tags, order preserved."""
    tags = [tag.strip() for tag in (existing or "").split(",") if tag.strip()]
    for tag in new_tags:
        if tag not in tags:
            tags.append(tag)
    return ", ".join(tags)


class ShopifyClient:
    """Async Shopify Admin REST client."""

    def __init__(self):
        self.config = get_config().shopify

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def base_url(self) -> str:
        return f"https://{self.config.store_domain}/admin/api/{self.config.api_version}/"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=tenacity.retry_if_exception_type(aiohttp.ClientError),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.config.access_token or "",
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method, self.base_url + endpoint, json=payload, params=params, headers=headers
            ) as response:
                if response.status >= 400:
                    raise ShopifyError(f"Shopify API error: {response.reason}", status=response.status)
                return await response.json(content_type=None)

    async def find_or_create_customer(
        self,
        email: str,
        first_name: str,
        last_name: str,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        result = await self._request("GET", "customers/search.json", params={"query": f"email:{email}"})
        customers = result.get("customers") or []
        if customers:
            customer = customers[0]
            if tags:
                await self.add_customer_tags(customer["id"], tags, customer.get("tags"))
            return customer

        created = await self._request("POST", "customers.json", {
            "customer": {
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "tags": ", ".join(tags or []),
            }
        })
        logger.info(f"Created Shopify customer for {email}")
        return created["customer"]

    async def add_customer_tags(self, customer_id: Any, tags: List[str], existing: Optional[str] = None) -> None:
        if existing is None:
            current = await self._request("GET", f"customers/{customer_id}.json")
            existing = current.get("customer", {}).get("tags")
        await self._request("PUT", f"customers/{customer_id}.json", {
            "customer": {"id": customer_id, "tags": merge_tags(existing, tags)}
        })

    async def create_order(
        self,
        email: str,
        first_name: str,
        last_name: str,
        line_items: List[ShopifyLineItem],
        tags: Optional[List[str]] = None,
        note: Optional[str] = None,
        financial_status: str = "paid",
    ) -> Dict[str, Any]:
        order = {
            "order": {
                "email": email,
                "financial_status": financial_status,
                "currency": self.config.currency,
                "line_items": [item.model_dump() for item in line_items],
                "customer": {"first_name": first_name, "last_name": last_name, "email": email},
                "tags": ", ".join(tags or []),
                "note": note,
            }
        }
        result = await self._request("POST", "orders.json", order)
        logger.info(f"Created Shopify order {result.get('order', {}).get('id')} for {email}")
        return result.get("order", {})


# Global client instance
shopify_client: Optional[ShopifyClient] = None


def get_shopify_client() -> ShopifyClient:
    global shopify_client
    if shopify_client is None:
        shopify_client = ShopifyClient()
    return shopify_client

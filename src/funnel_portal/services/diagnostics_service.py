"""
Funnel tracking diagnostics for the admin dashboard.

Each table check reports its own status so one failing query does not
hide the others.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import AppConfig, get_config
from ..repositories.catalog_repository import ProductRepository
from ..repositories.funnel_event_repository import FunnelEventRepository
from ..repositories.profile_repository import ProfileRepository
from ..repositories.purchase_repository import PurchaseRepository
from .funnel_service import PURCHASE_EVENTS

logger = logging.getLogger(__name__)

EVENT_SAMPLE_SIZE = 1000
SERVER_VISITOR_PREFIX = "server-"


def _is_set(value: Optional[str]) -> bool:
    return bool(value) and "placeholder" not in value


def _short_id(value: str) -> str:
    return value[:8] + "..."


def _dollars(cents: Optional[int]) -> str:
    return f"${(cents or 0) / 100:g}"


class DiagnosticsService:
    """Read-only health report of the tracking pipeline and its tables."""

    def __init__(
        self,
        events: Optional[FunnelEventRepository] = None,
        profiles: Optional[ProfileRepository] = None,
        products: Optional[ProductRepository] = None,
        purchases: Optional[PurchaseRepository] = None,
        config: Optional[AppConfig] = None,
    ):
        self.events = events or FunnelEventRepository()
        self.profiles = profiles or ProfileRepository()
        self.products = products or ProductRepository()
        self.purchases = purchases or PurchaseRepository()
        self.config = config or get_config()

    def environment(self) -> Dict[str, bool]:
        return {
            "SUPABASE_URL_SET": _is_set(self.config.supabase.url),
            "SUPABASE_ANON_KEY_SET": _is_set(self.config.supabase.key),
            "SUPABASE_SERVICE_ROLE_KEY_SET": _is_set(self.config.supabase.service_role_key),
            "STRIPE_WEBHOOK_SECRET_SET": _is_set(self.config.stripe.webhook_secret),
        }

    @staticmethod
    async def _check(name: str, check: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        try:
            return {"status": "OK", **await check()}
        except Exception as e:
            logger.warning(f"Diagnostics check {name} failed: {e}")
            return {"status": "ERROR", "error": str(e)}

    async def run(self) -> Dict[str, Any]:
        """
        Environment flags, event counts and the latest rows of the funnel tables.

        When ``funnel_events`` cannot be queried only the environment and
        database status are reported.
        """
        diagnostics: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.environment(),
        }

        try:
            counts = await self.events.count_recent_by_type(EVENT_SAMPLE_SIZE)
        except Exception as e:
            logger.error(f"Diagnostics could not query funnel_events: {e}")
            diagnostics["database"] = {"status": "ERROR", "error": str(e), "tableExists": False}
            return diagnostics

        diagnostics["database"] = {"status": "OK", "tableExists": True, "canQuery": True}
        diagnostics["recentEvents"] = {"total": sum(counts.values()), "byType": counts}

        purchases = await self.events.list_recent(PURCHASE_EVENTS, 5)
        diagnostics["recentPurchases"] = [
            {
                "id": event.id,
                "eventType": event.event_type,
                "funnelStep": event.funnel_step,
                "revenue": _dollars(event.revenue_cents),
                "createdAt": event.created_at.isoformat(),
                "isServerSide": event.visitor_id.startswith(SERVER_VISITOR_PREFIX),
            }
            for event in purchases
        ]
        views = await self.events.list_recent(["page_view"], 10)
        diagnostics["recentPageViews"] = [
            {"funnelStep": event.funnel_step, "createdAt": event.created_at.isoformat()} for event in views
        ]

        async def recent_profiles() -> Dict[str, Any]:
            profiles = await self.profiles.list_recent(5)
            return {
                "recentCount": len(profiles),
                "recent": [
                    {"id": _short_id(p.id), "email": p.email, "createdAt": p.created_at.isoformat()}
                    for p in profiles
                ],
            }

        async def products() -> Dict[str, Any]:
            active = await self.products.list_active()
            return {"count": len(active), "list": [{"slug": p.slug, "name": p.name} for p in active[:10]]}

        async def recent_purchases() -> Dict[str, Any]:
            rows = await self.purchases.list_recent(5)
            return {
                "recentCount": len(rows),
                "recent": [
                    {
                        "id": _short_id(row.id),
                        "productId": row.product_id,
                        "status": row.status.value,
                        "createdAt": row.purchased_at.isoformat() if row.purchased_at else None,
                    }
                    for row in rows
                ],
            }

        diagnostics["profiles"] = await self._check("profiles", recent_profiles)
        diagnostics["products"] = await self._check("products", products)
        diagnostics["userPurchases"] = await self._check("user_purchases", recent_purchases)
        return diagnostics

"""
Test suite for the funnel tracking diagnostics report.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from funnel_portal.config import AppConfig
from funnel_portal.schemas.database_models import FunnelEvent, Product, Profile, UserPurchase
from funnel_portal.services.diagnostics_service import DiagnosticsService

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_event(event_type: str, visitor_id: str = "v-1", revenue_cents=None) -> FunnelEvent:
    return FunnelEvent(
        id="evt-1",
        visitor_id=visitor_id,
        funnel_session_id="s-1",
        event_type=event_type,
        funnel_step="checkout",
        revenue_cents=revenue_cents,
        created_at=NOW,
    )


@pytest.fixture
def repos():
    events = MagicMock()
    events.count_recent_by_type = AsyncMock(return_value={"page_view": 8, "purchase": 2})
    events.list_recent = AsyncMock(side_effect=lambda event_types, limit: (
        [make_event("purchase", "server-cs_1", 1495)] if "purchase" in event_types else [make_event("page_view")]
    ))
    profiles = MagicMock()
    profiles.list_recent = AsyncMock(return_value=[
        Profile(id="0123456789abcdef", email="jane@example.com", created_at=NOW),
    ])
    products = MagicMock()
    products.list_active = AsyncMock(return_value=[Product(id="p1", slug="guide", name="Guide")])
    purchases = MagicMock()
    purchases.list_recent = AsyncMock(return_value=[
        UserPurchase(id="fedcba9876543210", user_id="u1", product_id="p1", purchased_at=NOW),
    ])
    return {"events": events, "profiles": profiles, "products": products, "purchases": purchases}


@pytest.fixture
def service(repos):
    config = AppConfig()
    config.stripe.webhook_secret = "whsec_live"
    config.supabase.service_role_key = "placeholder_service_role_key"
    return DiagnosticsService(config=config, **repos)


class TestDiagnostics:
    """Test the tracking health report."""

    def test_environment_flags_ignore_placeholders(self, service):
        flags = service.environment()

        assert flags["STRIPE_WEBHOOK_SECRET_SET"] is True
        assert flags["SUPABASE_SERVICE_ROLE_KEY_SET"] is False

    @pytest.mark.asyncio
    async def test_report(self, service):
        report = await service.run()

        assert report["database"]["status"] == "OK"
        assert report["recentEvents"] == {"total": 10, "byType": {"page_view": 8, "purchase": 2}}
        purchase = report["recentPurchases"][0]
        assert purchase["revenue"] == "$14.95"
        assert purchase["isServerSide"] is True
        assert report["recentPageViews"] == [{"funnelStep": "checkout", "createdAt": NOW.isoformat()}]
        assert report["profiles"]["recent"][0]["id"] == "01234567..."
        assert report["products"] == {"status": "OK", "count": 1, "list": [{"slug": "guide", "name": "Guide"}]}
        assert report["userPurchases"]["recent"][0]["status"] == "active"

    @pytest.mark.asyncio
    async def test_unreachable_events_table(self, service, repos):
        repos["events"].count_recent_by_type.side_effect = Exception("relation does not exist")

        report = await service.run()

        assert report["database"] == {"status": "ERROR", "error": "relation does not exist", "tableExists": False}
        assert "recentPurchases" not in report
        repos["profiles"].list_recent.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_table_reported_alone(self, service, repos):
        repos["purchases"].list_recent.side_effect = Exception("permission denied")

        report = await service.run()

        assert report["userPurchases"] == {"status": "ERROR", "error": "permission denied"}
        assert report["profiles"]["status"] == "OK"

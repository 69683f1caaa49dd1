"""
Test suite for funnel analytics.

Tests IP hashing, weighted variant assignment, metric aggregation and
event tracking with visitor, session and A/B cookies.
"""

import hashlib
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from funnel_portal.config import AppConfig, FunnelConfig
from funnel_portal.schemas.database_models import FunnelEvent
from funnel_portal.services.errors import ValidationFailedError
from funnel_portal.services.funnel_service import (
    SESSION_COOKIE,
    VISITOR_COOKIE,
    FunnelService,
    TrackEvent,
    assign_variant,
    compute_metrics,
    hash_ip,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_event(event_type: str, step: str, session: str, visitor: str = None, **extra) -> FunnelEvent:
    return FunnelEvent(
        id=f"{session}-{step}-{event_type}",
        visitor_id=visitor or f"v-{session}",
        funnel_session_id=session,
        event_type=event_type,
        funnel_step=step,
        created_at=NOW,
        **extra,
    )


@pytest.fixture
def events_repo():
    repo = MagicMock()
    repo.create = AsyncMock()
    repo.list_between = AsyncMock(return_value=[])
    repo.count_sessions_since = AsyncMock(return_value=3)
    return repo


@pytest.fixture
def config():
    config = AppConfig()
    config.funnel = FunnelConfig(ab_tests={"landing": {"a": 50, "b": 50}})
    return config


@pytest.fixture
def service(events_repo, config):
    return FunnelService(events=events_repo, config=config)


class TestHashIp:
    """Test client IP hashing."""

    def test_forwarded_for_first_hop(self):
        expected = hashlib.sha256(b"1.2.3.4").hexdigest()[:16]
        assert hash_ip({"x-forwarded-for": "1.2.3.4, 10.0.0.1"}) == expected

    def test_real_ip(self):
        assert hash_ip({"x-real-ip": "5.6.7.8"}) == hashlib.sha256(b"5.6.7.8").hexdigest()[:16]

    def test_unknown(self):
        assert hash_ip({}) == "unknown"


class TestAssignVariant:
    """Test weighted variant assignment."""

    def test_low_roll_picks_first(self):
        assert assign_variant({"a": 50, "b": 50}, rand=lambda: 0.1) == "a"

    def test_high_roll_picks_last(self):
        assert assign_variant({"a": 50, "b": 50}, rand=lambda: 0.9) == "b"

    def test_weights_respected(self):
        assert assign_variant({"a": 10, "b": 90}, rand=lambda: 0.2) == "b"


class TestComputeMetrics:
    """Test dashboard aggregation."""

    def test_empty(self):
        metrics = compute_metrics([])
        assert metrics["summary"]["sessions"] == 0
        assert metrics["summary"]["conversionRate"] == 0
        assert metrics["summary"]["aovPerCustomer"] == 0
        assert len(metrics["stepMetrics"]) == 6
        assert metrics["abTests"] == []

    def test_rates_and_revenue(self):
        events = [
            make_event("page_view", "landing", "s1", variant="a"),
            make_event("page_view", "landing", "s1", variant="a"),
            make_event("page_view", "landing", "s2", variant="b"),
            make_event("page_view", "checkout", "s1"),
            make_event("purchase", "checkout", "s1", revenue_cents=3400),
            make_event("page_view", "upsell-1", "s1"),
            make_event("upsell_accept", "upsell-1", "s1", revenue_cents=9700),
            make_event("page_view", "unknown-step", "s3"),
        ]

        metrics = compute_metrics(events)

        summary = metrics["summary"]
        assert summary["sessions"] == 2
        assert summary["purchases"] == 1
        assert summary["conversionRate"] == 50
        assert summary["totalRevenue"] == 131.0
        assert summary["uniqueCustomers"] == 1
        assert summary["aovPerCustomer"] == 131.0

        steps = {m["step"]: m for m in metrics["stepMetrics"]}
        assert steps["landing"]["sessions"] == 2
        assert steps["landing"]["conversionRate"] == 0
        assert steps["checkout"]["conversionRate"] == 100
        assert steps["upsell-1"]["revenue"] == 97.0
        assert steps["upsell-1"]["conversionRate"] == 100

    def test_ab_tests_listed_per_variant(self):
        events = [
            make_event("page_view", "landing", "s1", variant="a"),
            make_event("page_view", "landing", "s1", variant="a"),
            make_event("page_view", "landing", "s2", variant="b"),
            make_event("purchase", "landing", "s2", variant="b", revenue_cents=700),
        ]

        ab_tests = {(t["step"], t["variant"]): t for t in compute_metrics(events)["abTests"]}

        assert ab_tests[("landing", "a")] == {
            "step": "landing", "variant": "a", "sessions": 2, "purchases": 0, "conversionRate": 0, "revenue": 0.0,
        }
        assert ab_tests[("landing", "b")]["purchases"] == 1
        assert ab_tests[("landing", "b")]["conversionRate"] == 100
        assert ab_tests[("landing", "b")]["revenue"] == 7.0

    def test_step_rate_uses_own_sessions_and_customers_are_sessions(self):
        events = [make_event("page_view", "landing", f"s{i}") for i in range(1, 5)]
        events += [
            make_event("page_view", "checkout", "s1", visitor="v1"),
            make_event("page_view", "checkout", "s2", visitor="v1"),
            make_event("purchase", "checkout", "s1", visitor="v1", revenue_cents=700),
            make_event("purchase", "checkout", "s2", visitor="v1", revenue_cents=700),
        ]

        metrics = compute_metrics(events)

        steps = {m["step"]: m for m in metrics["stepMetrics"]}
        assert steps["checkout"]["conversionRate"] == 100
        assert metrics["summary"]["uniqueCustomers"] == 2
        assert metrics["summary"]["aovPerCustomer"] == 7.0
        assert metrics["summary"]["conversionRate"] == 50


class TestTrack:
    """Test event tracking."""

    @pytest.mark.asyncio
    async def test_missing_fields(self, service):
        with pytest.raises(ValidationFailedError, match="Missing required fields"):
            await service.track(TrackEvent(event_type="page_view"), {}, {})

    @pytest.mark.asyncio
    async def test_invalid_event_type(self, service):
        with pytest.raises(ValidationFailedError, match="Invalid event type"):
            await service.track(TrackEvent(event_type="click", funnel_step="landing"), {}, {})

    @pytest.mark.asyncio
    async def test_invalid_step(self, service):
        with pytest.raises(ValidationFailedError, match="Invalid funnel step"):
            await service.track(TrackEvent(event_type="page_view", funnel_step="nowhere"), {}, {})

    @pytest.mark.asyncio
    async def test_new_visitor_gets_cookies(self, service, events_repo):
        result = await service.track(
            TrackEvent(event_type="page_view", funnel_step="checkout"),
            {},
            {"user-agent": "pytest", "x-real-ip": "1.1.1.1"},
        )

        assert result.body["isNewVisitor"] is True
        assert result.body["isNewSession"] is True
        assert result.body["variant"] is None
        assert [c.name for c in result.cookies] == [VISITOR_COOKIE, SESSION_COOKIE]
        created = events_repo.create.call_args.args[0]
        assert created.user_agent == "pytest"
        assert created.revenue_cents == 0
        assert created.visitor_id == result.body["visitorId"]

    @pytest.mark.asyncio
    async def test_existing_cookies_and_pinned_variant(self, service, events_repo):
        cookies = {VISITOR_COOKIE: "v1", SESSION_COOKIE: "s1", "ab_variant_landing": "b"}

        result = await service.track(TrackEvent(event_type="page_view", funnel_step="landing"), cookies, {})

        assert result.body["visitorId"] == "v1"
        assert result.body["funnelSessionId"] == "s1"
        assert result.body["isNewVisitor"] is False
        assert result.body["variant"] == "b"
        assert result.cookies[-1].name == "ab_variant_landing"
        assert events_repo.create.call_args.args[0].variant == "b"

    def test_stale_variant_cookie_reassigned(self, service):
        variant = service.resolve_variant("landing", None, {"ab_variant_landing": "z"})
        assert variant in ("a", "b")

    def test_explicit_variant_wins(self, service):
        assert service.resolve_variant("landing", "c", {"ab_variant_landing": "b"}) == "c"


class TestDashboard:
    """Test dashboard queries."""

    @pytest.mark.asyncio
    async def test_metrics_date_range(self, service, events_repo):
        start = datetime(2024, 5, 1, tzinfo=timezone.utc)

        metrics = await service.get_metrics(start, NOW)

        events_repo.list_between.assert_awaited_once_with(start, NOW)
        assert metrics["dateRange"] == {"startDate": start.isoformat(), "endDate": NOW.isoformat()}

    @pytest.mark.asyncio
    async def test_active_sessions(self, service):
        assert (await service.count_active_sessions())["count"] == 3

    @pytest.mark.asyncio
    async def test_active_sessions_failure_reports_zero(self, service, events_repo):
        events_repo.count_sessions_since.side_effect = Exception("db down")
        assert (await service.count_active_sessions())["count"] == 0

"""
Test suite for admin member listing and activity tracking.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from funnel_portal.schemas.database_models import LessonProgress, Product, Profile
from funnel_portal.services.errors import NotFoundError, ValidationFailedError
from funnel_portal.services.member_service import MemberService, purchase_value_cents


def make_profile(user_id: str, name: str, joined_day: int) -> Profile:
    return Profile(
        id=user_id,
        email=f"{user_id}@example.com",
        full_name=name,
        created_at=datetime(2024, 1, joined_day, tzinfo=timezone.utc),
    )


@pytest.fixture
def repos():
    profiles = MagicMock()
    profiles.list_members = AsyncMock(return_value=[
        make_profile("u1", "Zoe", 1),
        make_profile("u2", "adam", 2),
        make_profile("u3", "Mia", 3),
    ])
    profiles.touch_last_active = AsyncMock()
    purchases = MagicMock()
    purchases.list_with_products_for_users = AsyncMock(return_value=[
        {"user_id": "u1", "status": "active", "purchase_source": "funnel", "price_cents": 700,
         "portal_price_cents": 500, "purchased_at": datetime(2024, 2, 1, tzinfo=timezone.utc)},
        {"user_id": "u1", "status": "active", "purchase_source": "portal", "price_cents": 9700,
         "portal_price_cents": 4700, "purchased_at": datetime(2024, 3, 1, tzinfo=timezone.utc)},
        {"user_id": "u2", "status": "refunded", "purchase_source": "funnel", "price_cents": 700},
        {"user_id": "u3", "status": "active", "purchase_source": "funnel", "price_cents": 2700},
    ])
    progress = MagicMock()
    progress.average_progress_by_user = AsyncMock(return_value={"u1": 42.34})
    return profiles, purchases, progress


@pytest.fixture
def service(repos):
    profiles, purchases, progress = repos
    return MemberService(profiles=profiles, purchases=purchases, progress=progress)


class TestPurchaseValue:
    """Test lifetime value per purchase."""

    def test_portal_price_for_portal_purchase(self):
        assert purchase_value_cents({"purchase_source": "portal", "price_cents": 9700, "portal_price_cents": 4700}) == 4700

    def test_list_price_otherwise(self):
        assert purchase_value_cents({"purchase_source": "funnel", "price_cents": 9700, "portal_price_cents": 4700}) == 9700

    def test_portal_without_portal_price(self):
        assert purchase_value_cents({"purchase_source": "portal", "price_cents": 9700}) == 9700

    def test_missing_price(self):
        assert purchase_value_cents({}) == 0


class TestListMembers:
    """Test member listing."""

    @pytest.mark.asyncio
    async def test_invalid_sort(self, service):
        with pytest.raises(ValidationFailedError):
            await service.list_members(1, 20, sort_by="password")

    @pytest.mark.asyncio
    async def test_invalid_order(self, service):
        with pytest.raises(ValidationFailedError):
            await service.list_members(1, 20, sort_order="sideways")

    @pytest.mark.asyncio
    async def test_stats(self, service):
        result = await service.list_members(1, 20, sort_by="created_at", sort_order="asc")

        members = {m["id"]: m for m in result["members"]}
        assert members["u1"]["productsOwned"] == 2
        assert members["u1"]["ltv"] == 54.0
        assert members["u1"]["overallProgress"] == 42.3
        assert members["u1"]["lastPurchaseAt"] == "2024-03-01T00:00:00+00:00"
        assert members["u2"]["productsOwned"] == 0
        assert members["u2"]["ltv"] == 0
        assert members["u3"]["overallProgress"] == 0

    @pytest.mark.asyncio
    async def test_sort_by_name_case_insensitive(self, service):
        result = await service.list_members(1, 20, sort_by="name", sort_order="asc")
        assert [m["fullName"] for m in result["members"]] == ["adam", "Mia", "Zoe"]

    @pytest.mark.asyncio
    async def test_sort_by_ltv_desc_and_paginate(self, service):
        result = await service.list_members(1, 2, sort_by="ltv", sort_order="desc")

        assert [m["id"] for m in result["members"]] == ["u1", "u3"]
        assert result["pagination"] == {"page": 1, "limit": 2, "total": 3, "hasMore": True}

    @pytest.mark.asyncio
    async def test_last_page(self, service):
        result = await service.list_members(2, 2, sort_by="ltv", sort_order="desc")

        assert [m["id"] for m in result["members"]] == ["u2"]
        assert result["pagination"]["hasMore"] is False

    @pytest.mark.asyncio
    async def test_blank_search_not_passed(self, service, repos):
        profiles = repos[0]
        await service.list_members(1, 20, search="")
        profiles.list_members.assert_awaited_once_with(None)


class TestRecordActivity:
    """Test activity stamping."""

    @pytest.mark.asyncio
    async def test_success(self, service, repos):
        assert await service.record_activity("u1") == {"success": True}
        repos[0].touch_last_active.assert_awaited_once_with("u1")

    @pytest.mark.asyncio
    async def test_failure_still_succeeds(self, service, repos):
        repos[0].touch_last_active.side_effect = Exception("db down")
        assert await service.record_activity("u1") == {"success": True}


@pytest.fixture
def member_repos():
    profiles = MagicMock()
    profiles.get_by_id = AsyncMock(return_value=Profile(
        id="u1",
        email="zoe@example.com",
        full_name="Zoe Quinn",
        first_name="Zoe",
        last_name="Quinn",
        stripe_customer_id="cus_1",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))
    purchases = MagicMock()
    purchases.list_with_products_for_users = AsyncMock(return_value=[
        {"user_id": "u1", "product_id": "p1", "status": "active", "purchase_source": "funnel",
         "product_name": "Course", "product_slug": "course", "price_cents": 9700, "portal_price_cents": 4700,
         "thumbnail_url": "course.png", "is_lead_magnet": False,
         "purchased_at": datetime(2024, 2, 1, tzinfo=timezone.utc)},
        {"user_id": "u1", "product_id": "p2", "status": "active", "purchase_source": "portal",
         "product_name": "Guide", "product_slug": "guide", "price_cents": 2700, "portal_price_cents": 1900,
         "thumbnail_url": None, "is_lead_magnet": False, "purchased_at": None},
        {"user_id": "u1", "product_id": "p3", "status": "refunded", "purchase_source": "funnel",
         "product_name": "Kit", "product_slug": "kit", "price_cents": 500, "is_lead_magnet": False},
    ])
    progress = MagicMock()
    progress.list_for_user = AsyncMock(return_value=[
        LessonProgress(id="lp1", user_id="u1", lesson_id="l1", progress_percent=100,
                       completed_at=datetime(2024, 2, 2, tzinfo=timezone.utc)),
        LessonProgress(id="lp2", user_id="u1", lesson_id="l2", progress_percent=50),
    ])
    lessons = MagicMock()
    lessons.list_published_outline = AsyncMock(return_value=[
        {"lesson_id": "l1", "lesson_title": "Welcome", "module_id": "m1", "module_title": "Start", "product_id": "p1"},
        {"lesson_id": "l2", "lesson_title": "Setup", "module_id": "m1", "module_title": "Start", "product_id": "p1"},
        {"lesson_id": "l3", "lesson_title": "Practice", "module_id": "m2", "module_title": "Deeper", "product_id": "p1"},
    ])
    posts = MagicMock()
    posts.count_by_user = AsyncMock(return_value=3)
    posts.latest_created_at = AsyncMock(return_value=datetime(2024, 5, 1, tzinfo=timezone.utc))
    comments = MagicMock()
    comments.count_by_user = AsyncMock(return_value=4)
    reactions = MagicMock()
    reactions.count_by_user = AsyncMock(return_value=5)
    return {
        "profiles": profiles,
        "purchases": purchases,
        "progress": progress,
        "products": MagicMock(),
        "lessons": lessons,
        "posts": posts,
        "comments": comments,
        "reactions": reactions,
    }


@pytest.fixture
def member_service(member_repos):
    return MemberService(**member_repos)


class TestMemberContext:
    """Test the chat sidebar summary."""

    @pytest.mark.asyncio
    async def test_unknown_member(self, member_service, member_repos):
        member_repos["profiles"].get_by_id.return_value = None
        with pytest.raises(NotFoundError, match="Member not found"):
            await member_service.get_member_context("missing")

    @pytest.mark.asyncio
    async def test_summary(self, member_service):
        result = await member_service.get_member_context("u1")

        assert result["profile"]["fullName"] == "Zoe Quinn"
        assert result["profile"]["joinedAt"] == "2024-01-01T00:00:00+00:00"
        assert result["stats"] == {
            "lifetimeValue": 116.0,
            "productsOwned": 2,
            "lessonsCompleted": 1,
            "averageProgress": 75,
            "postsCount": 3,
            "commentsCount": 4,
        }
        assert [p["amount"] for p in result["products"]] == [97.0, 19.0]
        assert result["products"][1]["source"] == "portal"
        assert result["lastActiveAt"] == "2024-05-01T00:00:00+00:00"


class TestMemberDetail:
    """Test a member's detail with the progress tree."""

    @pytest.mark.asyncio
    async def test_unknown_member(self, member_service, member_repos):
        member_repos["profiles"].get_by_id.return_value = None
        with pytest.raises(NotFoundError):
            await member_service.get_member_detail("missing")

    @pytest.mark.asyncio
    async def test_progress_tree(self, member_service, member_repos):
        result = await member_service.get_member_detail("u1")

        member_repos["lessons"].list_published_outline.assert_awaited_once_with(["p1", "p2"])
        course, guide = result["products"]
        assert course["progressPercent"] == 50
        assert course["lessonsCompleted"] == 1
        assert course["totalLessons"] == 3
        assert [m["moduleTitle"] for m in course["modules"]] == ["Start", "Deeper"]
        welcome, setup = course["modules"][0]["lessons"]
        assert welcome["completedAt"] == "2024-02-02T00:00:00+00:00"
        assert setup == {"lessonId": "l2", "lessonTitle": "Setup", "progressPercent": 50, "completedAt": None}
        assert course["modules"][1]["lessons"][0]["progressPercent"] == 0
        assert guide["totalLessons"] == 0
        assert guide["progressPercent"] == 0
        assert guide["purchaseSource"] == "portal"

    @pytest.mark.asyncio
    async def test_financials_and_community(self, member_service):
        result = await member_service.get_member_detail("u1")

        assert result["financials"] == {"lifetimeValue": 116.0, "funnelSpend": 97.0, "portalSpend": 19.0}
        assert [h["productSlug"] for h in result["purchaseHistory"]] == ["course", "guide"]
        assert result["communityStats"] == {"postsCount": 3, "commentsCount": 4, "reactionsGiven": 5}
        assert result["profile"]["membershipTier"] == "paid"
        assert result["profile"]["stripeCustomerId"] == "cus_1"

    @pytest.mark.asyncio
    async def test_lead_magnet_only_is_free_tier(self, member_service, member_repos):
        member_repos["purchases"].list_with_products_for_users.return_value = [
            {"user_id": "u1", "product_id": "p9", "status": "active", "purchase_source": "funnel",
             "product_name": "Free Guide", "product_slug": "free-guide", "price_cents": 0, "is_lead_magnet": True},
        ]

        result = await member_service.get_member_detail("u1")

        assert result["profile"]["membershipTier"] == "free"
        assert result["financials"]["lifetimeValue"] == 0


class TestPortalMetrics:
    """Test portal-wide admin metrics."""

    NOW = datetime(2024, 6, 30, tzinfo=timezone.utc)

    @pytest.fixture
    def metrics_repos(self, member_repos):
        member_repos["profiles"].activity_counts = AsyncMock(return_value={
            "total": 10, "new_in_period": 2, "active_7_days": 3, "active_30_days": 5, "at_risk": 2, "dormant": 3,
        })
        member_repos["profiles"].list_ids_last_active_before = AsyncMock(return_value=["u1", "u2", "u9"])
        member_repos["purchases"].list_active_with_products = AsyncMock(return_value=[
            {"user_id": "u1", "product_id": "p1", "purchase_source": "funnel",
             "price_cents": 9700, "portal_price_cents": 4700, "is_lead_magnet": False},
            {"user_id": "u1", "product_id": "p2", "purchase_source": "portal",
             "price_cents": 2700, "portal_price_cents": 1900, "is_lead_magnet": False},
            {"user_id": "u2", "product_id": "p3", "purchase_source": "funnel",
             "price_cents": 0, "portal_price_cents": None, "is_lead_magnet": True},
            {"user_id": "u3", "product_id": "p1", "purchase_source": "funnel",
             "price_cents": 9700, "portal_price_cents": 4700, "is_lead_magnet": False},
        ])
        member_repos["products"].list_active = AsyncMock(return_value=[
            Product(id=f"p{n}", slug=f"product-{n}", name=f"Product {n}") for n in (4, 3, 2, 1)
        ])
        member_repos["progress"].average_completion_rate = AsyncMock(return_value=37.5)
        for repo, total in (("posts", 7), ("comments", 9), ("reactions", 11)):
            member_repos[repo].count = AsyncMock(return_value=total)
        member_repos["posts"].count_created_between = AsyncMock(return_value=2)
        member_repos["comments"].count_created_between = AsyncMock(return_value=4)
        return member_repos

    @pytest.mark.asyncio
    async def test_default_period(self, member_service, metrics_repos):
        await member_service.get_metrics(now=self.NOW)

        metrics_repos["profiles"].activity_counts.assert_awaited_once_with(
            self.NOW - timedelta(days=30), self.NOW, self.NOW
        )
        metrics_repos["profiles"].list_ids_last_active_before.assert_awaited_once_with(
            self.NOW - timedelta(days=60)
        )

    @pytest.mark.asyncio
    async def test_members_and_revenue(self, member_service, metrics_repos):
        result = await member_service.get_metrics(now=self.NOW)

        assert result["members"]["paidMembers"] == 2
        assert result["members"]["freeMembers"] == 8
        assert result["members"]["conversionRate"] == pytest.approx(20)
        assert result["members"]["newInPeriod"] == 2
        assert result["revenue"]["totalLifetime"] == 213.0
        assert result["revenue"]["portalRevenue"] == 19.0
        assert result["revenue"]["funnelRevenue"] == 194.0
        assert result["revenue"]["averageLTV"] == pytest.approx(71)
        assert result["purchases"]["totalCount"] == 4
        assert result["purchases"]["portalCount"] == 1
        assert result["purchases"]["portalConversionRate"] == pytest.approx(10)
        assert result["purchases"]["averageProductsPerMember"] == pytest.approx(4 / 3)

    @pytest.mark.asyncio
    async def test_popularity_community_and_activity(self, member_service, metrics_repos):
        result = await member_service.get_metrics(now=self.NOW)

        popular = result["products"]["mostPopular"]
        assert [(p["productId"], p["purchaseCount"]) for p in popular] == [
            ("p1", 2), ("p3", 1), ("p2", 1), ("p4", 0),
        ]
        assert result["courseProgress"]["averageCompletionRate"] == 37.5
        assert result["community"] == {
            "totalPosts": 7, "totalComments": 9, "totalReactions": 11, "postsInPeriod": 2, "commentsInPeriod": 4,
        }
        assert result["activity"]["dormantCount"] == 3
        assert result["activity"]["paidDormantCount"] == 1
        assert result["activity"]["freeDormantCount"] == 2

"""
Member administration and activity tracking.

Admin views: the member list, a member's detail with the per-lesson
progress tree, the chat sidebar context and portal-wide metrics.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..repositories.catalog_repository import LessonRepository, ProductRepository
from ..repositories.discussion_repository import CommentRepository, PostRepository, ReactionRepository
from ..repositories.profile_repository import ProfileRepository
from ..repositories.progress_repository import LessonProgressRepository
from ..repositories.purchase_repository import PurchaseRepository
from ..schemas.database_models import LessonProgress, Profile
from .errors import NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

SORT_FIELDS = ("name", "email", "created_at", "ltv", "products_count", "progress")
METRICS_DEFAULT_DAYS = 30
DORMANT_AFTER_DAYS = 60
POPULAR_PRODUCTS = 5


def purchase_value_cents(purchase: Dict[str, Any]) -> int:
    """Portal purchases are valued at the portal price when one is set."""
    if purchase.get("purchase_source") == "portal" and purchase.get("portal_price_cents"):
        return purchase["portal_price_cents"]
    return purchase.get("price_cents") or 0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _percent(numerator: int, denominator: int) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0


def product_progress(
    purchase: Dict[str, Any],
    lessons: List[Dict[str, Any]],
    progress_by_lesson: Dict[str, LessonProgress],
) -> Dict[str, Any]:
    """
    Progress through one owned product, grouped by module.

    ``lessons`` are the product's published lessons in course order. The
    product percentage is the mean lesson percentage, unstarted lessons
    counting as zero; a lesson at 100 % is completed.
    """
    modules: Dict[str, Dict[str, Any]] = {}
    total_percent = 0
    completed = 0
    for lesson in lessons:
        lesson_id = str(lesson["lesson_id"])
        record = progress_by_lesson.get(lesson_id)
        percent = record.progress_percent if record else 0
        total_percent += percent
        if percent >= 100:
            completed += 1

        module_id = str(lesson["module_id"])
        module = modules.setdefault(module_id, {
            "moduleId": module_id,
            "moduleTitle": lesson["module_title"],
            "lessons": [],
        })
        module["lessons"].append({
            "lessonId": lesson_id,
            "lessonTitle": lesson["lesson_title"],
            "progressPercent": percent,
            "completedAt": _iso(record.completed_at) if record else None,
        })

    return {
        "productId": str(purchase["product_id"]),
        "productName": purchase["product_name"],
        "productSlug": purchase["product_slug"],
        "thumbnailUrl": purchase.get("thumbnail_url"),
        "purchasedAt": _iso(purchase.get("purchased_at")),
        "purchaseSource": purchase.get("purchase_source") or "funnel",
        "progressPercent": total_percent / len(lessons) if lessons else 0,
        "lessonsCompleted": completed,
        "totalLessons": len(lessons),
        "modules": list(modules.values()),
    }


def _sort_key(sort_by: str):
    if sort_by == "name":
        return lambda m: (m["fullName"] or "").lower()
    if sort_by == "email":
        return lambda m: m["email"].lower()
    if sort_by == "ltv":
        return lambda m: m["ltv"]
    if sort_by == "products_count":
        return lambda m: m["productsOwned"]
    if sort_by == "progress":
        return lambda m: m["overallProgress"]
    return lambda m: m["joinedAt"] or ""


class MemberService:
    """Admin member views with lifetime value, progress and community activity."""

    def __init__(
        self,
        profiles: Optional[ProfileRepository] = None,
        purchases: Optional[PurchaseRepository] = None,
        progress: Optional[LessonProgressRepository] = None,
        products: Optional[ProductRepository] = None,
        lessons: Optional[LessonRepository] = None,
        posts: Optional[PostRepository] = None,
        comments: Optional[CommentRepository] = None,
        reactions: Optional[ReactionRepository] = None,
    ):
        self.profiles = profiles or ProfileRepository()
        self.purchases = purchases or PurchaseRepository()
        self.progress = progress or LessonProgressRepository()
        self.products = products or ProductRepository()
        self.lessons = lessons or LessonRepository()
        self.posts = posts or PostRepository()
        self.comments = comments or CommentRepository()
        self.reactions = reactions or ReactionRepository()

    async def list_members(
        self,
        page: int,
        limit: int,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        if sort_by not in SORT_FIELDS:
            raise ValidationFailedError(f"Invalid sortBy: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValidationFailedError(f"Invalid sortOrder: {sort_order}")

        profiles = await self.profiles.list_members(search or None)
        user_ids = [profile.id for profile in profiles]
        purchases = await self.purchases.list_with_products_for_users(user_ids)
        averages = await self.progress.average_progress_by_user(user_ids)

        stats: Dict[str, Dict[str, Any]] = {
            user_id: {"products": 0, "ltv_cents": 0, "last_purchase": None} for user_id in user_ids
        }
        for purchase in purchases:
            if purchase.get("status") != "active":
                continue
            entry = stats.get(str(purchase["user_id"]))
            if entry is None:
                continue
            entry["products"] += 1
            entry["ltv_cents"] += purchase_value_cents(purchase)
            purchased_at = purchase.get("purchased_at")
            if purchased_at and (entry["last_purchase"] is None or purchased_at > entry["last_purchase"]):
                entry["last_purchase"] = purchased_at

        members: List[Dict[str, Any]] = []
        for profile in profiles:
            entry = stats[profile.id]
            members.append({
                "id": profile.id,
                "email": profile.email,
                "fullName": profile.full_name,
                "avatarUrl": profile.avatar_url,
                "productsOwned": entry["products"],
                "ltv": entry["ltv_cents"] / 100,
                "overallProgress": round(averages.get(profile.id, 0.0), 1),
                "joinedAt": profile.created_at.isoformat() if profile.created_at else None,
                "lastActiveAt": profile.last_active_at.isoformat() if profile.last_active_at else None,
                "lastPurchaseAt": entry["last_purchase"].isoformat() if entry["last_purchase"] else None,
            })

        members.sort(key=_sort_key(sort_by), reverse=sort_order == "desc")

        total = len(members)
        offset = (page - 1) * limit
        page_items = members[offset:offset + limit]
        return {
            "members": page_items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "hasMore": offset + len(page_items) < total,
            },
        }

    async def record_activity(self, user_id: str) -> Dict[str, Any]:
        """Stamp ``last_active_at``; failures never reach the client."""
        try:
            await self.profiles.touch_last_active(user_id)
        except Exception as e:
            logger.warning(f"Failed to record activity for {user_id}: {e}")
        return {"success": True}

    async def _get_member(self, member_id: str) -> Profile:
        profile = await self.profiles.get_by_id(member_id)
        if not profile:
            raise NotFoundError("Member not found")
        return profile

    async def _active_purchases(self, member_id: str) -> List[Dict[str, Any]]:
        purchases = await self.purchases.list_with_products_for_users([member_id])
        return [purchase for purchase in purchases if purchase.get("status") == "active"]

    async def get_member_context(self, member_id: str) -> Dict[str, Any]:
        """
        Summary shown beside an admin's chat with a member.

        Raises:
            NotFoundError: Unknown member
        """
        profile = await self._get_member(member_id)
        purchases = await self._active_purchases(member_id)
        percents = [record.progress_percent for record in await self.progress.list_for_user(member_id)]

        products = [
            {
                "name": purchase["product_name"],
                "slug": purchase["product_slug"],
                "purchasedAt": _iso(purchase.get("purchased_at")),
                "source": purchase.get("purchase_source") or "funnel",
                "amount": purchase_value_cents(purchase) / 100,
            }
            for purchase in purchases
        ]
        average = sum(percents) / len(percents) if percents else 0

        return {
            "profile": {
                "id": profile.id,
                "email": profile.email,
                "fullName": profile.full_name,
                "avatarUrl": profile.avatar_url,
                "joinedAt": _iso(profile.created_at),
            },
            "stats": {
                "lifetimeValue": sum(purchase_value_cents(purchase) for purchase in purchases) / 100,
                "productsOwned": len(products),
                "lessonsCompleted": sum(1 for percent in percents if percent >= 100),
                "averageProgress": round(average),
                "postsCount": await self.posts.count_by_user(member_id),
                "commentsCount": await self.comments.count_by_user(member_id),
            },
            "products": products,
            "lastActiveAt": _iso(await self.posts.latest_created_at(member_id)),
        }

    async def get_member_detail(self, member_id: str) -> Dict[str, Any]:
        """
        One member's profile, spend, per-lesson progress and community stats.

        Raises:
            NotFoundError: Unknown member
        """
        profile = await self._get_member(member_id)
        purchases = await self._active_purchases(member_id)
        progress_by_lesson = {
            record.lesson_id: record for record in await self.progress.list_for_user(member_id)
        }
        outline = await self.lessons.list_published_outline(
            [str(purchase["product_id"]) for purchase in purchases]
        )
        lessons_by_product: Dict[str, List[Dict[str, Any]]] = {}
        for lesson in outline:
            lessons_by_product.setdefault(str(lesson["product_id"]), []).append(lesson)

        funnel_cents = 0
        portal_cents = 0
        history = []
        products = []
        for purchase in purchases:
            cents = purchase_value_cents(purchase)
            source = purchase.get("purchase_source") or "funnel"
            if source == "portal":
                portal_cents += cents
            else:
                funnel_cents += cents
            history.append({
                "productName": purchase["product_name"],
                "productSlug": purchase["product_slug"],
                "amount": cents / 100,
                "purchasedAt": _iso(purchase.get("purchased_at")),
                "source": source,
            })
            products.append(product_progress(
                purchase, lessons_by_product.get(str(purchase["product_id"]), []), progress_by_lesson
            ))

        has_paid_purchase = any(not purchase.get("is_lead_magnet") for purchase in purchases)

        return {
            "profile": {
                "id": profile.id,
                "email": profile.email,
                "fullName": profile.full_name,
                "firstName": profile.first_name,
                "lastName": profile.last_name,
                "avatarUrl": profile.avatar_url,
                "stripeCustomerId": profile.stripe_customer_id,
                "joinedAt": _iso(profile.created_at),
                "membershipTier": "paid" if has_paid_purchase else "free",
            },
            "financials": {
                "lifetimeValue": (funnel_cents + portal_cents) / 100,
                "funnelSpend": funnel_cents / 100,
                "portalSpend": portal_cents / 100,
            },
            "products": products,
            "purchaseHistory": history,
            "communityStats": {
                "postsCount": await self.posts.count_by_user(member_id),
                "commentsCount": await self.comments.count_by_user(member_id),
                "reactionsGiven": await self.reactions.count_by_user(member_id),
            },
        }

    async def get_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Portal-wide membership, revenue, purchase, course and community metrics.

        The period defaults to the last 30 days and only bounds new members,
        posts and comments; revenue and purchases cover all active purchases.
        A paid member owns at least one product that is not a lead magnet.
        """
        now = now or datetime.now(timezone.utc)
        end = end or now
        start = start or now - timedelta(days=METRICS_DEFAULT_DAYS)

        counts = await self.profiles.activity_counts(start, end, now)
        purchases = await self.purchases.list_active_with_products()

        portal_cents = 0
        funnel_cents = 0
        portal_count = 0
        customers = set()
        portal_customers = set()
        paid_customers = set()
        purchases_by_product: Dict[str, int] = {}
        for purchase in purchases:
            user_id = str(purchase["user_id"])
            customers.add(user_id)
            cents = purchase_value_cents(purchase)
            if purchase.get("purchase_source") == "portal":
                portal_cents += cents
                portal_count += 1
                portal_customers.add(user_id)
            else:
                funnel_cents += cents
            if purchase.get("is_lead_magnet") is False:
                paid_customers.add(user_id)
            product_id = str(purchase["product_id"])
            purchases_by_product[product_id] = purchases_by_product.get(product_id, 0) + 1

        popular = sorted(
            (
                {
                    "productId": product.id,
                    "productName": product.name,
                    "productSlug": product.slug,
                    "purchaseCount": purchases_by_product.get(product.id, 0),
                }
                for product in await self.products.list_active()
            ),
            key=lambda item: item["purchaseCount"],
            reverse=True,
        )[:POPULAR_PRODUCTS]

        dormant_ids = await self.profiles.list_ids_last_active_before(now - timedelta(days=DORMANT_AFTER_DAYS))
        paid_dormant = sum(1 for user_id in dormant_ids if user_id in paid_customers)

        total_members = counts["total"]
        total_revenue = (portal_cents + funnel_cents) / 100

        return {
            "members": {
                "total": total_members,
                "freeMembers": total_members - len(paid_customers),
                "paidMembers": len(paid_customers),
                "conversionRate": _percent(len(paid_customers), total_members),
                "newInPeriod": counts["new_in_period"],
            },
            "revenue": {
                "totalLifetime": total_revenue,
                "portalRevenue": portal_cents / 100,
                "funnelRevenue": funnel_cents / 100,
                "averageLTV": total_revenue / len(customers) if customers else 0,
            },
            "purchases": {
                "totalCount": len(purchases),
                "portalCount": portal_count,
                "portalConversionRate": _percent(len(portal_customers), total_members),
                "averageProductsPerMember": len(purchases) / len(customers) if customers else 0,
            },
            "products": {"mostPopular": popular},
            "courseProgress": {"averageCompletionRate": await self.progress.average_completion_rate()},
            "community": {
                "totalPosts": await self.posts.count(),
                "totalComments": await self.comments.count(),
                "totalReactions": await self.reactions.count(),
                "postsInPeriod": await self.posts.count_created_between(start, end),
                "commentsInPeriod": await self.comments.count_created_between(start, end),
            },
            "activity": {
                "activeIn7Days": counts["active_7_days"],
                "activeIn30Days": counts["active_30_days"],
                "atRiskCount": counts["at_risk"],
                "dormantCount": counts["dormant"],
                "freeDormantCount": len(dormant_ids) - paid_dormant,
                "paidDormantCount": paid_dormant,
            },
        }

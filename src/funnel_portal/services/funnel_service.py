"""
Funnel analytics: server-side event tracking and dashboard metrics.

Visitors and sessions are identified by cookies the API sets; A/B variants
are assigned per step with weighted randomness and pinned by cookie.
"""

import hashlib
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel

from ..config import AppConfig, get_config
from ..repositories.funnel_event_repository import FunnelEventRepository
from ..schemas.database_models import FunnelEvent, FunnelEventCreate
from .errors import ValidationFailedError

logger = logging.getLogger(__name__)

VISITOR_COOKIE = "funnel_visitor_id"
SESSION_COOKIE = "funnel_session_id"
AB_VARIANT_PREFIX = "ab_variant_"

VISITOR_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
SESSION_COOKIE_MAX_AGE = 30 * 60
AB_COOKIE_MAX_AGE = 30 * 24 * 60 * 60

EVENT_TYPES = (
    "page_view",
    "purchase",
    "upsell_accept",
    "upsell_decline",
    "downsell_accept",
    "downsell_decline",
)
FUNNEL_STEPS = ("landing", "checkout", "upsell-1", "downsell-1", "upsell-2", "thank-you")
PURCHASE_EVENTS = ("purchase", "upsell_accept", "downsell_accept")

ACTIVE_SESSION_WINDOW = timedelta(minutes=5)
DEFAULT_METRICS_WINDOW = timedelta(days=30)


class TrackEvent(BaseModel):
    event_type: Optional[str] = None
    funnel_step: Optional[str] = None
    variant: Optional[str] = None
    revenue_cents: Optional[int] = None
    product_slug: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    metadata: Dict[str, Any] = {}


class CookieSpec(BaseModel):
    name: str
    value: str
    max_age: int


class TrackResult(BaseModel):
    body: Dict[str, Any]
    cookies: List[CookieSpec]


def hash_ip(headers: Mapping[str, str]) -> str:
    """First 16 hex chars of the sha256 of the client IP."""
    forwarded = headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (headers.get("x-real-ip") or "").strip()
    if not ip:
        return "unknown"
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]


def assign_variant(weights: Dict[str, int], rand: Callable[[], float] = random.random) -> str:
    """Pick a variant with probability proportional to its weight."""
    variants = list(weights.items())
    remaining = rand() * sum(weight for _, weight in variants)
    for variant, weight in variants:
        remaining -= weight
        if remaining <= 0:
            return variant
    return variants[0][0]


def _percent(numerator: int, denominator: int) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0


def compute_metrics(events: List[FunnelEvent]) -> Dict[str, Any]:
    """
    Aggregate raw funnel events into dashboard metrics.

    Step sessions count unique sessions with a page view at that step, and
    a step's conversion rate is its purchases over those sessions. Summary
    sessions are landing sessions; customers are unique purchase sessions.
    A/B sessions count page views of the variant.
    """
    step_sessions: Dict[str, set] = {step: set() for step in FUNNEL_STEPS}
    step_purchases = {step: 0 for step in FUNNEL_STEPS}
    step_revenue = {step: 0 for step in FUNNEL_STEPS}
    ab_data: Dict[str, Dict[str, Any]] = {}
    landing_sessions: set = set()
    purchase_sessions: set = set()
    total_revenue = 0

    for event in events:
        step = event.funnel_step
        if step not in step_sessions:
            continue

        is_purchase = event.event_type in PURCHASE_EVENTS
        if event.event_type == "page_view":
            step_sessions[step].add(event.funnel_session_id)
            if step == "landing":
                landing_sessions.add(event.funnel_session_id)

        revenue = event.revenue_cents or 0
        if is_purchase:
            step_purchases[step] += 1
            step_revenue[step] += revenue
            total_revenue += revenue
            if event.event_type == "purchase":
                purchase_sessions.add(event.funnel_session_id)

        if event.variant:
            data = ab_data.setdefault(f"{step}:{event.variant}", {
                "step": step, "variant": event.variant, "sessions": 0, "purchases": 0, "revenue": 0,
            })
            if event.event_type == "page_view":
                data["sessions"] += 1
            if is_purchase:
                data["purchases"] += 1
                data["revenue"] += revenue

    step_metrics = []
    for step in FUNNEL_STEPS:
        sessions = len(step_sessions[step])
        step_metrics.append({
            "step": step,
            "sessions": sessions,
            "purchases": step_purchases[step],
            "conversionRate": _percent(step_purchases[step], sessions),
            "revenue": step_revenue[step] / 100,
        })

    ab_tests = [
        {
            "step": data["step"],
            "variant": data["variant"],
            "sessions": data["sessions"],
            "purchases": data["purchases"],
            "conversionRate": _percent(data["purchases"], data["sessions"]),
            "revenue": data["revenue"] / 100,
        }
        for data in ab_data.values()
    ]

    total_sessions = len(landing_sessions)
    unique_customers = len(purchase_sessions)
    return {
        "summary": {
            "sessions": total_sessions,
            "purchases": unique_customers,
            "conversionRate": _percent(unique_customers, total_sessions),
            "totalRevenue": total_revenue / 100,
            "uniqueCustomers": unique_customers,
            "aovPerCustomer": (total_revenue / 100) / unique_customers if unique_customers else 0,
        },
        "stepMetrics": step_metrics,
        "abTests": ab_tests,
    }


class FunnelService:
    """Records funnel events and reports on them."""

    def __init__(self, events: Optional[FunnelEventRepository] = None, config: Optional[AppConfig] = None):
        self.events = events or FunnelEventRepository()
        self.config = config or get_config()

    def resolve_variant(self, step: str, explicit: Optional[str], cookies: Mapping[str, str]) -> Optional[str]:
        """Explicit variant, else the pinned cookie, else a weighted assignment."""
        if explicit:
            return explicit
        test = self.config.funnel.ab_tests.get(step)
        existing = cookies.get(f"{AB_VARIANT_PREFIX}{step}")
        if existing and (not test or existing in test):
            return existing
        if test:
            return assign_variant(test)
        return None

    async def track(
        self,
        event: TrackEvent,
        cookies: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> TrackResult:
        """
        Record one funnel event.

        Raises:
            ValidationFailedError: Unknown event type or funnel step
        """
        if not event.event_type or not event.funnel_step:
            raise ValidationFailedError("Missing required fields: eventType, funnelStep")
        if event.event_type not in EVENT_TYPES:
            raise ValidationFailedError(f"Invalid event type: {event.event_type}")
        if event.funnel_step not in FUNNEL_STEPS:
            raise ValidationFailedError(f"Invalid funnel step: {event.funnel_step}")

        visitor_id = cookies.get(VISITOR_COOKIE)
        is_new_visitor = not visitor_id
        visitor_id = visitor_id or str(uuid.uuid4())

        session_id = cookies.get(SESSION_COOKIE)
        is_new_session = not session_id
        session_id = session_id or str(uuid.uuid4())

        variant = self.resolve_variant(event.funnel_step, event.variant, cookies)

        await self.events.create(FunnelEventCreate(
            visitor_id=visitor_id,
            funnel_session_id=session_id,
            event_type=event.event_type,
            funnel_step=event.funnel_step,
            variant=variant,
            revenue_cents=event.revenue_cents or 0,
            product_slug=event.product_slug,
            user_agent=headers.get("user-agent"),
            ip_hash=hash_ip(headers),
            referrer=event.referrer,
            utm_source=event.utm_source,
            utm_medium=event.utm_medium,
            utm_campaign=event.utm_campaign,
            metadata=event.metadata,
        ))

        cookie_specs = [
            CookieSpec(name=VISITOR_COOKIE, value=visitor_id, max_age=VISITOR_COOKIE_MAX_AGE),
            CookieSpec(name=SESSION_COOKIE, value=session_id, max_age=SESSION_COOKIE_MAX_AGE),
        ]
        if variant:
            cookie_specs.append(CookieSpec(
                name=f"{AB_VARIANT_PREFIX}{event.funnel_step}", value=variant, max_age=AB_COOKIE_MAX_AGE
            ))

        return TrackResult(
            body={
                "success": True,
                "visitorId": visitor_id,
                "funnelSessionId": session_id,
                "variant": variant,
                "isNewVisitor": is_new_visitor,
                "isNewSession": is_new_session,
            },
            cookies=cookie_specs,
        )

    async def get_metrics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        end = end or datetime.now(timezone.utc)
        start = start or end - DEFAULT_METRICS_WINDOW
        events = await self.events.list_between(start, end)
        metrics = compute_metrics(events)
        metrics["dateRange"] = {"startDate": start.isoformat(), "endDate": end.isoformat()}
        return metrics

    async def count_active_sessions(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        try:
            count = await self.events.count_sessions_since(now - ACTIVE_SESSION_WINDOW)
        except Exception as e:
            logger.error(f"Failed to count active sessions: {e}")
            count = 0
        return {"count": count, "timestamp": now.isoformat()}

"""
Funnel Event Repository for conversion analytics.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..schemas.database_models import FunnelEvent, FunnelEventCreate
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class FunnelEventRepository(BaseRepository[FunnelEvent]):
    """Repository for the append-only ``funnel_events`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(FunnelEvent, "funnel_events", db_client)

    async def create(self, event: FunnelEventCreate) -> FunnelEvent:
        query = """
            INSERT INTO funnel_events (
                visitor_id, funnel_session_id, event_type, funnel_step, variant,
                revenue_cents, product_slug, user_agent, ip_hash, referrer,
                utm_source, utm_medium, utm_campaign, metadata
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
        """
        row = await self._execute_query(
            query,
            event.visitor_id,
            event.funnel_session_id,
            event.event_type,
            event.funnel_step,
            event.variant,
            event.revenue_cents,
            event.product_slug,
            event.user_agent,
            event.ip_hash,
            event.referrer,
            event.utm_source,
            event.utm_medium,
            event.utm_campaign,
            event.metadata,
            fetch_one=True,
        )
        return self._row_to_model(row)

    async def list_between(self, start: datetime, end: datetime) -> List[FunnelEvent]:
        query = """
            SELECT * FROM funnel_events
            WHERE created_at >= $1 AND created_at <= $2
            ORDER BY created_at
        """
        rows = await self._execute_query(query, start, end, fetch_all=True)
        return self._rows_to_models(rows)

    async def count_sessions_since(self, since: datetime) -> int:
        query = "SELECT COUNT(DISTINCT funnel_session_id) FROM funnel_events WHERE created_at >= $1"
        return int(await self._fetch_value(query, since) or 0)

    async def count_recent_by_type(self, limit: int) -> Dict[str, int]:
        """Event type counts over the latest ``limit`` events."""
        query = """
            SELECT event_type, COUNT(*) AS n FROM (
                SELECT event_type FROM funnel_events ORDER BY created_at DESC LIMIT $1
            ) recent
            GROUP BY event_type
        """
        rows = await self._execute_query(query, limit, fetch_all=True)
        return {row["event_type"]: int(row["n"]) for row in rows or []}

    async def list_recent(self, event_types: Sequence[str], limit: int) -> List[FunnelEvent]:
        query = """
            SELECT * FROM funnel_events
            WHERE event_type = ANY($1::text[])
            ORDER BY created_at DESC
            LIMIT $2
        """
        rows = await self._execute_query(query, list(event_types), limit, fetch_all=True)
        return self._rows_to_models(rows)

"""
Purchase Repository for product entitlements.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..schemas.database_models import PurchaseStatus, UserPurchase, UserPurchaseCreate
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class PurchaseRepository(BaseRepository[UserPurchase]):
    """Repository for the ``user_purchases`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(UserPurchase, "user_purchases", db_client)

    async def upsert_active(self, purchase: UserPurchaseCreate) -> Tuple[UserPurchase, bool]:
        """
        Grant (or re-activate) a product for a user.

        Returns:
            The purchase row and whether a new row was inserted
        """
        query = """
            INSERT INTO user_purchases (
                user_id, product_id, stripe_payment_intent_id, stripe_checkout_session_id,
                amount_cents, currency, status, purchase_source
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (user_id, product_id) DO UPDATE SET
                status = EXCLUDED.status,
                stripe_payment_intent_id = COALESCE(EXCLUDED.stripe_payment_intent_id, user_purchases.stripe_payment_intent_id),
                stripe_checkout_session_id = COALESCE(EXCLUDED.stripe_checkout_session_id, user_purchases.stripe_checkout_session_id)
            RETURNING *, (xmax = 0) AS inserted
        """
        row = await self._execute_query(
            query,
            purchase.user_id,
            purchase.product_id,
            purchase.stripe_payment_intent_id,
            purchase.stripe_checkout_session_id,
            purchase.amount_cents,
            purchase.currency,
            PurchaseStatus.ACTIVE.value,
            purchase.purchase_source.value,
            fetch_one=True,
        )
        return self._row_to_model(row), bool(row["inserted"])

    async def has_active_purchase(self, user_id: str, product_id: str) -> bool:
        query = """
            SELECT 1 FROM user_purchases
            WHERE user_id = $1 AND product_id = $2 AND status = 'active'
        """
        return await self._execute_query(query, user_id, product_id, fetch_one=True) is not None

    async def list_active_product_ids(self, user_id: str) -> List[str]:
        query = "SELECT product_id FROM user_purchases WHERE user_id = $1 AND status = 'active'"
        rows = await self._execute_query(query, user_id, fetch_all=True)
        return [str(row["product_id"]) for row in rows or []]

    async def list_with_products_for_users(self, user_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Purchases of many users with the pricing columns needed for LTV."""
        if not user_ids:
            return []
        query = """
            SELECT up.id, up.user_id, up.product_id, up.status, up.purchase_source, up.purchased_at,
                   p.name AS product_name, p.slug AS product_slug,
                   p.price_cents, p.portal_price_cents, p.thumbnail_url, p.is_lead_magnet
            FROM user_purchases up
            JOIN products p ON p.id = up.product_id
            WHERE up.user_id = ANY($1::uuid[])
            ORDER BY up.purchased_at DESC
        """
        rows = await self._execute_query(query, list(user_ids), fetch_all=True)
        return [dict(row) for row in rows or []]

    async def list_active_with_products(self) -> List[Dict[str, Any]]:
        """Every active purchase with the pricing columns needed for revenue."""
        query = """
            SELECT up.user_id, up.product_id, up.purchase_source,
                   p.price_cents, p.portal_price_cents, p.is_lead_magnet
            FROM user_purchases up
            LEFT JOIN products p ON p.id = up.product_id
            WHERE up.status = 'active'
        """
        rows = await self._execute_query(query, fetch_all=True)
        return [dict(row) for row in rows or []]

    async def list_recent(self, limit: int) -> List[UserPurchase]:
        query = "SELECT * FROM user_purchases ORDER BY purchased_at DESC LIMIT $1"
        rows = await self._execute_query(query, limit, fetch_all=True)
        return self._rows_to_models(rows)

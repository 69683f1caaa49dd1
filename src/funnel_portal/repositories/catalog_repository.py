"""
Catalog repositories: products, modules, lessons and lesson resources.
"""

from typing import Any, Dict, List, Optional, Sequence

from ..schemas.database_models import Lesson, LessonResource, Module, Product
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class ProductRepository(BaseRepository[Product]):
    """Repository for the ``products`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Product, "products", db_client)

    async def get_by_slug(self, slug: str, active_only: bool = False) -> Optional[Product]:
        query = "SELECT * FROM products WHERE slug = $1"
        if active_only:
            query += " AND is_active = TRUE"
        row = await self._execute_query(query + " LIMIT 1", slug, fetch_one=True)
        return self._row_to_model(row)

    async def list_active(self) -> List[Product]:
        query = "SELECT * FROM products WHERE is_active = TRUE ORDER BY sort_order, name"
        rows = await self._execute_query(query, fetch_all=True)
        return self._rows_to_models(rows)


class ModuleRepository(BaseRepository[Module]):
    """Repository for the ``modules`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Module, "modules", db_client)

    async def list_for_product(self, product_id: str, published_only: bool = True) -> List[Module]:
        query = "SELECT * FROM modules WHERE product_id = $1"
        if published_only:
            query += " AND is_published = TRUE"
        rows = await self._execute_query(query + " ORDER BY sort_order", product_id, fetch_all=True)
        return self._rows_to_models(rows)

    async def get_by_slug(self, product_id: str, slug: str) -> Optional[Module]:
        query = "SELECT * FROM modules WHERE product_id = $1 AND slug = $2 LIMIT 1"
        row = await self._execute_query(query, product_id, slug, fetch_one=True)
        return self._row_to_model(row)


class LessonRepository(BaseRepository[Lesson]):
    """Repository for the ``lessons`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Lesson, "lessons", db_client)

    async def list_for_product(self, product_id: str, published_only: bool = False) -> List[Lesson]:
        """Every lesson whose module belongs to the product."""
        query = """
            SELECT l.* FROM lessons l
            JOIN modules m ON m.id = l.module_id
            WHERE m.product_id = $1
        """
        if published_only:
            query += " AND l.is_published = TRUE AND m.is_published = TRUE"
        query += " ORDER BY m.sort_order, l.sort_order"
        rows = await self._execute_query(query, product_id, fetch_all=True)
        return self._rows_to_models(rows)

    async def get_by_slug(self, module_id: str, slug: str) -> Optional[Lesson]:
        query = "SELECT * FROM lessons WHERE module_id = $1 AND slug = $2 LIMIT 1"
        row = await self._execute_query(query, module_id, slug, fetch_one=True)
        return self._row_to_model(row)

    async def get_product_id(self, lesson_id: str) -> Optional[str]:
        """Resolve the product a lesson belongs to."""
        query = """
            SELECT m.product_id FROM lessons l
            JOIN modules m ON m.id = l.module_id
            WHERE l.id = $1
        """
        value = await self._fetch_value(query, lesson_id)
        return str(value) if value else None

    async def list_published_outline(self, product_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Published lessons of several products with their module titles, in course order."""
        if not product_ids:
            return []
        query = """
            SELECT l.id AS lesson_id, l.title AS lesson_title,
                   m.id AS module_id, m.title AS module_title, m.product_id
            FROM lessons l
            JOIN modules m ON m.id = l.module_id
            WHERE m.product_id = ANY($1::uuid[])
              AND l.is_published = TRUE AND m.is_published = TRUE
            ORDER BY m.sort_order, l.sort_order
        """
        rows = await self._execute_query(query, list(product_ids), fetch_all=True)
        return [dict(row) for row in rows or []]


class LessonResourceRepository(BaseRepository[LessonResource]):
    """Repository for the ``lesson_resources`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(LessonResource, "lesson_resources", db_client)

    async def get_with_product(self, resource_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a resource together with the product that owns it.

        Returns:
            ``{"resource": LessonResource, "product_id": str}`` or None
        """
        query = """
            SELECT r.*, m.product_id AS owning_product_id
            FROM lesson_resources r
            JOIN lessons l ON l.id = r.lesson_id
            JOIN modules m ON m.id = l.module_id
            WHERE r.id = $1
        """
        row = await self._execute_query(query, resource_id, fetch_one=True)
        if not row:
            return None
        return {
            "resource": self._row_to_model(row),
            "product_id": str(row["owning_product_id"]),
        }

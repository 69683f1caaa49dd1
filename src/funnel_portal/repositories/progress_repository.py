"""
Lesson Progress Repository.

Stores per-lesson playback progress and aggregates it per product.
"""

from typing import Dict, List, Optional, Sequence

from ..schemas.database_models import LessonProgress
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class LessonProgressRepository(BaseRepository[LessonProgress]):
    """Repository for the ``lesson_progress`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(LessonProgress, "lesson_progress", db_client)

    async def upsert(
        self,
        user_id: str,
        lesson_id: str,
        progress_percent: Optional[int],
        last_position_seconds: Optional[int],
        completed: bool,
    ) -> LessonProgress:
        """
        Record progress for one lesson, keyed on (user_id, lesson_id).

        Completing a lesson pins progress to 100 and stamps ``completed_at``;
        an existing completion is never cleared.
        """
        if completed:
            progress_percent = 100

        query = """
            INSERT INTO lesson_progress (user_id, lesson_id, progress_percent, last_position_seconds, completed_at, updated_at)
            VALUES ($1, $2, COALESCE($3, 0), $4, CASE WHEN $5 THEN NOW() ELSE NULL END, NOW())
            ON CONFLICT (user_id, lesson_id) DO UPDATE SET
                progress_percent = COALESCE($3, lesson_progress.progress_percent),
                last_position_seconds = COALESCE($4, lesson_progress.last_position_seconds),
                completed_at = CASE WHEN $5 THEN COALESCE(lesson_progress.completed_at, NOW())
                                    ELSE lesson_progress.completed_at END,
                updated_at = NOW()
            RETURNING *
        """
        row = await self._execute_query(
            query, user_id, lesson_id, progress_percent, last_position_seconds, completed,
            fetch_one=True,
        )
        return self._row_to_model(row)

    async def count_completed_for_product(self, user_id: str, product_id: str) -> int:
        """Completed published lessons of the product."""
        query = """
            SELECT COUNT(*) FROM lesson_progress lp
            JOIN lessons l ON l.id = lp.lesson_id
            JOIN modules m ON m.id = l.module_id
            WHERE lp.user_id = $1 AND m.product_id = $2 AND lp.completed_at IS NOT NULL
              AND l.is_published = TRUE AND m.is_published = TRUE
        """
        return int(await self._fetch_value(query, user_id, product_id) or 0)

    async def count_started_for_product(self, user_id: str, product_id: str) -> int:
        """Number of lessons of the product with any progress record."""
        query = """
            SELECT COUNT(*) FROM lesson_progress lp
            JOIN lessons l ON l.id = lp.lesson_id
            JOIN modules m ON m.id = l.module_id
            WHERE lp.user_id = $1 AND m.product_id = $2
        """
        return int(await self._fetch_value(query, user_id, product_id) or 0)

    async def list_for_lessons(self, user_id: str, lesson_ids: Sequence[str]) -> List[LessonProgress]:
        if not lesson_ids:
            return []
        query = "SELECT * FROM lesson_progress WHERE user_id = $1 AND lesson_id = ANY($2::uuid[])"
        rows = await self._execute_query(query, user_id, list(lesson_ids), fetch_all=True)
        return self._rows_to_models(rows)

    async def completion_by_product(self, user_id: str) -> Dict[str, Dict[str, int]]:
        """
        Completed and total published lesson counts for every product.

        Returns:
            ``{product_id: {"completed": n, "total": m}}``
        """
        query = """
            SELECT m.product_id,
                   COUNT(l.id) AS total,
                   COUNT(lp.completed_at) AS completed
            FROM lessons l
            JOIN modules m ON m.id = l.module_id
            LEFT JOIN lesson_progress lp ON lp.lesson_id = l.id AND lp.user_id = $1
            WHERE l.is_published = TRUE AND m.is_published = TRUE
            GROUP BY m.product_id
        """
        rows = await self._execute_query(query, user_id, fetch_all=True)
        return {
            str(row["product_id"]): {"completed": int(row["completed"]), "total": int(row["total"])}
            for row in rows or []
        }

    async def average_progress_by_user(self, user_ids: Sequence[str]) -> Dict[str, float]:
        if not user_ids:
            return {}
        query = """
            SELECT user_id, AVG(progress_percent) AS average
            FROM lesson_progress
            WHERE user_id = ANY($1::uuid[])
            GROUP BY user_id
        """
        rows = await self._execute_query(query, list(user_ids), fetch_all=True)
        return {str(row["user_id"]): float(row["average"] or 0) for row in rows or []}

    async def list_for_user(self, user_id: str) -> List[LessonProgress]:
        query = "SELECT * FROM lesson_progress WHERE user_id = $1"
        rows = await self._execute_query(query, user_id, fetch_all=True)
        return self._rows_to_models(rows)

    async def average_completion_rate(self) -> float:
        """Mean over members of each member's average lesson progress."""
        query = """
            SELECT AVG(member_average) FROM (
                SELECT AVG(progress_percent) AS member_average
                FROM lesson_progress
                GROUP BY user_id
            ) averages
        """
        return float(await self._fetch_value(query) or 0)

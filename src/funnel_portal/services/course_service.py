"""
Portal course catalog and lesson progress.

Progress updates recompute the product's completion and fire the course
lifecycle automations (started, 25/50/75 %, completed).
"""

import logging
from typing import Any, Dict, Optional

from ..repositories.catalog_repository import LessonRepository, ModuleRepository, ProductRepository
from ..repositories.progress_repository import LessonProgressRepository
from ..repositories.purchase_repository import PurchaseRepository
from ..schemas.database_models import LessonProgressUpdate
from ..utils.job_logger import run_non_critical
from .automation_service import AutomationService, get_automation_service
from .errors import NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)


def completion_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(min(completed, total) / total * 100)


class CourseService:
    """Product listings, course outlines and progress tracking."""

    def __init__(
        self,
        products: Optional[ProductRepository] = None,
        modules: Optional[ModuleRepository] = None,
        lessons: Optional[LessonRepository] = None,
        progress: Optional[LessonProgressRepository] = None,
        purchases: Optional[PurchaseRepository] = None,
        automations: Optional[AutomationService] = None,
    ):
        self.products = products or ProductRepository()
        self.modules = modules or ModuleRepository()
        self.lessons = lessons or LessonRepository()
        self.progress = progress or LessonProgressRepository()
        self.purchases = purchases or PurchaseRepository()
        self.automations = automations or get_automation_service()

    async def list_products(self, user_id: str) -> Dict[str, Any]:
        """Active products with ownership and the caller's completion."""
        products = await self.products.list_active()
        owned = set(await self.purchases.list_active_product_ids(user_id))
        completion = await self.progress.completion_by_product(user_id)

        items = []
        for product in products:
            counts = completion.get(product.id, {"completed": 0, "total": 0})
            item = product.model_dump(mode="json")
            item["isOwned"] = product.id in owned
            item["progressPercent"] = completion_percent(counts["completed"], counts["total"])
            items.append(item)
        return {"products": items}

    async def get_product(self, slug: str, user_id: str) -> Dict[str, Any]:
        """Course outline: published modules and lessons with per-lesson progress."""
        product = await self.products.get_by_slug(slug, active_only=True)
        if not product:
            raise NotFoundError("Product not found")

        modules = await self.modules.list_for_product(product.id)
        lessons = await self.lessons.list_for_product(product.id, published_only=True)
        records = await self.progress.list_for_lessons(user_id, [lesson.id for lesson in lessons])
        progress_by_lesson = {record.lesson_id: record for record in records}

        lessons_by_module: Dict[str, list] = {}
        for lesson in lessons:
            record = progress_by_lesson.get(lesson.id)
            item = lesson.model_dump(mode="json")
            item["progress"] = record.model_dump(mode="json") if record else None
            lessons_by_module.setdefault(lesson.module_id, []).append(item)

        outline = []
        for module in modules:
            item = module.model_dump(mode="json")
            item["lessons"] = lessons_by_module.get(module.id, [])
            outline.append(item)

        completed = sum(1 for record in records if record.completed_at)
        return {
            "product": product.model_dump(mode="json"),
            "modules": outline,
            "isOwned": await self.purchases.has_active_purchase(user_id, product.id),
            "progressPercent": completion_percent(completed, len(lessons)),
        }

    async def _product_completion(self, user_id: str, product_id: str) -> Dict[str, int]:
        lessons = await self.lessons.list_for_product(product_id, published_only=True)
        completed = await self.progress.count_completed_for_product(user_id, product_id)
        return {"completed": completed, "total": len(lessons)}

    async def update_progress(
        self, user_id: str, lesson_id: Optional[str], update: LessonProgressUpdate
    ) -> Dict[str, Any]:
        """
        Record lesson progress and fire course milestones.

        Raises:
            ValidationFailedError: Missing lesson id
            NotFoundError: Unknown lesson
        """
        if not lesson_id:
            raise ValidationFailedError("lessonId is required")

        product_id = await self.lessons.get_product_id(lesson_id)
        if not product_id:
            raise NotFoundError("Lesson not found")

        first_in_product = await self.progress.count_started_for_product(user_id, product_id) == 0

        record = await self.progress.upsert(
            user_id,
            lesson_id,
            update.progress_percent,
            update.last_position_seconds,
            update.completed,
        )

        counts = await self._product_completion(user_id, product_id)
        product_progress = completion_percent(counts["completed"], counts["total"])

        product = await self.products.get_by_id(product_id)
        product_name = product.name if product else ""

        if first_in_product:
            await run_non_critical(
                self.automations.trigger_course_started(user_id, product_id, product_name),
                f"Course started automation for {user_id}",
            )
        await run_non_critical(
            self.automations.trigger_course_progress(user_id, product_id, product_name, product_progress),
            f"Course progress automation for {user_id}",
        )
        if counts["total"] and counts["completed"] >= counts["total"]:
            await run_non_critical(
                self.automations.trigger_course_completed(user_id, product_id, product_name),
                f"Course completed automation for {user_id}",
            )

        payload = record.model_dump(mode="json")
        payload["productProgress"] = product_progress
        return payload

    async def check_course_completion(self, user_id: str, product_id: Optional[str]) -> Dict[str, Any]:
        if not product_id:
            raise ValidationFailedError("productId is required")

        counts = await self._product_completion(user_id, product_id)
        if counts["total"] == 0:
            return {"completed": False, "message": "No lessons found"}

        return {
            "completed": counts["completed"] >= counts["total"],
            "completedCount": counts["completed"],
            "totalLessons": counts["total"],
        }

    async def fire_course_completed(self, user_id: str, product_id: str) -> None:
        """Background task run after a completed course check."""
        product = await self.products.get_by_id(product_id)
        await run_non_critical(
            self.automations.trigger_course_completed(user_id, product_id, product.name if product else ""),
            f"Course completed automation for {user_id}",
        )

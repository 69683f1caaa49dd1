"""
Gated content delivery.

Issues short-lived URLs for lesson media (Bunny Stream video, Supabase
Storage documents) and lesson resources, after checking the member owns
the product.
"""

import logging
from typing import Any, Dict, Optional

from ..config import AppConfig, get_config
from ..integrations.bunny_client import BunnyClient, get_bunny_client, is_bunny_video_id
from ..integrations.errors import StorageError
from ..integrations.storage import StorageGateway, get_storage_gateway
from ..repositories.catalog_repository import (
    LessonRepository,
    LessonResourceRepository,
    ModuleRepository,
    ProductRepository,
)
from ..repositories.purchase_repository import PurchaseRepository
from ..schemas.database_models import ContentType
from ..utils.job_logger import run_non_critical
from .errors import ForbiddenError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

NO_ACCESS_MESSAGE = "You do not have access to this content"


def lesson_content_path(product_slug: str, module_slug: str, lesson_slug: str, extension: str = "pdf") -> str:
    return f"{product_slug}/{module_slug}/{lesson_slug}.{extension}"


def download_file_name(title: Optional[str], file_path: str) -> str:
    """Resource title with the stored file's extension appended when missing."""
    name = title or file_path.rsplit("/", 1)[-1]
    extension = file_path.rsplit(".", 1)[-1] if "." in file_path else ""
    if extension and not name.lower().endswith(f".{extension.lower()}"):
        name = f"{name}.{extension}"
    return name


class ContentService:
    """Signed URLs for lesson media and downloadable resources."""

    def __init__(
        self,
        products: Optional[ProductRepository] = None,
        modules: Optional[ModuleRepository] = None,
        lessons: Optional[LessonRepository] = None,
        resources: Optional[LessonResourceRepository] = None,
        purchases: Optional[PurchaseRepository] = None,
        bunny: Optional[BunnyClient] = None,
        storage: Optional[StorageGateway] = None,
        config: Optional[AppConfig] = None,
    ):
        self.products = products or ProductRepository()
        self.modules = modules or ModuleRepository()
        self.lessons = lessons or LessonRepository()
        self.resources = resources or LessonResourceRepository()
        self.purchases = purchases or PurchaseRepository()
        self.bunny = bunny or get_bunny_client()
        self.storage = storage or get_storage_gateway()
        self.config = config or get_config()

    async def get_lesson_url(
        self,
        user_id: str,
        product_slug: Optional[str],
        module_slug: Optional[str],
        lesson_slug: Optional[str],
    ) -> Dict[str, Any]:
        """
        Resolve a lesson's playable or downloadable URL.

        Raises:
            ValidationFailedError: A path segment is missing
            NotFoundError: The product/module/lesson path does not resolve
            ForbiddenError: The member does not own the product
        """
        if not product_slug or not module_slug or not lesson_slug:
            raise ValidationFailedError("Missing required parameters: product, module, lesson")

        product = await self.products.get_by_slug(product_slug)
        module = await self.modules.get_by_slug(product.id, module_slug) if product else None
        lesson = await self.lessons.get_by_slug(module.id, lesson_slug) if module else None
        if not lesson:
            raise NotFoundError("Lesson not found")

        if not lesson.is_free_preview and not await self.purchases.has_active_purchase(user_id, product.id):
            raise ForbiddenError(NO_ACCESS_MESSAGE)

        content_type = lesson.content_type
        content_url = lesson.content_url

        if content_type in (ContentType.VIDEO, ContentType.AUDIO):
            if not content_url:
                raise NotFoundError("Content not yet uploaded")
            if not is_bunny_video_id(content_url):
                return {"type": "external", "url": content_url, "contentType": content_type.value}

            playlist = self.bunny.signed_playlist_url(content_url)
            thumbnail = self.bunny.signed_thumbnail_url(content_url)
            payload = {
                "type": "bunny",
                "url": playlist["url"],
                "embedUrl": self.bunny.embed_url(content_url),
                "thumbnailUrl": thumbnail["url"],
                "expiresAt": playlist["expires"],
                "contentType": content_type.value,
            }
            if self.config.bunny.api_key:
                video = await run_non_critical(
                    self.bunny.get_video(content_url), f"Bunny metadata for video {content_url}"
                )
                if video and video.get("length"):
                    payload["durationSeconds"] = video["length"]
            return payload

        if content_type in (ContentType.PDF, ContentType.DOWNLOAD):
            path = content_url or lesson_content_path(product_slug, module_slug, lesson_slug)
            try:
                url = self.storage.create_signed_url(
                    self.config.site.content_bucket, path, self.config.site.signed_url_expiry_seconds
                )
            except StorageError:
                raise NotFoundError("Content not found")
            return {"type": "supabase", "url": url, "contentType": content_type.value}

        return {"type": "text", "contentType": content_type.value}

    async def get_resource_url(self, user_id: str, resource_id: Optional[str]) -> Dict[str, Any]:
        """Download URL for a lesson resource the member owns."""
        if not resource_id:
            raise ValidationFailedError("Resource ID is required")

        found = await self.resources.get_with_product(resource_id)
        if not found:
            raise NotFoundError("Resource not found")

        resource = found["resource"]
        if not await self.purchases.has_active_purchase(user_id, found["product_id"]):
            raise ForbiddenError(NO_ACCESS_MESSAGE)

        file_name = download_file_name(resource.title, resource.file_path)
        url = self.storage.create_signed_url(
            self.config.site.resources_bucket,
            resource.file_path,
            self.config.site.signed_url_expiry_seconds,
            download_name=file_name,
        )
        return {"url": url, "fileName": file_name}

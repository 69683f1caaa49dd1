"""
Supabase Storage signed URLs for downloadable course content.
"""

import logging
from typing import Optional

from supabase import StorageException

from ..utils.database import SupabaseClient, get_db_client
from .errors import StorageError

logger = logging.getLogger(__name__)


class StorageGateway:
    """Issues time-limited URLs for private storage objects."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        self.db_client = db_client or get_db_client()

    def create_signed_url(
        self,
        bucket: str,
        path: str,
        expires_in: int,
        download_name: Optional[str] = None,
    ) -> str:
        """
        Sign a storage object path.

        Raises:
            StorageError: If the object cannot be signed
        """
        options = {"download": download_name} if download_name else None
        try:
            bucket_api = self.db_client.client.storage.from_(bucket)
            if options:
                result = bucket_api.create_signed_url(path, expires_in, options)
            else:
                result = bucket_api.create_signed_url(path, expires_in)
        except StorageException as e:
            logger.error(f"Failed to sign {bucket}/{path}: {e}")
            raise StorageError("Failed to generate download URL")

        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            raise StorageError("Failed to generate download URL")
        return url


# Global storage gateway instance
storage_gateway: Optional[StorageGateway] = None


def get_storage_gateway() -> StorageGateway:
    global storage_gateway
    if storage_gateway is None:
        storage_gateway = StorageGateway()
    return storage_gateway

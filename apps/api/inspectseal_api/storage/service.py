"""Object storage service for sealed export archives.

Uses MinIO (S3-compatible). Archives live under a tenant-scoped prefix and
are addressed by object key, never by filesystem path.
"""

import logging
import re
import uuid
from io import BytesIO
from typing import Optional

from minio import Minio
from minio.error import MinioException, S3Error
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from inspectseal_api.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_TENANT_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


def is_valid_tenant_id(tenant_id) -> bool:
    """Tenant ids become part of object keys, so they are restricted."""
    return isinstance(tenant_id, str) and bool(_TENANT_ID_RE.fullmatch(tenant_id))


class StorageError(Exception):
    """Object storage request failed (network or S3 error)."""


class StorageService:
    """Object storage service for sealed export archives."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        """Initialize storage service with MinIO client."""
        self.bucket = bucket or settings.minio_bucket
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_use_ssl,
        )
        self._bucket_checked = False

    def _ensure_bucket(self):
        """Ensure bucket exists (checked once per process)."""
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        self._bucket_checked = True

    def put_object(
        self,
        object_key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict] = None,
    ) -> str:
        """
        Upload object to storage.

        Args:
            object_key: Object key (e.g., "sealed-exports/{tenant_id}/{bundle_id}.zip")
            data: Object data as bytes
            content_type: MIME type
            metadata: Custom object metadata

        Returns:
            Object key (for consistency)

        Raises:
            StorageError: If the upload fails
        """
        try:
            self._ensure_bucket()
            self.client.put_object(
                self.bucket,
                object_key,
                BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=metadata,
            )
        except (MinioException, Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            raise StorageError(f"Failed to upload object {object_key}: {e}") from e

        logger.debug(f"Uploaded object: {object_key} ({len(data)} bytes)")
        return object_key

    def get_object(self, object_key: str) -> bytes:
        """
        Retrieve object from storage.

        Raises:
            FileNotFoundError: If object does not exist
            StorageError: If the request fails
        """
        try:
            response = self.client.get_object(self.bucket, object_key)
        except MinioException as e:
            if isinstance(e, S3Error) and e.code == "NoSuchKey":
                raise FileNotFoundError(f"Object not found: {object_key}")
            raise StorageError(f"Failed to retrieve object {object_key}: {e}") from e
        except (Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            raise StorageError(f"Failed to retrieve object {object_key}: {e}") from e

        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def object_exists(self, object_key: str) -> bool:
        """Check if object exists in storage; other request failures raise StorageError."""
        try:
            self.client.stat_object(self.bucket, object_key)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject", "ResourceNotFound"):
                return False
            raise StorageError(f"Failed to stat object {object_key}: {e}") from e
        except (MinioException, Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            raise StorageError(f"Failed to stat object {object_key}: {e}") from e

    @staticmethod
    def build_object_key(tenant_id: str, bundle_id: str) -> str:
        """
        Build object key for a sealed bundle.

        Format: sealed-exports/{tenant_id}/{bundle_id}.zip
        """
        if not is_valid_tenant_id(tenant_id):
            raise ValueError(f"Invalid tenant id for object key: {tenant_id!r}")
        try:
            uuid.UUID(bundle_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid bundle id for object key: {bundle_id!r}")
        return f"sealed-exports/{tenant_id}/{bundle_id}.zip"


# Global instance
_storage_service: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Get or create storage service instance."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service

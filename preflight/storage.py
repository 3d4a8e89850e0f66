# preflight/storage.py
import asyncio
import io
import logging
from abc import ABC, abstractmethod
from datetime import timedelta

from minio import Minio

from preflight.config import settings
from preflight.errors import StorageError
from preflight.lifecycle import BucketKind

logger = logging.getLogger(__name__)


def build_storage_key(job_id: str, file_name: str, owner_id: str = None, session_id: str = None) -> str:
    """Owned: {owner}/{job}/{file}. Anonymous: temp/{session}/{job}/{file}."""
    if owner_id:
        return f"{owner_id}/{job_id}/{file_name}"
    if not session_id:
        raise ValueError("anonymous storage keys need a session id")
    return f"temp/{session_id}/{job_id}/{file_name}"


class StorageAdapter(ABC):
    """Object store with a temporary and a permanent bucket."""

    @abstractmethod
    def bucket_name(self, kind: BucketKind) -> str:
        ...

    @abstractmethod
    async def create_upload_url(self, kind: BucketKind, key: str) -> str:
        """A URL the client PUTs the file to directly, bypassing this service."""

    @abstractmethod
    async def get(self, kind: BucketKind, key: str) -> bytes:
        ...

    @abstractmethod
    async def put(self, kind: BucketKind, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        ...

    @abstractmethod
    async def delete(self, kind: BucketKind, key: str) -> None:
        ...

    async def ensure_buckets(self) -> None:
        return None


class MinioStorage(StorageAdapter):
    def __init__(self, client: Minio, temp_bucket: str, permanent_bucket: str, upload_url_expiry_seconds: int = 3600):
        self._client = client
        self._buckets = {
            BucketKind.TEMPORARY: temp_bucket,
            BucketKind.PERMANENT: permanent_bucket,
        }
        self._upload_expiry = timedelta(seconds=upload_url_expiry_seconds)

    @classmethod
    def from_settings(cls, cfg=settings) -> "MinioStorage":
        client = Minio(
            cfg.minio_endpoint,
            access_key=cfg.minio_access_key,
            secret_key=cfg.minio_secret_key,
            secure=cfg.minio_secure,
        )
        return cls(client, cfg.temp_bucket, cfg.storage_bucket, cfg.upload_url_expiry_seconds)

    def bucket_name(self, kind: BucketKind) -> str:
        return self._buckets[BucketKind(kind)]

    async def ensure_buckets(self) -> None:
        for bucket in self._buckets.values():
            try:
                exists = await asyncio.to_thread(self._client.bucket_exists, bucket_name=bucket)
                if not exists:
                    await asyncio.to_thread(self._client.make_bucket, bucket_name=bucket)
                    logger.info("Created bucket %s", bucket)
            except Exception:
                logger.exception("Could not check/create bucket %s", bucket)

    async def create_upload_url(self, kind: BucketKind, key: str) -> str:
        bucket = self.bucket_name(kind)
        try:
            return await asyncio.to_thread(
                self._client.presigned_put_object,
                bucket_name=bucket,
                object_name=key,
                expires=self._upload_expiry,
            )
        except Exception as e:
            logger.exception("Failed to presign upload for %s/%s", bucket, key)
            raise StorageError(f"Failed to create upload URL: {e}") from e

    async def get(self, kind: BucketKind, key: str) -> bytes:
        bucket = self.bucket_name(kind)
        return await asyncio.to_thread(self._get_sync, bucket, key)

    def _get_sync(self, bucket: str, key: str) -> bytes:
        response = None
        try:
            response = self._client.get_object(bucket_name=bucket, object_name=key)
            return response.read()
        except Exception as e:
            raise StorageError(f"Failed to download {bucket}/{key}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    async def put(self, kind: BucketKind, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        bucket = self.bucket_name(kind)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                bucket_name=bucket,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except Exception as e:
            raise StorageError(f"Failed to upload {bucket}/{key}: {e}") from e

    async def delete(self, kind: BucketKind, key: str) -> None:
        bucket = self.bucket_name(kind)
        try:
            await asyncio.to_thread(self._client.remove_object, bucket_name=bucket, object_name=key)
        except Exception as e:
            raise StorageError(f"Failed to delete {bucket}/{key}: {e}") from e

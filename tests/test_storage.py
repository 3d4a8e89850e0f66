from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from preflight.errors import StorageError
from preflight.lifecycle import BucketKind
from preflight.storage import MinioStorage, build_storage_key


@pytest.fixture()
def minio_client() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def minio_storage(minio_client) -> MinioStorage:
    return MinioStorage(minio_client, "temp", "papers", upload_url_expiry_seconds=600)


class TestBuildStorageKey:
    def test_owned_key(self) -> None:
        assert build_storage_key("job-1", "paper.pdf", owner_id="alice") == "alice/job-1/paper.pdf"

    def test_anonymous_key(self) -> None:
        assert build_storage_key("job-1", "paper.pdf", session_id="s1") == "temp/s1/job-1/paper.pdf"

    def test_anonymous_key_needs_session(self) -> None:
        with pytest.raises(ValueError):
            build_storage_key("job-1", "paper.pdf")


class TestMinioStorage:
    def test_bucket_names(self, minio_storage) -> None:
        assert minio_storage.bucket_name(BucketKind.TEMPORARY) == "temp"
        assert minio_storage.bucket_name(BucketKind.PERMANENT) == "papers"

    async def test_presigned_upload_url(self, minio_storage, minio_client) -> None:
        minio_client.presigned_put_object.return_value = "https://minio/temp/k?sig"

        url = await minio_storage.create_upload_url(BucketKind.TEMPORARY, "k")

        assert url == "https://minio/temp/k?sig"
        minio_client.presigned_put_object.assert_called_once_with(
            bucket_name="temp", object_name="k", expires=timedelta(seconds=600)
        )

    async def test_get_reads_and_releases(self, minio_storage, minio_client) -> None:
        response = MagicMock()
        response.read.return_value = b"%PDF-data"
        minio_client.get_object.return_value = response

        data = await minio_storage.get(BucketKind.PERMANENT, "alice/j/paper.pdf")

        assert data == b"%PDF-data"
        minio_client.get_object.assert_called_once_with(bucket_name="papers", object_name="alice/j/paper.pdf")
        response.close.assert_called_once()
        response.release_conn.assert_called_once()

    async def test_get_failure_is_storage_error(self, minio_storage, minio_client) -> None:
        minio_client.get_object.side_effect = RuntimeError("NoSuchKey")

        with pytest.raises(StorageError, match="NoSuchKey"):
            await minio_storage.get(BucketKind.TEMPORARY, "missing")

    async def test_put_sends_length_and_type(self, minio_storage, minio_client) -> None:
        await minio_storage.put(BucketKind.PERMANENT, "alice/j/paper.pdf", b"12345")

        kwargs = minio_client.put_object.call_args.kwargs
        assert kwargs["bucket_name"] == "papers"
        assert kwargs["length"] == 5
        assert kwargs["content_type"] == "application/pdf"
        assert kwargs["data"].read() == b"12345"

    async def test_delete_failure_is_storage_error(self, minio_storage, minio_client) -> None:
        minio_client.remove_object.side_effect = OSError("connection reset")

        with pytest.raises(StorageError):
            await minio_storage.delete(BucketKind.TEMPORARY, "k")

    async def test_ensure_buckets_creates_missing(self, minio_storage, minio_client) -> None:
        minio_client.bucket_exists.side_effect = lambda bucket_name: bucket_name == "papers"

        await minio_storage.ensure_buckets()

        minio_client.make_bucket.assert_called_once_with(bucket_name="temp")

    async def test_ensure_buckets_logs_errors(self, minio_storage, minio_client) -> None:
        minio_client.bucket_exists.side_effect = OSError("unreachable")

        await minio_storage.ensure_buckets()

        minio_client.make_bucket.assert_not_called()

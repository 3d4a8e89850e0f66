import io
from datetime import datetime, timedelta, timezone
from typing import Dict, Set, Tuple

import pytest
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlalchemy.ext.asyncio import create_async_engine

from preflight.db import make_session_factory
from preflight.dispatch import LocalDispatcher
from preflight.errors import StorageError
from preflight.lifecycle import BucketKind
from preflight.models import Base
from preflight.storage import StorageAdapter
from preflight.worker import ExtractionWorker


class InMemoryStorage(StorageAdapter):
    """Dict-backed object store. ``fail_on`` names operations that raise StorageError."""

    def __init__(self, temp_bucket: str = "temp", permanent_bucket: str = "papers") -> None:
        self.objects: Dict[Tuple[BucketKind, str], bytes] = {}
        self.fail_on: Set[str] = set()
        self._names = {BucketKind.TEMPORARY: temp_bucket, BucketKind.PERMANENT: permanent_bucket}

    def bucket_name(self, kind: BucketKind) -> str:
        return self._names[BucketKind(kind)]

    def upload(self, kind: BucketKind, key: str, data: bytes) -> None:
        """What the client does with the presigned URL."""
        self.objects[(BucketKind(kind), key)] = data

    def has(self, kind: BucketKind, key: str) -> bool:
        return (BucketKind(kind), key) in self.objects

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise StorageError(f"{op} failed")

    async def create_upload_url(self, kind: BucketKind, key: str) -> str:
        self._check("create_upload_url")
        return f"https://storage.test/{self.bucket_name(kind)}/{key}?X-Amz-Signature=test"

    async def get(self, kind: BucketKind, key: str) -> bytes:
        self._check("get")
        try:
            return self.objects[(BucketKind(kind), key)]
        except KeyError:
            raise StorageError(f"Object not found: {self.bucket_name(kind)}/{key}")

    async def put(self, kind: BucketKind, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        self._check("put")
        self.objects[(BucketKind(kind), key)] = data

    async def delete(self, kind: BucketKind, key: str) -> None:
        self._check("delete")
        self.objects.pop((BucketKind(kind), key), None)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'preflight.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def worker(session_factory, storage) -> ExtractionWorker:
    return ExtractionWorker(session_factory, storage)


@pytest.fixture()
def dispatcher(worker) -> LocalDispatcher:
    return LocalDispatcher(worker)


@pytest.fixture()
def sample_pdf_bytes() -> bytes:
    """Generate a minimal single-page PDF with known text content."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.drawString(72, 720, "Hello PDF World")
    c.save()
    return buf.getvalue()


@pytest.fixture()
def multi_page_pdf_bytes() -> bytes:
    """Generate a two-page PDF with known text on each page."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.drawString(72, 720, "Page one content")
    c.showPage()
    c.drawString(72, 720, "Page two content")
    c.save()
    return buf.getvalue()


@pytest.fixture()
def empty_pdf_bytes() -> bytes:
    """Generate a valid PDF with no text content (blank page)."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.showPage()
    c.save()
    return buf.getvalue()

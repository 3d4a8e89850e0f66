# preflight/orchestrator.py
"""
Upload job lifecycle:
 - init: validate, rate-limit anonymous callers, create the job, hand out a direct-upload URL
 - complete: authorize, migrate anonymous jobs to a signed-in account, then
   uploading -> uploaded -> processing and dispatch exactly one extraction
 - status / pending: authorized reads
 - migrate: move bytes temp -> permanent and reassign the job

Validation and authorization always happen before the job store is touched.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from preflight import metrics
from preflight.auth import Account
from preflight.config import Settings, settings as default_settings
from preflight.dispatch import Dispatcher
from preflight.errors import (
    DispatchError,
    Forbidden,
    InvalidTransition,
    JobAlreadyClaimed,
    RateLimitExceeded,
    StorageError,
    Unauthorized,
    ValidationError,
)
from preflight.jobs import JobStore
from preflight.lifecycle import PENDING_STATUSES, BucketKind, JobStatus
from preflight.models import UploadJob
from preflight.rate_limit import RateLimiter
from preflight.storage import StorageAdapter, build_storage_key

logger = logging.getLogger(__name__)

# session ids become a path segment of the temp storage key
SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


@dataclass
class InitResult:
    job: UploadJob
    bucket: str
    upload_url: str
    requires_auth: bool
    message: str


@dataclass
class CompleteResult:
    job: UploadJob
    message: str


class UploadOrchestrator:
    def __init__(
        self,
        store: JobStore,
        limiter: RateLimiter,
        storage: StorageAdapter,
        dispatcher: Dispatcher,
        settings: Settings = default_settings,
    ):
        self._store = store
        self._limiter = limiter
        self._storage = storage
        self._dispatcher = dispatcher
        self._settings = settings

    # ---------- init ----------
    def validate_file(self, file_name: Optional[str], file_size: Optional[int]) -> str:
        if not file_name or not file_name.strip():
            raise ValidationError("File name required")
        # keep only the base name; it becomes part of the storage key
        name = Path(file_name.strip().replace("\\", "/")).name
        if not name:
            raise ValidationError("File name required")

        ext = Path(name).suffix.lower()
        if ext not in self._settings.allowed_extensions:
            allowed = ", ".join(e.lstrip(".").upper() for e in self._settings.allowed_extensions)
            raise ValidationError(f"Only {allowed} files are allowed")

        if file_size is not None:
            if file_size < 0:
                raise ValidationError("File size must not be negative")
            if file_size > self._settings.max_upload_size:
                limit_mb = self._settings.max_upload_size // (1024 * 1024)
                raise ValidationError(f"File size exceeds {limit_mb}MB limit")
        return name

    async def init_upload(
        self,
        file_name: Optional[str],
        file_size: Optional[int],
        source_ip: str,
        session_id: Optional[str] = None,
        account: Optional[Account] = None,
    ) -> InitResult:
        name = self.validate_file(file_name, file_size)
        if account is None and session_id and not SESSION_ID_PATTERN.fullmatch(session_id):
            raise ValidationError("Invalid session ID")

        if account is None:
            decision = await self._limiter.check_and_consume(source_ip)
            if not decision.allowed:
                metrics.uploads_rate_limited.inc()
                raise RateLimitExceeded(decision.retry_after_seconds)
            session_id = session_id or str(uuid.uuid4())
            owner_id = None
            kind = BucketKind.TEMPORARY
        else:
            # owned jobs are identified by the account alone
            session_id = None
            owner_id = account.id
            kind = BucketKind.PERMANENT

        job_id = str(uuid.uuid4())
        key = build_storage_key(job_id, name, owner_id=owner_id, session_id=session_id)
        upload_url = await self._storage.create_upload_url(kind, key)

        job = await self._store.create(
            job_id=job_id,
            owner_id=owner_id,
            session_id=session_id,
            source_ip=source_ip,
            file_name=name,
            file_size=file_size,
            storage_bucket=kind,
            storage_key=key,
        )
        bucket = self._storage.bucket_name(kind)
        metrics.uploads_initialized.labels(bucket=kind.value).inc()

        if account is None:
            message = "Upload initialized. Sign in to process your file."
        else:
            message = "Upload initialized - upload file directly to storage"
        return InitResult(job=job, bucket=bucket, upload_url=upload_url, requires_auth=account is None, message=message)

    # ---------- authorization ----------
    def authorize(self, job: UploadJob, session_id: Optional[str], account: Optional[Account]) -> None:
        if job.owner_id is not None:
            if account is None:
                raise Unauthorized("Sign in to access this job")
            if account.id != job.owner_id:
                raise Forbidden("Job belongs to another account")
            return
        if not session_id:
            raise Unauthorized("Session ID required")
        if session_id != job.session_id:
            raise Forbidden("Session does not match this job")

    # ---------- complete ----------
    async def complete_upload(
        self,
        job_id: Optional[str],
        session_id: Optional[str] = None,
        account: Optional[Account] = None,
    ) -> CompleteResult:
        if not job_id:
            raise ValidationError("Job ID required")

        job = await self._store.require(job_id)
        self.authorize(job, session_id, account)

        if account is not None and job.owner_id is None:
            job = await self.migrate(job, account, session_id)

        if JobStatus(job.status) is not JobStatus.UPLOADING:
            # already past the client's transition; never dispatch twice
            return CompleteResult(job=job, message=f"Upload already {job.status}")

        try:
            await self._store.update_status(job.id, JobStatus.UPLOADED)
        except InvalidTransition:
            # a concurrent complete won the transition and owns the dispatch
            job = await self._store.require(job.id)
            return CompleteResult(job=job, message=f"Upload already {job.status}")
        job = await self.start_processing(job.id)
        return CompleteResult(job=job, message="Upload complete, processing started")

    async def start_processing(self, job_id: str) -> UploadJob:
        # processing is recorded before dispatch, so a client that sees it knows the worker is scheduled
        job = await self._store.update_status(job_id, JobStatus.PROCESSING)
        try:
            self._dispatcher.dispatch(job.id, BucketKind(job.storage_bucket), job.storage_key)
        except Exception as e:
            logger.exception("Failed to dispatch extraction for job %s", job.id)
            raise DispatchError("Failed to start processing") from e
        metrics.extractions_dispatched.inc()
        return job

    # ---------- migration ----------
    async def migrate(self, job: UploadJob, account: Account, session_id: Optional[str]) -> UploadJob:
        """Attach an anonymous job to ``account`` and move its bytes to the permanent bucket."""
        if job.owner_id is not None:
            if job.owner_id == account.id:
                return job
            raise Forbidden("Job belongs to another account")
        if not session_id or session_id != job.session_id:
            raise Forbidden("Session does not match this job")

        old_kind = BucketKind(job.storage_bucket)
        old_key = job.storage_key
        new_key = build_storage_key(job.id, job.file_name, owner_id=account.id)

        data = await self._storage.get(old_kind, old_key)
        await self._storage.put(BucketKind.PERMANENT, new_key, data)

        try:
            job = await self._store.reassign_owner(job.id, account.id, new_key, BucketKind.PERMANENT)
        except JobAlreadyClaimed:
            # lost a race with another claim; it must be ours to continue
            job = await self._store.require(job.id)
            if job.owner_id != account.id:
                raise Forbidden("Job belongs to another account")
            return job

        metrics.migrations_total.inc()
        logger.info("Migrated job %s to account %s (%s -> %s)", job.id, account.id, old_key, new_key)

        if JobStatus(job.status) in (JobStatus.UPLOADED, JobStatus.PROCESSING):
            # extraction may still be reading the temp object; the worker removes it when done
            logger.info("Deferring temp cleanup for job %s until extraction finishes", job.id)
        else:
            await self._delete_quietly(old_kind, old_key)
        return job

    async def _delete_quietly(self, kind: BucketKind, key: str) -> None:
        try:
            await self._storage.delete(kind, key)
        except StorageError as e:
            metrics.storage_cleanup_failures.inc()
            logger.warning("Failed to delete %s object %s: %s", kind.value, key, e)

    # ---------- reads ----------
    async def get_status(
        self, job_id: str, session_id: Optional[str] = None, account: Optional[Account] = None
    ) -> UploadJob:
        job = await self._store.require(job_id)
        self.authorize(job, session_id, account)
        return job

    async def list_pending(self, session_id: Optional[str]) -> List[UploadJob]:
        if not session_id:
            raise ValidationError("Session ID required")
        return await self._store.list_by_session(session_id, PENDING_STATUSES)

    async def clear_rate_limit(self, source_ip: str) -> int:
        return await self._limiter.clear(source_ip)

    async def clear_all_rate_limits(self) -> int:
        return await self._limiter.clear_all()

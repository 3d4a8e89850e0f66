# preflight/jobs.py
import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from preflight.errors import InvalidTransition, JobAlreadyClaimed, JobNotFound, ValidationError
from preflight.lifecycle import BucketKind, JobStatus, predecessors
from preflight.models import UploadJob, utcnow

logger = logging.getLogger(__name__)


class JobStore:
    """Persistence for upload jobs. Every status write is a compare-and-set on the current status."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        *,
        file_name: str,
        storage_bucket: BucketKind,
        storage_key: str,
        owner_id: Optional[str] = None,
        session_id: Optional[str] = None,
        source_ip: str = "unknown",
        file_size: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> UploadJob:
        if (owner_id is None) == (session_id is None):
            raise ValidationError("A job needs exactly one of owner id or session id")
        storage_bucket = BucketKind(storage_bucket)
        expected = BucketKind.TEMPORARY if owner_id is None else BucketKind.PERMANENT
        if storage_bucket != expected:
            raise ValidationError(
                f"{'Anonymous' if owner_id is None else 'Owned'} jobs must be stored in the {expected.value} bucket"
            )

        job = UploadJob(
            id=job_id or str(uuid.uuid4()),
            owner_id=owner_id,
            session_id=session_id,
            source_ip=source_ip,
            file_name=file_name,
            file_size=file_size,
            storage_bucket=storage_bucket.value,
            storage_key=storage_key,
            status=JobStatus.UPLOADING.value,
        )
        self._session.add(job)
        await self._session.commit()
        logger.info("Created job %s (owner=%s, bucket=%s)", job.id, owner_id or "anonymous", storage_bucket.value)
        return job

    async def get(self, job_id: str) -> Optional[UploadJob]:
        return await self._session.get(UploadJob, job_id, populate_existing=True)

    async def require(self, job_id: str) -> UploadJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        extracted_text: Optional[str] = None,
        page_count: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> UploadJob:
        status = JobStatus(status)
        values = {"status": status.value, "updated_at": utcnow()}
        if status is JobStatus.COMPLETED:
            if extracted_text is None:
                raise ValueError("completed jobs need extracted_text")
            values.update(extracted_text=extracted_text, page_count=page_count, error_message=None)
        elif status is JobStatus.FAILED:
            if not error_message:
                raise ValueError("failed jobs need an error_message")
            values.update(error_message=error_message, extracted_text=None, page_count=None)
        elif extracted_text is not None or error_message is not None:
            raise ValueError(f"'{status.value}' does not carry a result payload")

        allowed_from = [s.value for s in predecessors(status)]
        result = await self._session.execute(
            update(UploadJob)
            .where(UploadJob.id == job_id, UploadJob.status.in_(allowed_from))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

        if result.rowcount == 0:
            job = await self.require(job_id)
            raise InvalidTransition(job_id, job.status, status.value)

        logger.info("Job %s -> %s", job_id, status.value)
        return await self.require(job_id)

    async def list_by_session(self, session_id: str, statuses: Iterable[JobStatus]) -> List[UploadJob]:
        """Anonymous jobs for a session whose status is in ``statuses``, newest first."""
        wanted = [JobStatus(s).value for s in statuses]
        rows = await self._session.scalars(
            select(UploadJob)
            .where(
                UploadJob.session_id == session_id,
                UploadJob.owner_id.is_(None),
                UploadJob.status.in_(wanted),
            )
            .order_by(UploadJob.created_at.desc())
        )
        return list(rows)

    async def reassign_owner(
        self,
        job_id: str,
        owner_id: str,
        new_key: str,
        new_bucket: BucketKind = BucketKind.PERMANENT,
    ) -> UploadJob:
        """Attach an anonymous job to an account. Only succeeds while the job is unclaimed."""
        result = await self._session.execute(
            update(UploadJob)
            .where(UploadJob.id == job_id, UploadJob.owner_id.is_(None))
            .values(
                owner_id=owner_id,
                session_id=None,
                storage_key=new_key,
                storage_bucket=BucketKind(new_bucket).value,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

        if result.rowcount == 0:
            await self.require(job_id)
            raise JobAlreadyClaimed(job_id)

        logger.info("Job %s reassigned to owner %s", job_id, owner_id)
        return await self.require(job_id)

# preflight/worker.py
import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from preflight import metrics
from preflight.errors import ExtractionError, InvalidTransition, JobNotFound, StorageError
from preflight.extraction import PdfTextExtractor
from preflight.jobs import JobStore
from preflight.lifecycle import BucketKind, JobStatus
from preflight.storage import StorageAdapter

logger = logging.getLogger(__name__)


class ExtractionWorker:
    """Fetch one job's file, extract its text and record the terminal status.

    The storage location is fixed when the job is dispatched; an ownership
    migration that runs meanwhile does not redirect the read.
    """

    def __init__(self, session_factory: async_sessionmaker, storage: StorageAdapter, extractor: PdfTextExtractor = None):
        self._session_factory = session_factory
        self._storage = storage
        self._extractor = extractor or PdfTextExtractor()

    async def run(self, job_id: str, bucket: BucketKind, storage_key: str) -> Optional[JobStatus]:
        bucket = BucketKind(bucket)
        logger.info("Extraction started for job %s (%s:%s)", job_id, bucket.value, storage_key)
        try:
            data = await self._storage.get(bucket, storage_key)
            document = await asyncio.to_thread(self._extractor.extract, data)
        except (ExtractionError, StorageError) as e:
            logger.warning("Extraction failed for job %s: %s", job_id, e)
            return await self._finish(job_id, bucket, storage_key, error=str(e))
        except Exception as e:
            logger.exception("Unexpected extraction error for job %s", job_id)
            return await self._finish(job_id, bucket, storage_key, error=str(e) or "Processing failed")

        return await self._finish(
            job_id, bucket, storage_key, text=document.text, page_count=document.page_count
        )

    async def _finish(self, job_id, bucket, storage_key, text=None, page_count=None, error=None) -> Optional[JobStatus]:
        async with self._session_factory() as session:
            store = JobStore(session)
            try:
                if error is None:
                    job = await store.update_status(
                        job_id, JobStatus.COMPLETED, extracted_text=text, page_count=page_count
                    )
                    metrics.extractions_completed.inc()
                else:
                    job = await store.update_status(job_id, JobStatus.FAILED, error_message=error)
                    metrics.extractions_failed.inc()
            except (InvalidTransition, JobNotFound) as e:
                logger.error("Could not record extraction result for job %s: %s", job_id, e)
                return None

            await self._cleanup_if_migrated(job, bucket, storage_key)
            return JobStatus(job.status)

    async def _cleanup_if_migrated(self, job, bucket: BucketKind, storage_key: str) -> None:
        # migration defers the temp delete while extraction is in flight; finish it here
        if bucket is not BucketKind.TEMPORARY:
            return
        if job.storage_bucket == bucket.value and job.storage_key == storage_key:
            return
        try:
            await self._storage.delete(bucket, storage_key)
            logger.info("Removed temp object %s for migrated job %s", storage_key, job.id)
        except StorageError as e:
            metrics.storage_cleanup_failures.inc()
            logger.warning("Failed to remove temp object %s for job %s: %s", storage_key, job.id, e)

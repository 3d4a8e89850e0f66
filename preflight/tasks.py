# preflight/tasks.py
import asyncio
import logging

from sqlalchemy.pool import NullPool

from preflight.celery_app import celery_app
from preflight.db import make_engine, make_session_factory
from preflight.storage import MinioStorage
from preflight.worker import ExtractionWorker

logger = logging.getLogger(__name__)


async def run_extraction(job_id: str, bucket: str, storage_key: str):
    # each task runs on a fresh event loop, so it gets its own engine
    engine = make_engine(poolclass=NullPool)
    try:
        worker = ExtractionWorker(make_session_factory(engine), MinioStorage.from_settings())
        return await worker.run(job_id, bucket, storage_key)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="preflight.tasks.extract_upload_task")
def extract_upload_task(self, job_id: str, bucket: str, storage_key: str):
    # the worker records failures on the job itself; nothing is retried
    status = asyncio.run(run_extraction(job_id, bucket, storage_key))
    logger.info("extract_upload_task finished for %s with status %s", job_id, status)
    return {"job_id": job_id, "status": status.value if status else None}

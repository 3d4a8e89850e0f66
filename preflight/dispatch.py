# preflight/dispatch.py
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Set

from preflight.config import settings
from preflight.lifecycle import BucketKind
from preflight.tasks import extract_upload_task
from preflight.worker import ExtractionWorker

logger = logging.getLogger(__name__)


class Dispatcher(ABC):
    """Fire-and-forget scheduling of one extraction. The caller never waits on the result."""

    @abstractmethod
    def dispatch(self, job_id: str, bucket: BucketKind, storage_key: str) -> None:
        ...


class LocalDispatcher(Dispatcher):
    """Runs the worker as a detached asyncio task in the serving process."""

    def __init__(self, worker: ExtractionWorker):
        self._worker = worker
        # the loop only keeps weak references to tasks
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, job_id: str, bucket: BucketKind, storage_key: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._worker.run(job_id, BucketKind(bucket), storage_key),
            name=f"extract-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info("Dispatched extraction for job %s in-process", job_id)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Extraction task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            # the worker could not record a terminal status; the job is left in processing
            logger.error("Extraction task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every dispatched extraction to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CeleryDispatcher(Dispatcher):
    def __init__(self, queue: str = None):
        self._queue = queue or settings.celery_queue

    def dispatch(self, job_id: str, bucket: BucketKind, storage_key: str) -> None:
        extract_upload_task.apply_async(
            args=[job_id, BucketKind(bucket).value, storage_key], queue=self._queue
        )
        logger.info("Queued extraction for job %s on %s", job_id, self._queue)

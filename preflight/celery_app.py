from celery import Celery
from preflight.config import settings

celery_app = Celery(
    "preflight_uploads",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["preflight.tasks"],   # ensure tasks module is imported on worker start
)

celery_app.conf.task_routes = {
    "preflight.tasks.extract_upload_task": {"queue": settings.celery_queue}
}

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_soft_time_limit=60 * 10,
)

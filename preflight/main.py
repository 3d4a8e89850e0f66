# preflight/main.py
import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from preflight.auth import Account, close_httpx_client, get_current_account
from preflight.config import settings
from preflight.db import AsyncSessionLocal, close_engine, get_async_session, init_models
from preflight.dispatch import CeleryDispatcher, Dispatcher, LocalDispatcher
from preflight.errors import RateLimitExceeded, Unauthorized, UploadError
from preflight.jobs import JobStore
from preflight.orchestrator import UploadOrchestrator
from preflight.rate_limit import RateLimiter
from preflight.schemas import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    JobStatusResponse,
    MessageResponse,
    PendingJob,
    PendingJobsResponse,
)
from preflight.storage import MinioStorage, StorageAdapter
from preflight.worker import ExtractionWorker

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Preflight Uploads", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared clients, created lazily
_storage: Optional[StorageAdapter] = None
_dispatcher: Optional[Dispatcher] = None
_redis = None


def get_storage() -> StorageAdapter:
    global _storage
    if _storage is None:
        _storage = MinioStorage.from_settings()
    return _storage


def get_dispatcher(storage: StorageAdapter = Depends(get_storage)) -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        if settings.task_backend == "celery":
            _dispatcher = CeleryDispatcher(settings.celery_queue)
        else:
            _dispatcher = LocalDispatcher(ExtractionWorker(AsyncSessionLocal, storage))
    return _dispatcher


def get_redis():
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def get_orchestrator(
    session: AsyncSession = Depends(get_async_session),
    storage: StorageAdapter = Depends(get_storage),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> UploadOrchestrator:
    limiter = RateLimiter(
        session,
        limit=settings.anon_upload_limit,
        window_seconds=settings.rate_limit_window_seconds,
    )
    return UploadOrchestrator(JobStore(session), limiter, storage, dispatcher, settings)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@app.on_event("startup")
async def startup():
    if not settings.is_production:
        # production schema comes from alembic
        await init_models()
    await get_storage().ensure_buckets()


@app.on_event("shutdown")
async def shutdown():
    global _redis
    if isinstance(_dispatcher, LocalDispatcher) and _dispatcher.pending:
        logger.info("Waiting for %d in-flight extraction(s)", _dispatcher.pending)
        await _dispatcher.drain()
    try:
        await close_httpx_client()
    except Exception:
        logger.exception("Failed to close httpx client on shutdown")
    if _redis is not None:
        try:
            await _redis.aclose()
        except Exception:
            logger.exception("Failed to close redis on shutdown")
        _redis = None
    await close_engine()


@app.exception_handler(UploadError)
def upload_error_handler(request: Request, exc: UploadError):
    body = {"detail": exc.message}
    headers = None
    if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
        body["retryAfter"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(body, status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request body"
    return JSONResponse({"detail": detail}, status_code=400)


@app.get("/healthz")
async def healthz():
    ok = {"database": False}
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        ok["database"] = True
    except Exception:
        logger.exception("Database health check failed")
    if settings.task_backend == "celery":
        ok["redis"] = False
        try:
            await asyncio.wait_for(get_redis().ping(), timeout=2.0)
            ok["redis"] = True
        except Exception:
            logger.exception("Redis ping failed")
    status = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status)


@app.get("/metrics")
def metrics():
    if not settings.prometheus_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/upload/init", response_model=InitUploadResponse)
async def init_upload(
    body: InitUploadRequest,
    request: Request,
    account: Optional[Account] = Depends(get_current_account),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.init_upload(
        body.file_name,
        body.file_size,
        source_ip=client_ip(request),
        session_id=body.session_id,
        account=account,
    )
    return InitUploadResponse(
        job_id=result.job.id,
        storage_path=result.job.storage_key,
        bucket=result.bucket,
        upload_url=result.upload_url,
        session_id=result.job.session_id,
        requires_auth=result.requires_auth,
        message=result.message,
    )


@app.post("/upload/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    body: CompleteUploadRequest,
    account: Optional[Account] = Depends(get_current_account),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.complete_upload(body.job_id, session_id=body.session_id, account=account)
    return CompleteUploadResponse(job_id=result.job.id, status=result.job.status, message=result.message)


@app.get("/upload/status/{job_id}", response_model=JobStatusResponse)
async def upload_status(
    job_id: str,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    account: Optional[Account] = Depends(get_current_account),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    job = await orchestrator.get_status(job_id, session_id=session_id, account=account)
    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        extracted_text=job.extracted_text,
        page_count=job.page_count,
        error=job.error_message,
    )


@app.get("/upload/pending", response_model=PendingJobsResponse)
async def pending_uploads(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    account: Optional[Account] = Depends(get_current_account),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    if account is None:
        raise Unauthorized()
    jobs = await orchestrator.list_pending(session_id)
    return PendingJobsResponse(
        jobs=[
            PendingJob(job_id=j.id, file_name=j.file_name, status=j.status, created_at=j.created_at)
            for j in jobs
        ]
    )


# ---------- development helpers ----------
def _dev_only():
    if settings.is_production:
        return JSONResponse({"detail": "Not available in production"}, status_code=403)
    return None


@app.delete("/upload/clear-rate-limit", response_model=MessageResponse)
async def clear_rate_limit(
    ip_address: Optional[str] = Query(None, alias="ipAddress"),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    denied = _dev_only()
    if denied is not None:
        return denied
    if not ip_address:
        return JSONResponse({"detail": "IP address required"}, status_code=400)
    await orchestrator.clear_rate_limit(ip_address)
    return MessageResponse(message=f"Rate limit cleared for IP: {ip_address}")


@app.get("/upload/clear-rate-limit", response_model=MessageResponse)
async def clear_all_rate_limits(
    clear_all: bool = Query(False, alias="all"),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    denied = _dev_only()
    if denied is not None:
        return denied
    if clear_all:
        count = await orchestrator.clear_all_rate_limits()
        return MessageResponse(message=f"Cleared all rate limits ({count} records)")
    return MessageResponse(
        message="Use ?all=true to clear all rate limits, or DELETE with ?ipAddress=xxx to clear specific IP"
    )

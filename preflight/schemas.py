# preflight/schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadRequest(CamelModel):
    # optional here so a missing name is reported by the orchestrator as a 400
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    session_id: Optional[str] = None


class InitUploadResponse(CamelModel):
    job_id: str
    storage_path: str
    bucket: str
    upload_url: str
    session_id: Optional[str] = None
    requires_auth: bool
    message: str


class CompleteUploadRequest(CamelModel):
    job_id: Optional[str] = None
    session_id: Optional[str] = None


class CompleteUploadResponse(CamelModel):
    job_id: str
    status: str
    message: str


class JobStatusResponse(CamelModel):
    job_id: str
    status: str
    extracted_text: Optional[str] = None
    page_count: Optional[int] = None
    error: Optional[str] = None


class PendingJob(CamelModel):
    job_id: str
    file_name: str
    status: str
    created_at: datetime


class PendingJobsResponse(CamelModel):
    jobs: List[PendingJob]


class MessageResponse(BaseModel):
    message: str

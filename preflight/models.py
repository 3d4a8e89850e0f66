# preflight/models.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, Column, Integer, String, Text, TIMESTAMP
from sqlalchemy.orm import declarative_base

from preflight.lifecycle import JobStatus

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Some drivers (sqlite) hand back naive datetimes; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UploadJob(Base):
    __tablename__ = "upload_jobs"
    __table_args__ = (
        CheckConstraint(
            "(owner_id IS NULL) <> (session_id IS NULL)",
            name="ck_upload_jobs_owner_xor_session",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=True, index=True)       # account id, null while anonymous
    session_id = Column(String, nullable=True, index=True)     # client-held id for anonymous jobs
    source_ip = Column(String, nullable=False, default="unknown")
    file_name = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=True)              # bytes, as declared by the client
    storage_bucket = Column(String, nullable=False)            # BucketKind value
    storage_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default=JobStatus.UPLOADING.value, index=True)
    extracted_text = Column(Text, nullable=True)
    page_count = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_anonymous(self) -> bool:
        return self.owner_id is None

    def __repr__(self) -> str:
        return f"<UploadJob id={self.id} status={self.status} bucket={self.storage_bucket}>"


class RateLimitRecord(Base):
    __tablename__ = "upload_rate_limits"

    source_ip = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    window_reset_at = Column(TIMESTAMP(timezone=True), nullable=False)

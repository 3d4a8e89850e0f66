# preflight/errors.py
from typing import Optional


class UploadError(Exception):
    """Base exception for the upload pipeline. ``status_code`` is what the HTTP layer returns."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UploadError):
    """Bad extension, oversized file, missing required field"""

    status_code = 400


class Unauthorized(UploadError):
    """Missing or invalid credentials"""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(Unauthorized):
    """Credentials present but they do not own the job (session or account mismatch)"""

    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class JobNotFound(UploadError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class InvalidTransition(UploadError):
    status_code = 409

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job '{job_id}' cannot move from '{current}' to '{target}'")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobAlreadyClaimed(UploadError):
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' has already been claimed")
        self.job_id = job_id


class RateLimitExceeded(UploadError):
    status_code = 429

    def __init__(self, retry_after: Optional[int], message: Optional[str] = None):
        super().__init__(
            message
            or "Upload rate limit exceeded. Please sign in to continue uploading, or try again later."
        )
        self.retry_after = retry_after


class StorageError(UploadError):
    """Object store put/get/delete failure"""

    status_code = 500


class DispatchError(UploadError):
    """The extraction task could not be scheduled"""

    status_code = 503


class ExtractionError(UploadError):
    """Raised by the extraction worker; recorded on the job, never returned to an HTTP caller."""

    status_code = 422

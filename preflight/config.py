# preflight/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

class Settings(BaseSettings):
    app_env: str = Field("development", env="APP_ENV")

    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/preflight", env="DATABASE_URL")

    # Celery / Redis
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    celery_queue: str = Field("extraction_queue", env="CELERY_QUEUE")
    # "local" runs extraction as an asyncio task in the API process, "celery" ships it to a worker
    task_backend: str = Field("local", env="TASK_BACKEND")

    # MinIO / S3 compatible object store
    minio_endpoint: str = Field("localhost:9000", env="MINIO_ENDPOINT")
    minio_access_key: Optional[str] = Field(None, env="MINIO_ACCESS_KEY")
    minio_secret_key: Optional[str] = Field(None, env="MINIO_SECRET_KEY")
    minio_secure: bool = Field(False, env="MINIO_SECURE")
    temp_bucket: str = Field("temp", env="TEMP_BUCKET")
    storage_bucket: str = Field("papers", env="STORAGE_BUCKET")
    upload_url_expiry_seconds: int = Field(60 * 60, env="UPLOAD_URL_EXPIRY_SECONDS")

    # Uploads
    max_upload_size: int = Field(50 * 1024 * 1024, env="MAX_UPLOAD_SIZE")
    allowed_extensions: List[str] = Field([".pdf"], env="ALLOWED_EXTENSIONS")

    # Anonymous rate limiting
    anon_upload_limit: int = Field(3, env="ANON_UPLOAD_LIMIT")
    rate_limit_window_seconds: int = Field(60 * 60, env="RATE_LIMIT_WINDOW_SECONDS")

    # Auth server (Supabase-compatible /auth/v1/user endpoint)
    auth_url: Optional[str] = Field(None, env="AUTH_URL")
    auth_api_key: Optional[str] = Field(None, env="AUTH_API_KEY")
    auth_timeout: float = Field(10.0, env="AUTH_TIMEOUT")

    # CORS
    cors_origins: List[str] = Field(["*"], env="CORS_ORIGINS")

    host: str = Field("0.0.0.0", env="HOST")
    port: int = Field(8000, env="PORT")

    # Prometheus
    prometheus_enabled: bool = Field(True, env="PROMETHEUS_ENABLED")

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    # ---- field validators (pydantic v2 style) ----
    @field_validator("allowed_extensions", mode="before")
    def _split_allowed_extensions(cls, v):
        """
        Allows ALLOWED_EXTENSIONS as comma-separated string in env, or as a list.
        Example: '.pdf'
        """
        if isinstance(v, str):
            v = [s.strip() for s in v.split(",") if s.strip()]
        return [ext.lower() for ext in v]

    @field_validator("cors_origins", mode="before")
    def _split_cors_origins(cls, v):
        """
        Allows CORS_ORIGINS as comma-separated string in env, or as a list.
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("task_backend", mode="before")
    def _validate_task_backend(cls, v):
        v = str(v or "local").strip().lower()
        if v not in ("local", "celery"):
            raise ValueError("TASK_BACKEND must be 'local' or 'celery'")
        return v

    @field_validator("anon_upload_limit", "rate_limit_window_seconds", "max_upload_size", mode="before")
    def _validate_positive(cls, v):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError("must be a positive integer")
        return v

settings = Settings()

# preflight/metrics.py
from prometheus_client import Counter

# Prometheus counters
uploads_initialized = Counter("preflight_uploads_initialized_total", "Upload jobs created", ["bucket"])
uploads_rate_limited = Counter("preflight_uploads_rate_limited_total", "Anonymous inits rejected by the rate limiter")
rate_limit_errors = Counter("preflight_rate_limit_errors_total", "Rate limiter store errors (failed open)")
extractions_dispatched = Counter("preflight_extractions_dispatched_total", "Extraction tasks dispatched")
extractions_completed = Counter("preflight_extractions_completed_total", "Extractions completed")
extractions_failed = Counter("preflight_extractions_failed_total", "Extractions failed")
migrations_total = Counter("preflight_migrations_total", "Anonymous jobs migrated to an account")
storage_cleanup_failures = Counter("preflight_storage_cleanup_failures_total", "Best-effort temp deletes that failed")

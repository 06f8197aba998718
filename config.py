import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_max_age_secs: int,
        rate_limit_capacity: int,
        rate_limit_refill: int,
        rate_limit_interval_secs: float,
        recurring_throttle_per_minute: int,
        job_max_attempts: int,
        job_backoff_secs: float,
        job_retention_days: int,
        budget_alert_threshold: float,
        gemini_api_key: Optional[str],
        gemini_model: str,
        ai_timeout_secs: float,
        resend_api_key: Optional[str],
        email_from: str,
        email_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_max_age_secs = auth_max_age_secs
        self.rate_limit_capacity = rate_limit_capacity
        self.rate_limit_refill = rate_limit_refill
        self.rate_limit_interval_secs = rate_limit_interval_secs
        self.recurring_throttle_per_minute = recurring_throttle_per_minute
        self.job_max_attempts = job_max_attempts
        self.job_backoff_secs = job_backoff_secs
        self.job_retention_days = job_retention_days
        self.budget_alert_threshold = budget_alert_threshold
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.ai_timeout_secs = ai_timeout_secs
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.email_timeout_secs = email_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINXPERT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finxpert.db"
    return Settings(
        database_url=os.getenv("FINXPERT_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("FINXPERT_TIMEZONE", "UTC"),
        auth_secret=os.getenv(
            "FINXPERT_AUTH_SECRET",
            "3f1c9a0d5be24e7fa2c86d41b0e9f7a65c2d8e13f49b07a6d5c1e8f2a9b3c704",
        ),
        auth_max_age_secs=int(os.getenv("FINXPERT_AUTH_MAX_AGE_SECS", "86400")),
        rate_limit_capacity=int(os.getenv("FINXPERT_RATE_LIMIT_CAPACITY", "10")),
        rate_limit_refill=int(os.getenv("FINXPERT_RATE_LIMIT_REFILL", "2")),
        rate_limit_interval_secs=float(
            os.getenv("FINXPERT_RATE_LIMIT_INTERVAL_SECS", "3600")
        ),
        recurring_throttle_per_minute=int(
            os.getenv("FINXPERT_RECURRING_THROTTLE_PER_MINUTE", "10")
        ),
        job_max_attempts=int(os.getenv("FINXPERT_JOB_MAX_ATTEMPTS", "3")),
        job_backoff_secs=float(os.getenv("FINXPERT_JOB_BACKOFF_SECS", "2")),
        job_retention_days=int(os.getenv("FINXPERT_JOB_RETENTION_DAYS", "7")),
        budget_alert_threshold=float(
            os.getenv("FINXPERT_BUDGET_ALERT_THRESHOLD", "80")
        ),
        gemini_api_key=os.getenv("FINXPERT_GEMINI_API_KEY"),
        gemini_model=os.getenv("FINXPERT_GEMINI_MODEL", "gemini-1.5-flash"),
        ai_timeout_secs=float(os.getenv("FINXPERT_AI_TIMEOUT_SECS", "30")),
        resend_api_key=os.getenv("FINXPERT_RESEND_API_KEY"),
        email_from=os.getenv(
            "FINXPERT_EMAIL_FROM", "FinXpert <onboarding@resend.dev>"
        ),
        email_timeout_secs=float(os.getenv("FINXPERT_EMAIL_TIMEOUT_SECS", "10")),
    )

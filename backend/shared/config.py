"""
Environment-driven configuration for the notification pipeline.

Every knob has a default matching production behaviour; values are read from
the process environment (optionally populated from a .env file).
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class PipelineConfig(BaseModel):
    """Tunables for rule processing, queue delivery and health alerting."""

    alert_threshold_percent: float = Field(20.0, ge=0, le=100)
    alert_email: str = ""
    alert_dedup_hours: int = Field(0, ge=0)
    from_email: str = "Rent Car System <notifications@alaraf.online>"
    max_retries: int = Field(5, ge=1)
    batch_size: int = Field(50, ge=1)
    backoff_base_ms: int = Field(200, ge=0)
    backoff_cap_ms: int = Field(30000, ge=0)
    dedup_window_hours: int = Field(24, ge=0)
    claim_lease_seconds: int = Field(300, ge=1)
    query_timeout_seconds: float = Field(10.0, gt=0)
    send_timeout_seconds: float = Field(30.0, gt=0)
    insurance_window_days: int = Field(30, ge=0)
    pending_queue_warning: int = Field(100, ge=0)
    recent_failures_warning: int = Field(10, ge=0)
    rate_limit_warning_percent: float = Field(10.0, ge=0, le=100)
    frontend_base_url: str = "https://app.alaraf.online"

    @property
    def alert_threshold(self) -> float:
        """Failure-rate threshold as a fraction (0.2 for 20%)."""
        return self.alert_threshold_percent / 100

    @property
    def rate_limit_threshold(self) -> float:
        return self.rate_limit_warning_percent / 100


# Environment variable name for each config field
ENV_VARS: dict[str, str] = {
    "alert_threshold_percent": "ALERT_THRESHOLD_PERCENT",
    "alert_email": "ALERT_EMAIL",
    "alert_dedup_hours": "ALERT_DEDUP_HOURS",
    "from_email": "FROM_EMAIL",
    "max_retries": "NOTIFICATION_MAX_RETRIES",
    "batch_size": "NOTIFICATION_BATCH_SIZE",
    "backoff_base_ms": "NOTIFICATION_BACKOFF_BASE_MS",
    "backoff_cap_ms": "NOTIFICATION_BACKOFF_CAP_MS",
    "dedup_window_hours": "NOTIFICATION_DEDUP_WINDOW_HOURS",
    "claim_lease_seconds": "NOTIFICATION_CLAIM_LEASE_SECONDS",
    "query_timeout_seconds": "SUPABASE_QUERY_TIMEOUT_SECONDS",
    "send_timeout_seconds": "EMAIL_SEND_TIMEOUT_SECONDS",
    "insurance_window_days": "INSURANCE_RENEWAL_WINDOW_DAYS",
    "frontend_base_url": "FRONTEND_BASE_URL",
}


def load_config() -> PipelineConfig:
    """
    Build a PipelineConfig from environment variables.

    Unset (or empty) variables fall back to the model defaults.

    Raises:
        pydantic.ValidationError: If a variable holds an invalid value
    """
    values = {}
    for field_name, env_name in ENV_VARS.items():
        raw = os.getenv(env_name)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    return PipelineConfig(**values)

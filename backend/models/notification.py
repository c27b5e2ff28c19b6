"""Pydantic models for the notification pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from models.types import (
    AlertID,
    DateBucket,
    FieldMap,
    ProfileID,
    QueueItemID,
    RuleID,
    TemplateID,
)


class TriggerType(str, Enum):
    """Business event that makes a customer eligible for an email."""

    WELCOME = "welcome"
    CONTRACT_CONFIRMATION = "contract_confirmation"
    PAYMENT_REMINDER = "payment_reminder"
    LATE_PAYMENT = "late_payment"
    INSURANCE_RENEWAL = "insurance_renewal"
    LEGAL_NOTICE = "legal_notice"


class TimingType(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    ON = "on"


class QueueStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class LogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class MetricType(str, Enum):
    """Counters maintained by the increment_email_metric database function."""

    SUCCESSFUL_SENT = "successful_sent"
    FAILED_SENT = "failed_sent"
    RATE_LIMITED_COUNT = "rate_limited_count"


class EmailTemplate(BaseModel):
    """Operator-authored email template with {{category.field}} placeholders."""

    id: TemplateID
    name: str | None = None
    subject: str = ""
    content: str = ""
    variable_mappings: dict[str, Any] = Field(default_factory=dict)


class NotificationRule(BaseModel):
    """Automation rule tying a trigger to a template."""

    model_config = ConfigDict(populate_by_name=True)

    id: RuleID
    name: str = "Unnamed Rule"
    template_id: TemplateID
    trigger_type: TriggerType
    timing_type: TimingType = TimingType.ON
    timing_value: int = Field(0, ge=0)
    is_active: bool = True
    template: EmailTemplate | None = Field(None, alias="email_templates")


class Recipient(BaseModel):
    """
    Customer projection used for matching and rendering.

    The related records are whatever the recipient selector joined while
    matching; they are read-only context for the rule processor.
    """

    id: ProfileID
    email: str | None = None
    phone_number: str | None = None
    full_name: str | None = None
    address: str | None = None
    role: str | None = None
    created_at: datetime | None = None
    welcome_email_sent: bool = False
    lease: FieldMap | None = None
    vehicle: FieldMap | None = None
    payment_schedules: list[FieldMap] = Field(default_factory=list)
    insurance: FieldMap | None = None
    legal_case: FieldMap | None = None

    def customer_fields(self) -> FieldMap:
        """Fields exposed to templates under the 'customer' category."""
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "address": self.address,
        }


class QueueItem(BaseModel):
    """Notification scheduled for deferred delivery."""

    id: QueueItemID
    template_id: TemplateID
    recipient_email: str
    scheduled_for: datetime
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = Field(0, ge=0)
    last_retry_at: datetime | None = None
    error_message: str | None = None
    processed_at: datetime | None = None
    processed_content: str | None = None
    rule_id: RuleID | None = None
    recipient_id: ProfileID | None = None
    metadata: dict[str, Any] | None = None


class NotificationLog(BaseModel):
    """Append-only record of one send attempt."""

    rule_id: RuleID | None = None
    template_id: TemplateID | None = None
    recipient_id: ProfileID | None = None
    recipient_email: str
    status: LogStatus
    message_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        """Row for insertion; created_at is left to the database default."""
        return self.model_dump(mode="json", exclude={"created_at"})


class MetricsSnapshot(BaseModel):
    """One date bucket of the sending counters."""

    date_bucket: DateBucket | None = None
    total_sent: int = 0
    successful_sent: int = 0
    failed_sent: int = 0
    rate_limited_count: int = 0


class HealthMetrics(BaseModel):
    total_sent: int = 0
    successful_sent: int = 0
    failed_sent: int = 0
    rate_limited_count: int = 0
    failure_rate: float = 0.0
    rate_limit_rate: float = 0.0
    pending_queue: int = 0
    recent_failures: int = 0


class HealthReport(BaseModel):
    status: HealthStatus
    message: str
    metrics: HealthMetrics
    timestamp: datetime
    alert_sent: bool = False
    alert_recorded: bool = False


class SystemAlert(BaseModel):
    """Operator-facing alert raised by the health monitor."""

    id: AlertID | None = None
    status: HealthStatus
    message: str
    metrics: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    created_at: datetime | None = None


class RuleRunStats(BaseModel):
    """Outcome of one process_rules invocation."""

    processed: int = 0
    rules_failed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class DrainStats(BaseModel):
    """Outcome of one drain_queue invocation."""

    fetched: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

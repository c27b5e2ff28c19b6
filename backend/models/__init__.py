"""Pydantic models for data validation and type checking."""

from models.notification import (
    DrainStats,
    EmailTemplate,
    HealthMetrics,
    HealthReport,
    HealthStatus,
    LogStatus,
    MetricsSnapshot,
    MetricType,
    NotificationLog,
    NotificationRule,
    QueueItem,
    QueueStatus,
    Recipient,
    RuleRunStats,
    SystemAlert,
    TimingType,
    TriggerType,
)

__all__ = [
    "TriggerType",
    "TimingType",
    "QueueStatus",
    "LogStatus",
    "HealthStatus",
    "MetricType",
    "EmailTemplate",
    "NotificationRule",
    "Recipient",
    "QueueItem",
    "NotificationLog",
    "MetricsSnapshot",
    "HealthMetrics",
    "HealthReport",
    "SystemAlert",
    "RuleRunStats",
    "DrainStats",
]

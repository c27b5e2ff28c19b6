"""
Email system health monitoring.

Derives a status from the latest sending counters, the pending queue backlog
and the failures logged in the last 24 hours, and alerts the operator when
the system is not healthy.
"""

from datetime import datetime, timedelta
from typing import Any, Dict

from models.notification import (
    HealthMetrics,
    HealthReport,
    HealthStatus,
    LogStatus,
    QueueStatus,
    SystemAlert,
)
from notifications.dedup import alert_recently_raised
from notifications.email_sender import build_alert_html, build_alert_subject, send_email
from notifications.error_logger import log_notification_error
from notifications.metrics import get_latest_snapshot
from notifications.queue_worker import QUEUE_TABLE
from shared.config import PipelineConfig, load_config
from shared.db import get_supabase_client
from shared.utils import to_iso, utc_now

RECENT_FAILURE_WINDOW_HOURS = 24


def _count(response: Any) -> int:
    return response.count or 0


def collect_metrics(supabase: Any, now: datetime) -> HealthMetrics:
    snapshot = get_latest_snapshot(supabase)

    pending = (
        supabase.table(QUEUE_TABLE)
        .select("id", count="exact")
        .eq("status", QueueStatus.PENDING.value)
        .limit(1)
        .execute()
    )

    since = now - timedelta(hours=RECENT_FAILURE_WINDOW_HOURS)
    failures = (
        supabase.table("email_notification_logs")
        .select("id", count="exact")
        .eq("status", LogStatus.FAILED.value)
        .gte("created_at", to_iso(since))
        .limit(1)
        .execute()
    )

    total = snapshot.total_sent
    return HealthMetrics(
        total_sent=total,
        successful_sent=snapshot.successful_sent,
        failed_sent=snapshot.failed_sent,
        rate_limited_count=snapshot.rate_limited_count,
        failure_rate=snapshot.failed_sent / total if total > 0 else 0.0,
        rate_limit_rate=snapshot.rate_limited_count / total if total > 0 else 0.0,
        pending_queue=_count(pending),
        recent_failures=_count(failures),
    )


def derive_status(metrics: HealthMetrics, config: PipelineConfig) -> tuple[HealthStatus, str]:
    """First matching condition wins."""
    if metrics.failure_rate > config.alert_threshold:
        return HealthStatus.CRITICAL, (
            f"High failure rate detected: {metrics.failure_rate * 100:.1f}%"
        )
    if metrics.rate_limit_rate > config.rate_limit_threshold:
        return HealthStatus.WARNING, "Rate limiting issues detected"
    if metrics.pending_queue > config.pending_queue_warning:
        return HealthStatus.WARNING, "Large email backlog detected"
    if metrics.recent_failures > config.recent_failures_warning:
        return HealthStatus.WARNING, "Multiple recent failures detected"
    return HealthStatus.HEALTHY, "System operating normally"


def _raise_alert(supabase: Any, report: HealthReport, config: PipelineConfig) -> None:
    """Mail the operator and record the alert; failures are logged, never raised."""
    try:
        if alert_recently_raised(
            supabase, report.status.value, config.alert_dedup_hours, report.timestamp
        ):
            print(f"  ⊘ {report.status.value} alert already raised recently, skipping")
            return
    except Exception as e:
        log_notification_error(
            error_type="alerting",
            error_message=f"Alert dedup lookup failed: {e}",
            context={"status": report.status.value},
        )

    if config.alert_email:
        result = send_email(
            config.alert_email,
            build_alert_subject(report),
            build_alert_html(report),
            from_email=config.from_email,
            timeout_seconds=config.send_timeout_seconds,
        )
        if result["success"]:
            report.alert_sent = True
            print("Alert email sent successfully")
        else:
            log_notification_error(
                error_type="alerting",
                error_message=result.get("error", "Unknown error"),
                context={"status": report.status.value, "alert_email": config.alert_email},
            )
            print(f"  ✗ Failed to send alert email: {result.get('error')}")
    else:
        print("No alert email configured, skipping alert")

    try:
        alert = SystemAlert(
            status=report.status,
            message=report.message,
            metrics=report.metrics.model_dump(),
        )
        supabase.table("email_system_alerts").insert(
            alert.model_dump(mode="json", exclude={"id", "created_at"})
        ).execute()
        report.alert_recorded = True
    except Exception as e:
        log_notification_error(
            error_type="alerting",
            error_message=f"Could not record system alert: {e}",
            context={"status": report.status.value},
        )


def check_health(
    now: datetime | None = None,
    config: PipelineConfig | None = None,
    supabase: Any = None,
) -> HealthReport:
    """
    Evaluate email system health and alert when it is not healthy.

    Args:
        now: Evaluation time (defaults to current UTC time)
        config: Pipeline configuration (defaults to environment)
        supabase: Supabase client (defaults to a new service client)

    Returns:
        HealthReport, whether or not alerting succeeded

    Raises:
        Exception: If the metrics themselves cannot be read
    """
    now = now or utc_now()
    config = config or load_config()
    supabase = supabase or get_supabase_client(config.query_timeout_seconds)

    metrics = collect_metrics(supabase, now)
    status, message = derive_status(metrics, config)
    report = HealthReport(status=status, message=message, metrics=metrics, timestamp=now)

    if status != HealthStatus.HEALTHY:
        _raise_alert(supabase, report, config)

    return report


def run_health_check(
    now: datetime | None = None,
    config: PipelineConfig | None = None,
    supabase: Any = None,
) -> Dict[str, Any]:
    """Top-level handler: never raises, reports failure in the response."""
    try:
        report = check_health(now, config, supabase)
        return {"success": True, "health_check": report.model_dump(mode="json")}
    except Exception as e:
        error_file = log_notification_error(error_type="health", error_message=str(e))
        print(f"  ⚠️  Error in email health check. Details logged to: {error_file}")
        return {"success": False, "error": str(e) or "Unknown error occurred"}

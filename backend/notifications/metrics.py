"""
Sending counters.

Counters live in the email_sending_metrics table, one row per day. They are
only ever changed through the increment_email_metric database function, which
performs a single-statement upsert-and-add so concurrent runs never lose an
increment.
"""

from typing import Any

from models.notification import MetricsSnapshot, MetricType
from notifications.error_logger import log_notification_error


def increment_metric(supabase: Any, metric_type: MetricType, count: int = 1) -> bool:
    """
    Atomically add count to today's counter for metric_type.

    A failure is logged and reported as False; counters never block delivery.
    """
    try:
        supabase.rpc(
            "increment_email_metric",
            {"p_metric_type": metric_type.value, "p_count": count},
        ).execute()
        return True
    except Exception as e:
        log_notification_error(
            error_type="metrics",
            error_message=str(e),
            context={"metric_type": metric_type.value, "count": count},
        )
        print(f"  ⚠️  Could not increment metric {metric_type.value}: {e}")
        return False


def get_latest_snapshot(supabase: Any) -> MetricsSnapshot:
    """Most recent date bucket, or an all-zero snapshot when none exist."""
    response = (
        supabase.table("email_sending_metrics")
        .select("*")
        .order("date_bucket", desc=True)
        .limit(1)
        .execute()
    )

    if not response.data:
        return MetricsSnapshot()

    return MetricsSnapshot.model_validate(response.data[0])

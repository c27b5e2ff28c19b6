"""
Delivery queue for notifications scheduled for later.

Queue item lifecycle:

    pending -> sent                  (delivered)
    pending -> pending               (failed, rescheduled with backoff)
    pending -> failed                (retry ceiling reached)

sent and failed are terminal. Each item is claimed with a conditional update
before delivery so overlapping workers never send the same item twice.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError

from models.notification import (
    DrainStats,
    LogStatus,
    MetricType,
    NotificationLog,
    QueueItem,
    QueueStatus,
)
from notifications.email_sender import send_email
from notifications.error_logger import log_notification_error
from notifications.metrics import increment_metric
from shared.config import PipelineConfig, load_config
from shared.db import get_supabase_client
from shared.utils import to_iso, utc_now

QUEUE_TABLE = "email_notification_queue"


def compute_backoff_ms(retry_count: int, base_ms: int = 200, cap_ms: int = 30000) -> int:
    """Delay before retry number retry_count: base * 2^n, capped."""
    return min(base_ms * (2 ** retry_count), cap_ms)


def schedule_notification(
    supabase: Any,
    template_id: str,
    recipient_email: str,
    scheduled_for: datetime,
    processed_content: Optional[str] = None,
    rule_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Queue a notification for delivery at scheduled_for.

    Returns:
        The new queue item id
    """
    row = {
        "template_id": template_id,
        "recipient_email": recipient_email,
        "scheduled_for": to_iso(scheduled_for),
        "status": QueueStatus.PENDING.value,
        "retry_count": 0,
        "processed_content": processed_content,
        "rule_id": rule_id,
        "recipient_id": recipient_id,
        "metadata": metadata or {},
    }
    response = supabase.table(QUEUE_TABLE).insert(row).execute()
    if not response.data:
        return None
    return response.data[0].get("id")


def fetch_due_items(supabase: Any, now: datetime, batch_size: int) -> list[Dict[str, Any]]:
    response = (
        supabase.table(QUEUE_TABLE)
        .select("*")
        .eq("status", QueueStatus.PENDING.value)
        .lte("scheduled_for", to_iso(now))
        .order("scheduled_for", desc=False)
        .limit(batch_size)
        .execute()
    )
    return response.data or []


def claim_item(
    supabase: Any, item_id: str, seen_scheduled_for: str, now: datetime, lease_seconds: int
) -> bool:
    """
    Take ownership of a due item.

    Pushes scheduled_for past the lease only if the row is still pending and
    unchanged since it was read. An empty result means another worker got it
    first. If this worker dies mid-delivery the item is due again once the
    lease expires.
    """
    lease_until = now + timedelta(seconds=lease_seconds)
    response = (
        supabase.table(QUEUE_TABLE)
        .update({"scheduled_for": to_iso(lease_until)})
        .eq("id", item_id)
        .eq("status", QueueStatus.PENDING.value)
        .eq("scheduled_for", seen_scheduled_for)
        .execute()
    )
    return bool(response.data)


def _resolve_html(supabase: Any, item: QueueItem) -> tuple[str, str]:
    """Subject and body for an item; raises LookupError for a missing template."""
    response = (
        supabase.table("email_templates")
        .select("id, subject, content")
        .eq("id", item.template_id)
        .limit(1)
        .execute()
    )
    if not response.data:
        raise LookupError("Template not found")

    template = response.data[0]
    subject = template.get("subject") or "No Subject"
    html = item.processed_content or template.get("content") or ""
    return subject, html


def _record_log(supabase: Any, item: QueueItem, log: NotificationLog) -> bool:
    """Append to the notification log; the queue row already holds the outcome."""
    try:
        supabase.table("email_notification_logs").insert(log.to_row()).execute()
        return True
    except Exception as e:
        log_notification_error(
            error_type="queue",
            error_message=f"Could not record notification log: {e}",
            context={"queue_item_id": item.id, "status": log.status.value},
        )
        print(f"  ⚠️  Could not record notification log for queued email {item.id}")
        return False


def _mark_sent(supabase: Any, item: QueueItem, message_id: Optional[str], now: datetime) -> None:
    supabase.table(QUEUE_TABLE).update(
        {"status": QueueStatus.SENT.value, "processed_at": to_iso(now), "error_message": None}
    ).eq("id", item.id).execute()

    log = NotificationLog(
        rule_id=item.rule_id,
        template_id=item.template_id,
        recipient_id=item.recipient_id,
        recipient_email=item.recipient_email,
        status=LogStatus.SENT,
        message_id=message_id,
        metadata=item.metadata or {},
    )
    _record_log(supabase, item, log)


def _mark_failed_attempt(
    supabase: Any,
    item: QueueItem,
    error_message: str,
    now: datetime,
    config: PipelineConfig,
) -> bool:
    """
    Record a failed delivery attempt.

    Returns:
        True if the item reached the retry ceiling and is now failed
    """
    retry_count = item.retry_count + 1

    if retry_count >= config.max_retries:
        supabase.table(QUEUE_TABLE).update(
            {
                "status": QueueStatus.FAILED.value,
                "error_message": error_message,
                "retry_count": retry_count,
                "last_retry_at": to_iso(now),
            }
        ).eq("id", item.id).execute()

        log = NotificationLog(
            rule_id=item.rule_id,
            template_id=item.template_id,
            recipient_id=item.recipient_id,
            recipient_email=item.recipient_email,
            status=LogStatus.FAILED,
            error_message=error_message,
            metadata=item.metadata or {},
        )
        _record_log(supabase, item, log)
        return True

    delay_ms = compute_backoff_ms(retry_count, config.backoff_base_ms, config.backoff_cap_ms)
    retry_at = now + timedelta(milliseconds=delay_ms)
    supabase.table(QUEUE_TABLE).update(
        {
            "retry_count": retry_count,
            "scheduled_for": to_iso(retry_at),
            "last_retry_at": to_iso(now),
            "error_message": error_message,
        }
    ).eq("id", item.id).execute()
    return False


def deliver_item(
    supabase: Any,
    item: QueueItem,
    now: datetime,
    config: PipelineConfig,
    stats: DrainStats,
) -> None:
    """Attempt one claimed item and persist the outcome."""
    try:
        subject, html = _resolve_html(supabase, item)
        result = send_email(
            item.recipient_email,
            subject,
            html,
            from_email=config.from_email,
            timeout_seconds=config.send_timeout_seconds,
        )
    except Exception as e:
        result = {"success": False, "error": str(e) or e.__class__.__name__, "rate_limited": False}

    if result["success"]:
        _mark_sent(supabase, item, result.get("email_id"), now)
        increment_metric(supabase, MetricType.SUCCESSFUL_SENT)
        stats.sent += 1
        print(f"  ✓ Delivered queued email {item.id} to {item.recipient_email}")
        return

    error_message = result.get("error") or "Unknown error"
    exhausted = _mark_failed_attempt(supabase, item, error_message, now, config)
    if exhausted:
        stats.failed += 1
        print(f"  ✗ Queued email {item.id} failed permanently: {error_message}")
    else:
        stats.retried += 1
        print(f"  ⟳ Queued email {item.id} rescheduled (attempt {item.retry_count + 1}): {error_message}")

    if result.get("rate_limited"):
        increment_metric(supabase, MetricType.RATE_LIMITED_COUNT)
    else:
        increment_metric(supabase, MetricType.FAILED_SENT)


def drain_queue(
    now: datetime | None = None,
    batch_size: int | None = None,
    config: PipelineConfig | None = None,
    supabase: Any = None,
    dry_run: bool = False,
) -> DrainStats:
    """
    Deliver queued notifications that are due.

    Args:
        now: Current time (defaults to current UTC time)
        batch_size: Maximum items per run (defaults to config.batch_size)
        config: Pipeline configuration (defaults to environment)
        supabase: Supabase client (defaults to a new service client)
        dry_run: List due items without claiming or sending

    Returns:
        DrainStats with fetched / sent / retried / failed / skipped counts
    """
    now = now or utc_now()
    config = config or load_config()
    batch_size = batch_size or config.batch_size
    stats = DrainStats()

    try:
        supabase = supabase or get_supabase_client(config.query_timeout_seconds)
        rows = fetch_due_items(supabase, now, batch_size)
    except Exception as e:
        error_file = log_notification_error(error_type="queue", error_message=str(e))
        print(f"  ⚠️  Error reading notification queue. Details logged to: {error_file}")
        return stats

    stats.fetched = len(rows)
    if not rows:
        print("No emails to process in queue")
        return stats

    print(f"Processing {len(rows)} queued emails")

    for row in rows:
        try:
            item = QueueItem.model_validate(row)
        except ValidationError as e:
            stats.skipped += 1
            log_notification_error(
                error_type="queue",
                error_message=f"Invalid queue item: {e}",
                context={"queue_item_id": row.get("id")},
            )
            continue

        if dry_run:
            print(f"  [DRY RUN] Would deliver {item.id} to {item.recipient_email}")
            continue

        try:
            if not claim_item(supabase, item.id, row["scheduled_for"], now, config.claim_lease_seconds):
                stats.skipped += 1
                print(f"  ⊘ Queue item {item.id} claimed by another worker")
                continue

            deliver_item(supabase, item, now, config, stats)
        except Exception as e:
            # Outcome not persisted; the claim lease makes the item due again
            error_file = log_notification_error(
                error_type="queue",
                error_message=str(e),
                context={"queue_item_id": item.id, "retry_count": item.retry_count},
            )
            print(f"  ⚠️  Error processing queued email {item.id}. Details logged to: {error_file}")

    return stats

"""
Trailing-window suppression of repeat notifications.

A (rule, recipient) pair that has any log entry inside the window, sent or
failed, is not notified again. The same lookup keyed by alert status
suppresses repeat health alerts.
"""

from datetime import datetime, timedelta
from typing import Any, Dict

from notifications.error_logger import log_notification_error
from shared.utils import to_iso, utc_now

DEFAULT_WINDOW_HOURS = 24


def _recent_row_exists(
    supabase: Any,
    table: str,
    filters: Dict[str, Any],
    window_hours: int,
    now: datetime,
) -> bool:
    since = now - timedelta(hours=window_hours)

    query = supabase.table(table).select("id")
    for column, value in filters.items():
        query = query.eq(column, value)

    response = (
        query.gte("created_at", to_iso(since))
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )

    return bool(response.data)


def already_notified(
    supabase: Any,
    rule_id: str,
    recipient_id: str,
    window_hours: int = DEFAULT_WINDOW_HOURS,
    now: datetime | None = None,
) -> bool:
    """
    Check whether the recipient was already notified for this rule.

    Failed attempts count too, so a persistently failing address is tried at
    most once per window. If the lookup itself fails the pair is treated as
    notified; a skipped send is retried next run, a duplicate cannot be undone.
    """
    if window_hours <= 0:
        return False

    now = now or utc_now()
    try:
        return _recent_row_exists(
            supabase,
            "email_notification_logs",
            {"rule_id": rule_id, "recipient_id": recipient_id},
            window_hours,
            now,
        )
    except Exception as e:
        log_notification_error(
            error_type="dedup",
            error_message=str(e),
            context={"rule_id": rule_id, "recipient_id": recipient_id},
        )
        return True


def alert_recently_raised(
    supabase: Any,
    status: str,
    window_hours: int,
    now: datetime | None = None,
) -> bool:
    """Check for an unresolved alert with the same status inside the window."""
    if window_hours <= 0:
        return False

    now = now or utc_now()
    return _recent_row_exists(
        supabase,
        "email_system_alerts",
        {"status": status, "resolved": False},
        window_hours,
        now,
    )

"""
Error logging utility for the notification pipeline.

Errors that are swallowed to keep a run going (one rule, one recipient, one
queue item) are written to timestamped report files for operators.
"""

import os
from datetime import datetime
from typing import Any

# selection: recipient queries; sending: rule sends; attachments: attachment
# resolution; queue: delivery queue; metrics: counter RPC; dedup: log lookups;
# health / alerting: health monitor
ERROR_TYPES = (
    "selection",
    "sending",
    "attachments",
    "queue",
    "metrics",
    "dedup",
    "health",
    "alerting",
)


def log_notification_error(
    error_type: str, error_message: str, context: dict[str, Any] | None = None
) -> str:
    """
    Log a notification error to a timestamped file.

    Args:
        error_type: Type of error (one of ERROR_TYPES)
        error_message: The error message
        context: Optional dictionary with additional context (rule_id, queue_item_id, etc.)

    Returns:
        Path to the log file created
    """
    log_dir = os.getenv(
        "NOTIFICATION_LOG_DIR", os.path.join(os.path.dirname(__file__), "logs")
    )
    os.makedirs(log_dir, exist_ok=True)

    # Microseconds keep reports from one run in separate files
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    filename = os.path.join(log_dir, f"notification_error_{error_type}_{timestamp}.txt")

    with open(filename, "w", encoding="utf-8") as f:
        f.write(f"Notification Error Report - {datetime.now()}\n")
        f.write("=" * 60 + "\n\n")
        f.write(f"Error Type: {error_type}\n")
        f.write(f"Error Message: {error_message}\n\n")

        if context:
            f.write("Context:\n")
            f.write("-" * 60 + "\n")
            for key, value in context.items():
                f.write(f"{key}: {value}\n")

    return filename

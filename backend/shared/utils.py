from datetime import datetime, timezone
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a database timestamp (or date) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(value)
        except (ValueError, OverflowError, TypeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime for PostgREST filters and inserts."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def print_summary(title: str, stats: dict[str, int]) -> None:
    """Print processing summary."""
    print(f"\n{'=' * 60}")
    print(f"[{datetime.now()}] {title}")
    print(f"{'=' * 60}")
    width = max((len(key) for key in stats), default=0) + 1
    for key, value in stats.items():
        print(f"{(key.capitalize() + ':').ljust(width + 1)} {value}")
    print(f"{'=' * 60}\n")

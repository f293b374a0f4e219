"""
Utility helper functions
"""
import re
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def only_digits(value: str | None) -> str:
    """Strip everything but digits (national ids arrive formatted)."""
    return re.sub(r"\D", "", value or "")


def parse_iso_date(value: str) -> date:
    """Parse YYYY-MM-DD, raising ValueError with the offending value."""
    try:
        return datetime.strptime((value or "").strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from exc

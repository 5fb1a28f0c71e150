"""Date parsing utilities for master data and visit records."""

from __future__ import annotations

from datetime import date, datetime

# Reasonable date bounds for billing records
MIN_VALID_YEAR = 1900
MAX_VALID_YEAR = 2100


def parse_flexible_date(value: str | date | None) -> date | None:
    """Parse a date from multiple common formats with validation.

    Supports the following formats:
    - ISO 8601: YYYY-MM-DD (e.g., 2025-01-15)
    - Slashed: YYYY/MM/DD (e.g., 2025/01/15)
    - US format: MM/DD/YYYY (e.g., 01/15/2025)
    - Compact: YYYYMMDD (e.g., 20250115)

    Returns None for empty input, unparseable strings, impossible calendar
    dates and years outside 1900-2100. Date and datetime objects (YAML
    loads unquoted ISO dates as such) are returned as dates.

    Examples:
        >>> parse_flexible_date("2025-01-15")
        datetime.date(2025, 1, 15)
        >>> parse_flexible_date("20250115")
        datetime.date(2025, 1, 15)
        >>> parse_flexible_date("2025-02-30")  # Invalid date
        None
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    formats = [
        "%Y-%m-%d",  # ISO 8601
        "%Y/%m/%d",
        "%m/%d/%Y",  # US format
        "%Y%m%d",  # Compact
    ]

    text = str(value).strip()
    for fmt in formats:
        try:
            parsed = datetime.strptime(text, fmt)
            if parsed.year < MIN_VALID_YEAR or parsed.year > MAX_VALID_YEAR:
                continue
            return parsed.date()
        except ValueError:
            # strptime raises ValueError for invalid dates like Feb 30
            continue

    return None


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, keeping its offset when present."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None

import uuid
from datetime import date, datetime, timezone


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return uuid.uuid4().hex


def parse_date(value) -> str:
    """
    Normalize a pickup/delivery date to an ISO string.
    Accepts date/datetime objects or ISO strings ('2025-11-09', '2025-11-09T10:30:00Z').
    Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid date: {value!r}")
    s = value.strip()
    try:
        datetime.fromisoformat(s[:-1] + "+00:00" if s.endswith("Z") else s)
    except ValueError as e:
        raise ValueError(f"Invalid date format: {value!r} ({e})")
    return s


def format_amount(amount) -> str:
    """Money for messages: '123,456.78'."""
    return f"{float(amount):,.2f}"

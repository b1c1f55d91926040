"""Shared utility functions for services and blueprints.

utc_now / as_utc:   timezone-aware clock helpers (SQLite hands back naive values)
parse_datetime:     tolerant ISO-8601 parsing for request payloads
to_iso:             serialise a datetime (or None) for JSON columns
coerce_user_ids:    normalise a list of user ids to unique ints
"""
from datetime import date, datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Normalise a datetime to UTC-aware regardless of input tz-awareness."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt):
    return as_utc(dt).isoformat() if dt else None


def parse_datetime(value):
    """Parse an ISO datetime (or date) string to an aware datetime.

    Returns None for empty input; raises ValueError on bad input so
    callers can turn it into a ValidationError.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def coerce_user_ids(values) -> list[int]:
    """Return unique integer user ids in first-seen order.

    Raises ValueError when any entry is not an integer id.
    """
    if values is None:
        return []
    if not isinstance(values, (list, tuple, set)):
        raise ValueError("expected a list of user ids")
    seen: list[int] = []
    for raw in values:
        if isinstance(raw, bool):
            raise ValueError(f"invalid user id {raw!r}")
        try:
            uid = int(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid user id {raw!r}") from exc
        if uid not in seen:
            seen.append(uid)
    return seen

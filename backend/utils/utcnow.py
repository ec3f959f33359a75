"""UTC helpers.

``datetime.utcnow()`` is deprecated since Python 3.12. These wrappers produce
the **naive** UTC datetimes the rest of the codebase expects, plus the ISO-8601
``...Z`` strings used in cached payloads and API responses.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return utcnow().isoformat(timespec="milliseconds") + "Z"

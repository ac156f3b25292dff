"""Wall-clock helpers shared by every time-dependent component.

Cooldowns, blocks, minimum request delays, and daily counters are all
expressed as timezone-aware UTC datetimes.  Components accept a ``clock``
callable instead of calling :func:`datetime.now` directly so tests can drive
time deterministically::

    ledger = AccountLedger(repo, policy, clock=lambda: frozen)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

__all__ = ["Clock", "utc_now", "parse_ts", "format_ts"]

#: A zero-argument callable returning the current timezone-aware UTC time.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def parse_ts(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp stored in SQLite.

    Naive values are assumed to be UTC.  ``None`` and empty strings map to
    ``None``.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_ts(value: datetime | None) -> str | None:
    """Serialise a datetime to the ISO-8601 UTC form used in the database.

    A fixed microsecond precision keeps stored values lexicographically
    ordered, so SQL comparisons on timestamp columns are chronological.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")

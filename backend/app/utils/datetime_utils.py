"""DateTime utilities for timezone-aware timestamp handling.

All persisted timestamps are offset-naive UTC (``TIMESTAMP WITHOUT TIME ZONE``).
TOTP arithmetic needs POSIX seconds, so conversions live here too.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Get current UTC datetime without timezone info (offset-naive).

    Returns:
        Current UTC datetime without timezone info

    Example:
        >>> now = utc_now()
        >>> print(now.tzinfo)
        None
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix_timestamp(value: datetime) -> int:
    """
    Convert a naive-UTC (or aware) datetime to integer POSIX seconds.

    Naive values are interpreted as UTC, never as local time.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


# Lambda version for SQLAlchemy default/onupdate parameters
utc_now_lambda = lambda: datetime.now(timezone.utc).replace(tzinfo=None)

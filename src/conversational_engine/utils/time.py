from datetime import UTC, datetime


def get_current_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with microseconds.

    Microsecond resolution keeps lexical order equal to chronological order for
    rows written in quick succession; rows that still collide are ordered by id.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds")

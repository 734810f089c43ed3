"""
Utility functions for parsing rate limit response headers.

These helpers are internal to the rate limiting core and are not part of
the public API; they may change without notice.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)


def parse_int_header(headers: Mapping[str, str], name: str) -> int | None:
    """
    Read a header and parse it as a base-10 integer.

    Missing, empty and malformed values return None. Malformed values are
    logged at DEBUG level and otherwise ignored.

    Args:
        headers: Response headers (case-insensitive mapping recommended).
        name: Header name to read.

    Returns:
        The parsed integer, or None.

    Example:
        >>> parse_int_header({"X-RateLimit-Remaining": "42"}, "X-RateLimit-Remaining")
        42
        >>> parse_int_header({"X-RateLimit-Remaining": "many"}, "X-RateLimit-Remaining")
        None
    """
    raw_value = headers.get(name)
    if not raw_value:
        return None

    try:
        return int(raw_value.strip())
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed '{name}' header value: {raw_value!r}")
        return None


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """
    Parse a Retry-After header value into seconds from now.

    Supports both forms defined by RFC 9110:
    - delay-seconds: "120"
    - HTTP-date: "Wed, 21 Oct 2026 07:28:00 GMT"

    The result may be zero or negative (e.g. "0" or a date in the past);
    callers decide how to treat non-positive waits.

    Args:
        value: The raw header value (None or empty means absent).
        now: Current epoch time in seconds, used for HTTP-dates.
            Defaults to time.time().

    Returns:
        Seconds to wait, or None if the value is absent or unparseable.

    Example:
        >>> parse_retry_after("3")
        3.0
        >>> parse_retry_after("soon")
        None
    """
    if not value:
        return None
    value = value.strip()

    try:
        return float(int(value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Ignoring malformed 'Retry-After' header value: {value!r}")
        return None

    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)

    current = time.time() if now is None else now
    return (retry_at - datetime.fromtimestamp(current, tz=UTC)).total_seconds()

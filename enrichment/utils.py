# enrichment/utils.py
import re
from datetime import date, datetime, timezone
from typing import Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

_NON_ISBN_CHARS = re.compile(r"[^0-9Xx]")


def _isbn13_check_digit(first12: str) -> int:
    total = sum(int(ch) * (3 if i % 2 else 1) for i, ch in enumerate(first12))
    return (10 - total % 10) % 10


def is_valid_isbn13(value: str) -> bool:
    """Return True if value is 13 digits with a correct checksum."""
    if len(value) != 13 or not value.isdigit():
        return False
    return _isbn13_check_digit(value[:12]) == int(value[12])


def is_valid_isbn10(value: str) -> bool:
    if len(value) != 10 or not value[:9].isdigit():
        return False
    last = value[9]
    if last == "X":
        last_val = 10
    elif last.isdigit():
        last_val = int(last)
    else:
        return False
    total = sum(int(ch) * (10 - i) for i, ch in enumerate(value[:9]))
    return (11 - total % 11) % 11 == last_val


def normalize_isbn13(raw) -> Optional[str]:
    """
    Normalize user or vendor input into a checksum-valid ISBN-13.

    Strips hyphens, spaces and any other separators. A valid ISBN-10 is
    converted to its 978-prefixed ISBN-13 form.

    Args:
        raw: Anything; non-string values (ints from JSON) are stringified.

    Returns:
        str or None: The 13-digit ISBN, or None when the input cannot be
            read as a valid ISBN.
    """
    if raw is None or isinstance(raw, bool):
        return None
    cleaned = _NON_ISBN_CHARS.sub("", str(raw)).upper()
    if len(cleaned) == 13:
        return cleaned if is_valid_isbn13(cleaned) else None
    if len(cleaned) == 10 and is_valid_isbn10(cleaned):
        base = "978" + cleaned[:9]
        return base + str(_isbn13_check_digit(base))
    return None


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp without ever raising.

    Naive values are assumed to be UTC. Returns None for anything that is
    not a parseable string or datetime.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_publish_date(value) -> Optional[str]:
    """
    Reduce a vendor datetime string to a YYYY-MM-DD date.

    The date is taken in the offset it was written in, so
    "2014-11-17T00:00:00.000+09:00" stays 2014-11-17.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def network_retry(**tenacity_kwargs):
    """
    Create a tenacity retry decorator for idempotent network reads.

    Args:
        **tenacity_kwargs: Optional keyword arguments
            - attempts (int): Maximum number of attempts. Defaults to 3.
            - max_wait (float): Upper bound of the backoff in seconds.
              Defaults to 4.

    Returns:
        Configured retry decorator. Only transport-level failures
        (connection errors, timeouts) are retried; HTTP status errors are
        left to the caller. The last exception is re-raised.

    Example:
        @network_retry(attempts=2)
        async def fetch_run(client, url):
            return await client.get(url)
    """
    return retry(
        stop=stop_after_attempt(tenacity_kwargs.get("attempts", 3)),
        wait=wait_exponential(
            multiplier=0.5, min=0.5, max=tenacity_kwargs.get("max_wait", 4)
        ),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )

# enrichment/staleness.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import BookRecord
from .utils import parse_timestamp, utcnow

CATEGORY_REFRESH_WINDOW = timedelta(hours=24)


def needs_catalog_enrichment(record: Optional[BookRecord]) -> bool:
    """
    True while catalog data is missing or incomplete.

    Any empty display field keeps the record eligible, so partial results
    are retried on every request (the 24h catalog cache absorbs the load).
    """
    if record is None or record.catalog_fetched_at is None:
        return True
    return not all(
        [record.title, record.author, record.publisher, record.description]
    )


def needs_category_enrichment(
    record: Optional[BookRecord], now: Optional[datetime] = None
) -> bool:
    """
    True when no category is known and the last attempt is older than 24h.

    A filled category is never re-crawled, however old it is.
    """
    if record is None:
        return True
    if record.category:
        return False
    fetched_at = parse_timestamp(record.category_fetched_at)
    if fetched_at is None:
        return True
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now - fetched_at > CATEGORY_REFRESH_WINDOW

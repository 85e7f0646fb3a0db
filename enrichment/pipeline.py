# enrichment/pipeline.py
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .cache import JsonCache, lease_key, page_key
from .catalog import CatalogClient
from .db import BookStore, StoreError
from .dispatcher import CrawlDispatcher, DispatchError
from .models import BookRecord, BookView
from .resolver import RetailerUrlResolver
from .staleness import needs_catalog_enrichment, needs_category_enrichment

PAGE_CACHE_TTL_SECONDS = 60 * 60

logger = logging.getLogger("pipeline")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)

SKIPPED = "skipped"
IN_FLIGHT = "in_flight"
UNRESOLVED = "unresolved"
QUEUED = "queued"


@dataclass
class CategoryOutcome:
    status: str
    reason: Optional[str] = None
    retailer_url: Optional[str] = None
    run_id: Optional[str] = None


class CategoryEnricher:
    """
    Resolve a retailer URL and start a crawl when a category is missing.

    A successful dispatch stamps category_fetched_at right away, so repeat
    requests inside the staleness window do not start another crawl while
    the first one is still running. Concurrent requests for the same cold
    ISBN can still both dispatch unless a lease is configured.
    """

    def __init__(
        self,
        store: BookStore,
        resolver: RetailerUrlResolver,
        dispatcher: CrawlDispatcher,
        cache: JsonCache,
        lease_seconds: int = 0,
    ):
        self.store = store
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.cache = cache
        self.lease_seconds = lease_seconds

    async def _acquire_lease(self, isbn13: str) -> bool:
        if self.lease_seconds <= 0:
            return True
        try:
            return await self.cache.acquire_lease(lease_key(isbn13), self.lease_seconds)
        except Exception as e:
            # without the lease we fall back to the unlocked behaviour
            logger.warning(f"Crawl lease unavailable for {isbn13}: {e}")
            return True

    async def run(self, isbn13: str, record: Optional[BookRecord] = None) -> CategoryOutcome:
        """
        Raises:
            StoreError: reading or creating the record failed.
            DispatchError: the task runner rejected the job.
        """
        if record is None:
            record = await self.store.get_by_isbn(isbn13) or await self.store.ensure_stub(isbn13)

        if not needs_category_enrichment(record):
            return CategoryOutcome(status=SKIPPED)

        if not self.dispatcher.configured:
            logger.info(f"Crawler not configured, category enrichment skipped for {isbn13}")
            return CategoryOutcome(status=SKIPPED, reason="crawler not configured")

        if not await self._acquire_lease(isbn13):
            logger.info(f"Crawl already in flight for {isbn13}")
            return CategoryOutcome(status=IN_FLIGHT)

        url = await self.resolver.resolve(isbn13, record.retailer_url)
        if url and url != record.retailer_url:
            try:
                await self.store.set_retailer_url(isbn13, url)
            except StoreError as e:
                logger.error(f"Storing retailer URL failed for {isbn13}: {e}")

        if not url:
            # record the attempt so the next 24h of page views skip resolution
            try:
                await self.store.touch_category_fetch_timestamp(isbn13)
            except StoreError as e:
                logger.error(f"Marking unresolved attempt failed for {isbn13}: {e}")
            return CategoryOutcome(status=UNRESOLVED)

        run = await self.dispatcher.dispatch(self.dispatcher.build_job(isbn13, url))
        try:
            await self.store.touch_category_fetch_timestamp(isbn13)
        except StoreError as e:
            logger.error(f"Marking dispatch failed for {isbn13}: {e}")
        return CategoryOutcome(status=QUEUED, retailer_url=url, run_id=run.get("id"))

    async def run_quietly(self, isbn13: str) -> None:
        """Background-task entry point: failures are logged, never raised."""
        try:
            outcome = await self.run(isbn13)
            logger.info(f"Category enrichment for {isbn13}: {outcome.status}")
        except (StoreError, DispatchError) as e:
            logger.error(f"Category enrichment failed for {isbn13}: {e}")


async def load_book_view(
    isbn13: str,
    store: BookStore,
    catalog: CatalogClient,
    cache: JsonCache,
    schedule_category: Callable[[str], None],
) -> BookView:
    """
    Assemble the view of one book for a page request.

    Catalog enrichment runs inline; category enrichment is handed to
    schedule_category so the response never waits on the crawler. Any
    enrichment failure leaves the page with whatever data is stored.

    Raises:
        StoreError: the record could neither be read nor created.
    """
    try:
        cached = await cache.get_json(page_key(isbn13))
        if isinstance(cached, dict):
            return BookView(**cached)
    except Exception as e:
        logger.warning(f"Page cache read failed for {isbn13}: {e}")

    record = await store.get_by_isbn(isbn13)
    if record is None:
        record = await store.ensure_stub(isbn13)

    if needs_catalog_enrichment(record):
        try:
            result = await catalog.enrich(isbn13)
            if result.record is not None:
                record = result.record
        except StoreError as e:
            logger.error(f"Catalog merge failed for {isbn13}: {e}")

    if needs_category_enrichment(record):
        schedule_category(isbn13)

    view = BookView.from_record(record)
    if view.has_primary_data:
        try:
            await cache.set_json(page_key(isbn13), view.model_dump(), PAGE_CACHE_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Page cache write failed for {isbn13}: {e}")
    return view

# enrichment/webhook.py
"""
Ingestion of crawler webhook calls.

The crawler vendor controls the payload shape, so every logical field is
read through an ordered tuple of extractor functions. Each extractor looks
at one candidate location and returns a value or None; the first non-empty
result wins. Adding a new vendor field name means adding one extractor.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .cache import JsonCache
from .db import BookStore
from .dispatcher import APIFY_API_BASE
from .utils import network_retry, normalize_isbn13, parse_timestamp

logger = logging.getLogger("webhook")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)

Extractor = Callable[[Dict[str, Any]], Any]

WRAPPER_KEYS = ("payload", "data", "resource")
ISBN_KEYS = ("isbn13", "isbn", "ISBN13", "ISBN", "isbn_13")
URL_KEYS = ("retailer_url", "kyobo_url", "kyoboUrl", "url")
CATEGORY_KEYS = ("breadcrumbs", "breadcrumb", "categoryPath", "category", "categories")
SCRAPED_AT_KEYS = ("scraped_at", "scrapedAt", "last_updated", "lastUpdated")
DATASET_KEYS = ("defaultDatasetId", "datasetId")
RUN_ID_KEYS = ("runId", "actorRunId", "id")
RUN_ID_HEADER = "x-apify-run-id"

STATUS_OK = "ok"
STATUS_PENDING = "pending"
STATUS_IGNORED = "ignored"


def first_of(extractors: Sequence[Extractor], item: Dict[str, Any]) -> Any:
    for extract in extractors:
        value = extract(item)
        if value:
            return value
    return None


def clean_breadcrumbs(value: Any) -> Optional[List[str]]:
    """
    Normalize a breadcrumb value into a clean list of labels.

    Entries may be strings or objects carrying text/title/name. Labels are
    trimmed, empties dropped and duplicates removed keeping the first
    occurrence. Returns None when nothing usable remains.
    """
    if not isinstance(value, list):
        return None
    seen = set()
    cleaned = []
    for entry in value:
        label = ""
        if isinstance(entry, str):
            label = entry.strip()
        elif isinstance(entry, dict):
            for key in ("text", "title", "name"):
                candidate = entry.get(key)
                if isinstance(candidate, str) and candidate.strip():
                    label = candidate.strip()
                    break
        if label and label not in seen:
            seen.add(label)
            cleaned.append(label)
    return cleaned or None


def _string_field(key: str) -> Extractor:
    def extract(item):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    extract.__name__ = f"string_{key}"
    return extract


def _isbn_field(key: str) -> Extractor:
    def extract(item):
        return normalize_isbn13(item.get(key))

    extract.__name__ = f"isbn_{key}"
    return extract


def _breadcrumb_field(key: str) -> Extractor:
    def extract(item):
        return clean_breadcrumbs(item.get(key))

    extract.__name__ = f"breadcrumb_{key}"
    return extract


def _timestamp_field(key: str) -> Extractor:
    def extract(item):
        return parse_timestamp(item.get(key))

    extract.__name__ = f"timestamp_{key}"
    return extract


ISBN_EXTRACTORS = tuple(_isbn_field(k) for k in ISBN_KEYS)
URL_EXTRACTORS = tuple(_string_field(k) for k in URL_KEYS)
CATEGORY_EXTRACTORS = tuple(_breadcrumb_field(k) for k in CATEGORY_KEYS)
SCRAPED_AT_EXTRACTORS = tuple(_timestamp_field(k) for k in SCRAPED_AT_KEYS)
DATASET_EXTRACTORS = tuple(_string_field(k) for k in DATASET_KEYS)


def has_isbn_field(item: Dict[str, Any]) -> bool:
    return any(item.get(k) not in (None, "") for k in ISBN_KEYS)


@dataclass
class ScrapeResult:
    isbn13: Optional[str]
    retailer_url: Optional[str] = None
    category: Optional[List[str]] = None
    scraped_at: Optional[datetime] = None


def normalize_item(item: Dict[str, Any]) -> ScrapeResult:
    return ScrapeResult(
        isbn13=first_of(ISBN_EXTRACTORS, item),
        retailer_url=first_of(URL_EXTRACTORS, item),
        category=first_of(CATEGORY_EXTRACTORS, item),
        scraped_at=first_of(SCRAPED_AT_EXTRACTORS, item),
    )


def unwrap_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Peel payload/data/resource envelopes off a webhook body.

    An envelope holding a list (dataset items) yields its first object.
    Returns None if no object is found.
    """
    obj = raw
    for _ in range(8):
        if isinstance(obj, list):
            obj = next((x for x in obj if isinstance(x, dict)), None)
        if not isinstance(obj, dict):
            return None
        if has_isbn_field(obj):
            return obj
        inner = next(
            (obj[k] for k in WRAPPER_KEYS if isinstance(obj.get(k), (dict, list))),
            None,
        )
        if inner is None:
            return obj
        obj = inner
    return obj if isinstance(obj, dict) else None


def find_run_id(body: Any, unwrapped: Dict[str, Any], headers) -> Optional[str]:
    if isinstance(body, dict):
        event_data = body.get("eventData")
        if isinstance(event_data, dict) and event_data.get("actorRunId"):
            return str(event_data["actorRunId"])
    for key in RUN_ID_KEYS:
        value = unwrapped.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    header_value = headers.get(RUN_ID_HEADER) if headers is not None else None
    return header_value.strip() if header_value and header_value.strip() else None


@dataclass
class IngestOutcome:
    status: str
    isbn13: Optional[str] = None
    category: Optional[List[str]] = None
    retailer_url: Optional[str] = None
    invalidated: bool = False


class RunOutputClient:
    """Reads a crawl run's output back from the task runner's API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: Optional[str],
        timeout: float = 10.0,
        api_base: str = APIFY_API_BASE,
    ):
        self.client = client
        self.token = token
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")

    @network_retry(attempts=2, max_wait=1)
    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        async with asyncio.timeout(self.timeout):
            resp = await self.client.get(
                f"{self.api_base}{path}",
                params={"token": self.token, **params},
                timeout=self.timeout,
            )
        resp.raise_for_status()
        return resp.json()

    async def first_dataset_item(self, dataset_id: str) -> Optional[Dict[str, Any]]:
        items = await self._get_json(
            f"/datasets/{dataset_id}/items", {"limit": 1, "clean": "true", "format": "json"}
        )
        if isinstance(items, dict):
            items = items.get("items") or items.get("data")
        if isinstance(items, list):
            return next((i for i in items if isinstance(i, dict)), None)
        return None

    async def run_dataset_id(self, run_id: str) -> Optional[str]:
        run = await self._get_json(f"/actor-runs/{run_id}", {})
        run = run.get("data", run) if isinstance(run, dict) else {}
        dataset_id = run.get("defaultDatasetId") if isinstance(run, dict) else None
        return dataset_id if isinstance(dataset_id, str) and dataset_id else None


class WebhookProcessor:
    """
    Turns an authenticated, parsed webhook body into store updates.

    Authentication and JSON parsing belong to the HTTP layer; this class
    handles payload resolution, normalization, persistence and cache
    invalidation.
    """

    def __init__(self, store: BookStore, cache: JsonCache, runs: RunOutputClient):
        self.store = store
        self.cache = cache
        self.runs = runs

    async def resolve_item(self, body: Any, headers=None) -> Optional[Dict[str, Any]]:
        """
        Find the scraped item, fetching it from the task runner if needed.

        Returns None when the item is not (yet) available; lookup errors are
        logged, never raised, because the vendor retries webhooks.
        """
        unwrapped = unwrap_payload(body)
        if unwrapped is None:
            return None
        if has_isbn_field(unwrapped):
            return unwrapped

        if not self.runs.token:
            logger.warning("Webhook without inline item and APIFY_TOKEN missing")
            return None

        try:
            dataset_id = first_of(DATASET_EXTRACTORS, unwrapped)
            if not dataset_id:
                run_id = find_run_id(body, unwrapped, headers)
                if not run_id:
                    logger.info("Webhook carried no item, dataset or run id")
                    return unwrapped
                dataset_id = await self.runs.run_dataset_id(run_id)
                if not dataset_id:
                    logger.warning(f"Run {run_id} has no dataset yet")
                    return None
            return await self.runs.first_dataset_item(dataset_id)
        except (httpx.HTTPError, TimeoutError, ValueError) as e:
            logger.warning(f"Crawl output lookup failed: {e}")
            return None

    async def ingest(self, body: Any, headers=None) -> IngestOutcome:
        """
        Process one webhook body.

        Returns:
            IngestOutcome with status "pending" (no item available yet),
            "ignored" (no valid ISBN, e.g. a vendor test event) or "ok".

        Raises:
            StoreError: persisting the payload or the merge failed.
        """
        item = await self.resolve_item(body, headers)
        if item is None:
            return IngestOutcome(status=STATUS_PENDING)

        result = normalize_item(item)
        if not result.isbn13:
            logger.info("Webhook item without a valid ISBN (likely a test event)")
            return IngestOutcome(status=STATUS_IGNORED)

        logger.info(
            f"Webhook for {result.isbn13}: category={result.category} url={result.retailer_url}"
        )
        await self.store.replace_raw_payload(result.isbn13, item, result.scraped_at)
        await self.store.merge_category_fields(
            result.isbn13, retailer_url=result.retailer_url, category=result.category
        )
        ok, _ = await self.cache.invalidate_page(result.isbn13)
        return IngestOutcome(
            status=STATUS_OK,
            isbn13=result.isbn13,
            category=result.category,
            retailer_url=result.retailer_url,
            invalidated=ok,
        )

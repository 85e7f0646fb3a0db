# enrichment/catalog.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .cache import MISSING, JsonCache, catalog_key
from .db import BookStore
from .models import BookRecord, CatalogBook
from .utils import parse_publish_date

KAKAO_BOOK_SEARCH_URL = "https://dapi.kakao.com/v3/search/book"
CACHE_TTL_SECONDS = 60 * 60 * 24

logger = logging.getLogger("catalog")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)

STATUS_OK = "ok"
STATUS_NOT_FOUND = "not_found"
STATUS_UNAVAILABLE = "unavailable"


def _clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def normalize_catalog_document(doc: Any) -> Optional[CatalogBook]:
    """
    Normalize one Kakao book-search document.

    Args:
        doc: documents[0] of the vendor response, any shape.

    Returns:
        CatalogBook or None if doc is not an object. Blank strings become
        None, non-string authors are dropped, and an invalid datetime gives
        publish_date None instead of raising.
    """
    if not isinstance(doc, dict):
        return None
    authors = doc.get("authors")
    if not isinstance(authors, list):
        authors = []
    return CatalogBook(
        title=_clean_str(doc.get("title")),
        authors=[a.strip() for a in authors if isinstance(a, str) and a.strip()],
        publisher=_clean_str(doc.get("publisher")),
        publish_date=parse_publish_date(doc.get("datetime")),
        description=_clean_str(doc.get("contents")),
    )


@dataclass
class CatalogLookup:
    status: str
    book: Optional[CatalogBook] = None
    cache_hit: bool = False
    record: Optional[BookRecord] = None


class CatalogClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: BookStore,
        cache: JsonCache,
        api_key: Optional[str],
        timeout: float = 5.0,
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.api_key = api_key
        self.timeout = timeout

    async def fetch_document(self, isbn13: str):
        """
        Query the catalog API for one ISBN.

        Returns:
            tuple (ok, doc): ok is False when the API could not be asked or
            answered with an error (nothing should be cached); doc is
            documents[0] or None when the catalog has no match.
        """
        if not self.api_key:
            logger.warning("KAKAO_REST_API_KEY not configured, catalog lookup skipped")
            return False, None
        try:
            # one deadline for the whole call, body included
            async with asyncio.timeout(self.timeout):
                resp = await self.client.get(
                    KAKAO_BOOK_SEARCH_URL,
                    params={"target": "isbn", "query": isbn13, "size": 1},
                    headers={"Authorization": f"KakaoAK {self.api_key}"},
                    timeout=self.timeout,
                )
        except (httpx.TimeoutException, TimeoutError):
            logger.error(f"Catalog lookup timed out for {isbn13}")
            return False, None
        except httpx.HTTPError as e:
            logger.error(f"Catalog lookup failed for {isbn13}: {e}")
            return False, None

        if not resp.is_success:
            logger.error(f"Catalog error {resp.status_code} for {isbn13}: {resp.text[:200]}")
            return False, None
        try:
            data = resp.json()
        except ValueError as e:
            logger.error(f"Catalog returned invalid JSON for {isbn13}: {e}")
            return False, None

        documents = data.get("documents") if isinstance(data, dict) else None
        if not isinstance(documents, list) or not documents:
            return True, None
        return True, documents[0]

    async def _read_cache(self, isbn13: str):
        try:
            return await self.cache.get_json(catalog_key(isbn13))
        except Exception as e:
            logger.error(f"Catalog cache read error for {isbn13}: {e}")
            return MISSING

    async def _write_cache(self, isbn13: str, book: Optional[CatalogBook]) -> None:
        value = book.model_dump() if book is not None else None
        try:
            await self.cache.set_json(catalog_key(isbn13), value, CACHE_TTL_SECONDS)
        except Exception as e:
            logger.error(f"Catalog cache write error for {isbn13}: {e}")

    async def lookup(self, isbn13: str):
        """
        Return (status, book, cache_hit) without touching the store.

        A cached null is a remembered "not found" and is served as such
        until the TTL expires.
        """
        cached = await self._read_cache(isbn13)
        if cached is not MISSING:
            if cached is None:
                return STATUS_NOT_FOUND, None, True
            try:
                return STATUS_OK, CatalogBook(**cached), True
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed catalog cache for {isbn13}: {e}")

        ok, doc = await self.fetch_document(isbn13)
        if not ok:
            return STATUS_UNAVAILABLE, None, False
        book = normalize_catalog_document(doc)
        await self._write_cache(isbn13, book)
        return (STATUS_OK if book else STATUS_NOT_FOUND), book, False

    async def enrich(self, isbn13: str) -> CatalogLookup:
        """
        Look up catalog metadata and merge it into the book record.

        Upstream trouble degrades to status "unavailable" with nothing
        written, so the staleness policy retries on a later request.

        Raises:
            StoreError: the merge itself failed.
        """
        status, book, cache_hit = await self.lookup(isbn13)
        if status == STATUS_UNAVAILABLE:
            logger.info(f"Catalog enrichment skipped this time for {isbn13}")
            return CatalogLookup(status=status, cache_hit=cache_hit)

        record = await self.store.merge_catalog_fields(isbn13, book)
        logger.info(f"Catalog enrichment for {isbn13}: {status} (cache_hit={cache_hit})")
        return CatalogLookup(status=status, book=book, cache_hit=cache_hit, record=record)

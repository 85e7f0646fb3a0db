# enrichment/resolver.py
import json
import asyncio
import logging
import re
from typing import Any, Optional

import httpx

KYOBO_AUTOCOMPLETE_URL = "https://search.kyobobook.co.kr/srp/api/v1/search/autocomplete/shop"
KYOBO_PRODUCT_URL_PREFIX = "https://product.kyobobook.co.kr/detail/"
FALLBACK_URL_PATTERNS = (
    "https://product.kyobobook.co.kr/detail/{isbn13}",
    "https://search.kyobobook.co.kr/product/detail/{isbn13}",
)

# callback name is any JS identifier: cb(...), autocompleteShop(...)
_JSONP = re.compile(r"^[A-Za-z_$][\w$]*\s*\((.*)\)\s*;?\s*$", re.S)

logger = logging.getLogger("resolver")
logger.setLevel(logging.INFO)


def parse_jsonp(body: str) -> Optional[Any]:
    """Strip a callback envelope and parse the JSON inside; None on failure."""
    m = _JSONP.match((body or "").strip())
    if not m:
        return None
    try:
        return json.loads(m.group(1))
    except ValueError:
        return None


def pick_sale_id(payload: Any, isbn13: str) -> Optional[str]:
    """
    Choose the retailer sale id from an autocomplete payload.

    The document whose CMDTCODE equals the ISBN is preferred; otherwise the
    first document is used.
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    docs = data.get("resultDocuments") if isinstance(data, dict) else None
    if not isinstance(docs, list):
        return None
    docs = [d for d in docs if isinstance(d, dict)]
    if not docs:
        return None
    doc = next(
        (d for d in docs if str(d.get("CMDTCODE") or "").strip() == isbn13),
        docs[0],
    )
    sale_id = doc.get("SALE_CMDTID")
    if not isinstance(sale_id, str) or not sale_id.strip():
        return None
    return sale_id.strip()


class RetailerUrlResolver:
    def __init__(self, client: httpx.AsyncClient, timeout: float = 4.0):
        self.client = client
        self.timeout = timeout

    async def _request(self, method: str, url: str, **kwargs) -> Optional[httpx.Response]:
        try:
            async with asyncio.timeout(self.timeout):
                return await self.client.request(
                    method, url, timeout=self.timeout, follow_redirects=True, **kwargs
                )
        except (httpx.TimeoutException, TimeoutError):
            logger.warning(f"{method} {url} timed out")
        except httpx.HTTPError as e:
            logger.warning(f"{method} {url} failed: {e}")
        return None

    async def is_live(self, url: str) -> bool:
        """HEAD the URL, falling back to GET; True only on a 2xx answer."""
        for method in ("HEAD", "GET"):
            resp = await self._request(method, url)
            if resp is not None and resp.is_success:
                return True
        return False

    async def from_autocomplete(self, isbn13: str) -> Optional[str]:
        resp = await self._request(
            "GET",
            KYOBO_AUTOCOMPLETE_URL,
            params={"callback": "autocompleteShop", "keyword": isbn13},
        )
        if resp is None or not resp.is_success:
            logger.warning(
                f"Autocomplete request failed for {isbn13} "
                f"(status={resp.status_code if resp is not None else None})"
            )
            return None

        payload = parse_jsonp(resp.text)
        if payload is None:
            logger.warning(f"Autocomplete body not parseable for {isbn13}")
            return None
        sale_id = pick_sale_id(payload, isbn13)
        if not sale_id:
            logger.info(f"No autocomplete match for {isbn13}")
            return None

        url = f"{KYOBO_PRODUCT_URL_PREFIX}{sale_id}"
        if await self.is_live(url):
            return url
        logger.warning(f"Autocomplete URL {url} did not validate for {isbn13}")
        return None

    async def resolve(self, isbn13: str, current: Optional[str] = None) -> Optional[str]:
        """
        Find a live retailer product URL for an ISBN.

        Args:
            isbn13: Valid ISBN-13.
            current: URL already stored on the record. A stored URL is
                trusted and returned without any network call.

        Returns:
            str or None: The first URL that validated via HEAD or GET; the
                autocomplete path is tried before the guessed patterns.
        """
        if current:
            return current

        url = await self.from_autocomplete(isbn13)
        if url:
            return url

        for pattern in FALLBACK_URL_PATTERNS:
            candidate = pattern.format(isbn13=isbn13)
            if await self.is_live(candidate):
                logger.info(f"Resolved {isbn13} via fallback {candidate}")
                return candidate

        logger.info(f"No retailer URL resolved for {isbn13}")
        return None

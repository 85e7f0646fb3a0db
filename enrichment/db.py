# enrichment/db.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .models import BookRecord, CatalogBook, RawScrapePayload
from .utils import utcnow

BOOKS = "books"
RAW_SCRAPES = "books_raw_scrapes"


class StoreError(Exception):
    """A Book Record Store read or write failed; the caller may retry."""


def create_client(mongo_uri: str) -> AsyncIOMotorClient:
    """Create the Motor client used for the lifetime of the app."""
    return AsyncIOMotorClient(mongo_uri, tz_aware=True)


class BookStore:
    """
    Canonical per-ISBN book records and the raw crawler payloads.

    Every mutation is a single-document upsert keyed on the ISBN, so
    concurrent writers never need a lock. Catalog and category pipelines
    write disjoint field groups; the last write to a group wins.
    """

    def __init__(self, db):
        self.db = db

    @property
    def books(self):
        return self.db[BOOKS]

    @property
    def raw_scrapes(self):
        return self.db[RAW_SCRAPES]

    async def get_by_isbn(self, isbn13: str) -> Optional[BookRecord]:
        try:
            doc = await self.books.find_one({"_id": isbn13})
        except PyMongoError as e:
            raise StoreError(f"read failed for {isbn13}: {e}") from e
        return BookRecord.from_doc(doc)

    async def ensure_stub(self, isbn13: str) -> BookRecord:
        """
        Create an ISBN-only record if none exists, and return the record.

        $setOnInsert makes the write a no-op for existing documents, so a
        record that is already enriched comes back unchanged.
        """
        return await self._upsert(
            isbn13,
            {"$setOnInsert": {"created_at": utcnow()}},
        )

    async def merge_catalog_fields(
        self, isbn13: str, book: Optional[CatalogBook]
    ) -> BookRecord:
        """
        Merge a normalized catalog result and stamp catalog_fetched_at.

        Only non-null values are written, so a sparse answer never erases a
        field that an earlier lookup filled. Passing None (the catalog had
        no match) only stamps the fetch time.
        """
        now = utcnow()
        fields: Dict[str, Any] = {"catalog_fetched_at": now, "updated_at": now}
        if book is not None:
            candidates = {
                "title": book.title,
                "author": ", ".join(book.authors) or None,
                "publisher": book.publisher,
                "publish_date": book.publish_date,
                "description": book.description,
            }
            fields.update({k: v for k, v in candidates.items() if v is not None})
        return await self._upsert(
            isbn13, {"$set": fields, "$setOnInsert": {"created_at": now}}
        )

    async def merge_category_fields(
        self,
        isbn13: str,
        retailer_url: Optional[str] = None,
        category: Optional[List[str]] = None,
    ) -> BookRecord:
        """
        Merge crawler results; fields that were not extracted are left as is.

        A non-empty category replaces the stored breadcrumb entirely and
        stamps category_fetched_at.
        """
        now = utcnow()
        fields: Dict[str, Any] = {"updated_at": now}
        if retailer_url:
            fields["retailer_url"] = retailer_url
        if category:
            fields["category"] = list(category)
            fields["category_fetched_at"] = now
        return await self._upsert(
            isbn13, {"$set": fields, "$setOnInsert": {"created_at": now}}
        )

    async def set_retailer_url(self, isbn13: str, url: str) -> BookRecord:
        return await self.merge_category_fields(isbn13, retailer_url=url)

    async def touch_category_fetch_timestamp(self, isbn13: str) -> None:
        now = utcnow()
        await self._upsert(
            isbn13,
            {
                "$set": {"category_fetched_at": now, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
        )

    async def replace_raw_payload(
        self,
        isbn13: str,
        payload: Dict[str, Any],
        scraped_at: Optional[datetime] = None,
    ) -> None:
        """Replace the single raw crawler item kept for this ISBN."""
        raw = RawScrapePayload(
            isbn13=isbn13, payload=payload, scraped_at=scraped_at or utcnow()
        )
        doc = raw.model_dump()
        doc["_id"] = doc.pop("isbn13")
        try:
            await self.raw_scrapes.replace_one({"_id": isbn13}, doc, upsert=True)
        except PyMongoError as e:
            raise StoreError(f"raw payload write failed for {isbn13}: {e}") from e

    async def get_raw_payload(self, isbn13: str) -> Optional[RawScrapePayload]:
        try:
            doc = await self.raw_scrapes.find_one({"_id": isbn13})
        except PyMongoError as e:
            raise StoreError(f"raw payload read failed for {isbn13}: {e}") from e
        if not doc:
            return None
        return RawScrapePayload(
            isbn13=doc["_id"], payload=doc.get("payload") or {}, scraped_at=doc["scraped_at"]
        )

    async def _upsert(self, isbn13: str, update: Dict[str, Any]) -> BookRecord:
        try:
            doc = await self.books.find_one_and_update(
                {"_id": isbn13},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StoreError(f"upsert failed for {isbn13}: {e}") from e
        return BookRecord.from_doc(doc)

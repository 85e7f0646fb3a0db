# enrichment/models.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .utils import parse_timestamp


class BookRecord(BaseModel):
    isbn13: str = Field(..., description="Normalized ISBN-13, canonical key")
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    publish_date: Optional[str] = None  # YYYY-MM-DD
    description: Optional[str] = None
    category: Optional[List[str]] = None
    retailer_url: Optional[str] = None
    catalog_fetched_at: Optional[datetime] = None
    category_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        "catalog_fetched_at",
        "category_fetched_at",
        "created_at",
        "updated_at",
        mode="before",
    )
    @classmethod
    def _lenient_timestamp(cls, v):
        # unparseable stored values read as "never"
        return parse_timestamp(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category_list(cls, v):
        if not isinstance(v, list):
            return None
        return [str(c) for c in v if isinstance(c, str) and c]

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> Optional["BookRecord"]:
        """Build a record from a Mongo document keyed by _id."""
        if not doc:
            return None
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["isbn13"] = doc["_id"]
        return cls(**data)


class RawScrapePayload(BaseModel):
    isbn13: str
    payload: Dict[str, Any]
    scraped_at: datetime


class CrawlJobRequest(BaseModel):
    isbn13: str
    target_url: str
    callback_secret: Optional[str] = None


class CatalogBook(BaseModel):
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    publish_date: Optional[str] = None
    description: Optional[str] = None


class BookView(BaseModel):
    isbn13: str
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    description: Optional[str] = None
    category: Optional[List[str]] = None
    retailer_url: Optional[str] = None
    retailer_unavailable: bool = False

    @classmethod
    def from_record(cls, record: BookRecord) -> "BookView":
        authors = [a.strip() for a in (record.author or "").split(",") if a.strip()]
        publish_year = None
        if record.publish_date and record.publish_date[:4].isdigit():
            publish_year = int(record.publish_date[:4])
        return cls(
            isbn13=record.isbn13,
            title=record.title,
            authors=authors,
            publisher=record.publisher,
            publish_year=publish_year,
            description=record.description,
            category=record.category,
            retailer_url=record.retailer_url,
            retailer_unavailable=bool(
                record.category_fetched_at and not record.retailer_url
            ),
        )

    @property
    def has_primary_data(self) -> bool:
        return bool(
            self.title
            or self.authors
            or self.publisher
            or (self.description and self.description.strip())
        )

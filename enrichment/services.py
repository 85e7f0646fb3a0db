# enrichment/services.py
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .cache import JsonCache, create_redis
from .catalog import CatalogClient
from .config import Settings
from .db import BookStore, create_client
from .dispatcher import CrawlDispatcher
from .pipeline import CategoryEnricher
from .resolver import RetailerUrlResolver
from .webhook import RunOutputClient, WebhookProcessor


@dataclass
class Services:
    """Explicitly constructed collaborators shared by the request handlers."""

    settings: Settings
    store: BookStore
    cache: JsonCache
    catalog: CatalogClient
    resolver: RetailerUrlResolver
    dispatcher: CrawlDispatcher
    category: CategoryEnricher
    webhook: WebhookProcessor
    http: Optional[httpx.AsyncClient] = None
    mongo: Any = None
    redis: Any = None

    async def close(self) -> None:
        if self.http is not None:
            await self.http.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.mongo is not None:
            self.mongo.close()


def build_services(
    settings: Settings,
    http: httpx.AsyncClient,
    db,
    redis,
    mongo=None,
) -> Services:
    """Wire every component from already-open clients."""
    store = BookStore(db)
    cache = JsonCache(redis)
    resolver = RetailerUrlResolver(http, timeout=settings.resolve_timeout)
    dispatcher = CrawlDispatcher(
        http,
        token=settings.apify_token,
        task_id=settings.apify_task_id,
        webhook_secret=settings.webhook_secret,
        timeout=settings.dispatch_timeout,
    )
    return Services(
        settings=settings,
        store=store,
        cache=cache,
        catalog=CatalogClient(
            http, store, cache, settings.kakao_api_key, timeout=settings.catalog_timeout
        ),
        resolver=resolver,
        dispatcher=dispatcher,
        category=CategoryEnricher(
            store, resolver, dispatcher, cache, lease_seconds=settings.crawl_lease_seconds
        ),
        webhook=WebhookProcessor(
            store,
            cache,
            RunOutputClient(http, settings.apify_token, timeout=settings.dispatch_timeout),
        ),
        http=http,
        mongo=mongo,
        redis=redis,
    )


def open_services(settings: Settings) -> Services:
    """Create the network clients from settings and wire the components."""
    http = httpx.AsyncClient(headers={"User-Agent": "bookshelf-enrichment/1.0"})
    mongo = create_client(settings.mongo_uri)
    redis = create_redis(settings.redis_url)
    return build_services(settings, http, mongo[settings.mongo_db], redis, mongo=mongo)

# enrichment/config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "bookshelf"
    redis_url: str = "redis://localhost:6379"

    kakao_api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    apify_token: Optional[str] = None
    apify_task_id: Optional[str] = None

    catalog_timeout: float = 5.0
    resolve_timeout: float = 4.0
    dispatch_timeout: float = 10.0
    crawl_lease_seconds: int = 0

    api_port: int = 8000


def _env(name: str) -> Optional[str]:
    # empty strings count as missing
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_settings() -> Settings:
    """
    Build Settings from the environment (and a .env file, if present).

    Only variables that are actually set override the model defaults.
    Secrets and credentials have no defaults: a missing webhook secret makes
    the webhook reject every call, and missing Apify credentials turn
    category enrichment into a no-op.
    """
    load_dotenv()
    env_map = {
        "mongo_uri": "MONGO_URI",
        "mongo_db": "MONGO_DB",
        "redis_url": "REDIS_URL",
        "kakao_api_key": "KAKAO_REST_API_KEY",
        "webhook_secret": "BOOKSHELF_WEBHOOK_SECRET",
        "apify_token": "APIFY_TOKEN",
        "apify_task_id": "APIFY_TASK_ID",
        "catalog_timeout": "CATALOG_TIMEOUT",
        "resolve_timeout": "RESOLVE_TIMEOUT",
        "dispatch_timeout": "DISPATCH_TIMEOUT",
        "crawl_lease_seconds": "CRAWL_LEASE_SECONDS",
        "api_port": "API_PORT",
    }
    values = {}
    for field, var in env_map.items():
        value = _env(var)
        if value is not None:
            values[field] = value
    return Settings(**values)

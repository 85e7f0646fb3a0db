# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app
from api.rate_limit import limiter
from enrichment.config import Settings
from enrichment.services import build_services

from fakes import FakeDB, FakeRedis, Router

WEBHOOK_SECRET = "abc"


@pytest.fixture
def router():
    return Router()


@pytest.fixture
async def http(router):
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        yield client


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def settings():
    return Settings(
        kakao_api_key="kakao-key",
        webhook_secret=WEBHOOK_SECRET,
        apify_token="apify-token",
        apify_task_id="task-1",
    )


@pytest.fixture
def services(settings, http, fake_db, fake_redis):
    return build_services(settings, http, fake_db, fake_redis)


@pytest.fixture
async def client(services):
    """
    Async test client bound to the app with in-memory services.

    Lifespan is not run by ASGITransport, so the fake services installed on
    app.state are the ones every request sees.
    """
    app.state.services = services
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.services = None

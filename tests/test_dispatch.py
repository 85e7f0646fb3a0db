# tests/test_dispatch.py
import json
import time

import httpx
import pytest

from enrichment.cache import JsonCache
from enrichment.db import BOOKS, BookStore
from enrichment.dispatcher import CrawlDispatcher, DispatchError
from enrichment.pipeline import IN_FLIGHT, QUEUED, SKIPPED, UNRESOLVED, CategoryEnricher
from enrichment.resolver import KYOBO_AUTOCOMPLETE_URL, KYOBO_PRODUCT_URL_PREFIX, RetailerUrlResolver
from fakes import trickle

ISBN = "9788936434120"
RUNS_URL = "https://api.apify.com/v2/actor-tasks/task-1/runs"
PRODUCT_URL = f"{KYOBO_PRODUCT_URL_PREFIX}S000213456789"


def route_resolvable(router):
    body = {"data": {"resultDocuments": [{"CMDTCODE": ISBN, "SALE_CMDTID": "S000213456789"}]}}
    router.add("GET", KYOBO_AUTOCOMPLETE_URL, text=f"autocompleteShop({json.dumps(body)});")
    router.add("HEAD", PRODUCT_URL, status_code=200)


@pytest.mark.asyncio
async def test_dispatch_posts_job_to_task_runner(http, router):
    """
    Test the task-runner request built for one crawl job.

    Asserts:
        - The token travels in the query string
        - The body overrides the task input with startUrls, isbn13 and the
          webhook secret
        - The run descriptor under "data" is returned
    """
    router.add("POST", RUNS_URL, status_code=201, json={"data": {"id": "run-1", "status": "READY"}})
    dispatcher = CrawlDispatcher(http, token="tok", task_id="task-1", webhook_secret="abc")

    run = await dispatcher.dispatch(dispatcher.build_job(ISBN, PRODUCT_URL))

    assert run["id"] == "run-1"
    request = router.calls[0]
    assert request.url.params["token"] == "tok"
    assert json.loads(request.content) == {
        "startUrls": [{"url": PRODUCT_URL}],
        "isbn13": ISBN,
        "webhook_secret": "abc",
    }


@pytest.mark.asyncio
async def test_dispatch_error_carries_status_and_body(http, router):
    router.add("POST", RUNS_URL, status_code=402, text='{"error":"not enough credits"}')
    dispatcher = CrawlDispatcher(http, token="tok", task_id="task-1", webhook_secret="abc")

    with pytest.raises(DispatchError) as exc:
        await dispatcher.dispatch(dispatcher.build_job(ISBN, PRODUCT_URL))

    assert exc.value.status == 402
    assert "not enough credits" in exc.value.body


@pytest.mark.asyncio
async def test_dispatch_transport_error_is_dispatch_error(http, router):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    router.add("POST", RUNS_URL, handler=down)
    dispatcher = CrawlDispatcher(http, token="tok", task_id="task-1", webhook_secret="abc")

    with pytest.raises(DispatchError) as exc:
        await dispatcher.dispatch(dispatcher.build_job(ISBN, PRODUCT_URL))
    assert exc.value.status is None


def test_dispatcher_needs_token_and_task():
    assert CrawlDispatcher(None, "tok", "task", "s").configured is True
    assert CrawlDispatcher(None, "tok", None, "s").configured is False
    assert CrawlDispatcher(None, None, "task", "s").configured is False


@pytest.mark.asyncio
async def test_category_enrichment_queues_and_marks_fetched(services, router, fake_db):
    """
    Test a successful resolve + dispatch for a cold ISBN.

    Asserts:
        - Outcome is queued with the run id
        - retailer_url is stored on the record
        - category_fetched_at is stamped at dispatch time
    """
    route_resolvable(router)
    router.add("POST", RUNS_URL, status_code=201, json={"data": {"id": "run-7"}})

    outcome = await services.category.run(ISBN)

    assert outcome.status == QUEUED
    assert outcome.run_id == "run-7"
    doc = fake_db[BOOKS].docs[ISBN]
    assert doc["retailer_url"] == PRODUCT_URL
    assert doc["category_fetched_at"] is not None


@pytest.mark.asyncio
async def test_second_request_inside_window_is_skipped(services, router):
    route_resolvable(router)
    router.add("POST", RUNS_URL, status_code=201, json={"data": {"id": "run-7"}})

    await services.category.run(ISBN)
    second = await services.category.run(ISBN)

    assert second.status == SKIPPED
    assert router.count("POST", RUNS_URL) == 1


@pytest.mark.asyncio
async def test_no_resolved_url_never_dispatches(services, router, fake_db):
    """
    Test that an unresolvable ISBN never reaches the task runner.

    Asserts:
        - Outcome is unresolved
        - Zero POSTs to the task-runner endpoint
        - The attempt is recorded in category_fetched_at
    """
    router.add("GET", KYOBO_AUTOCOMPLETE_URL, text="garbage")

    outcome = await services.category.run(ISBN)

    assert outcome.status == UNRESOLVED
    assert router.count("POST", RUNS_URL) == 0
    assert fake_db[BOOKS].docs[ISBN]["category_fetched_at"] is not None


@pytest.mark.asyncio
async def test_unconfigured_crawler_is_a_no_op(http, router, fake_db, fake_redis):
    store = BookStore(fake_db)
    enricher = CategoryEnricher(
        store,
        RetailerUrlResolver(http),
        CrawlDispatcher(http, token=None, task_id=None, webhook_secret="abc"),
        JsonCache(fake_redis),
    )

    outcome = await enricher.run(ISBN)

    assert outcome.status == SKIPPED
    assert outcome.reason == "crawler not configured"
    assert router.calls == []


@pytest.mark.asyncio
async def test_known_category_is_skipped(services, router):
    await services.store.merge_category_fields(ISBN, category=["국내도서", "소설"])

    outcome = await services.category.run(ISBN)

    assert outcome.status == SKIPPED
    assert router.calls == []


@pytest.mark.asyncio
async def test_stored_url_is_reused_without_resolution(services, router):
    await services.store.set_retailer_url(ISBN, PRODUCT_URL)
    router.add("POST", RUNS_URL, status_code=201, json={"data": {"id": "run-8"}})

    outcome = await services.category.run(ISBN)

    assert outcome.status == QUEUED
    assert router.count("GET", KYOBO_AUTOCOMPLETE_URL) == 0


@pytest.mark.asyncio
async def test_dispatch_failure_propagates_and_leaves_window_open(services, router, fake_db):
    route_resolvable(router)
    router.add("POST", RUNS_URL, status_code=500, text="runner down")

    with pytest.raises(DispatchError):
        await services.category.run(ISBN)

    assert fake_db[BOOKS].docs[ISBN].get("category_fetched_at") is None


@pytest.mark.asyncio
async def test_lease_blocks_concurrent_dispatch(services, router):
    """
    Test the optional per-ISBN lease.

    With a lease configured, a second request arriving before the first one
    has stamped the record must not start another crawl.
    """
    services.category.lease_seconds = 60
    route_resolvable(router)
    router.add("POST", RUNS_URL, status_code=201, json={"data": {"id": "run-9"}})
    record = await services.store.ensure_stub(ISBN)

    first = await services.category.run(ISBN, record)
    second = await services.category.run(ISBN, record)

    assert first.status == QUEUED
    assert second.status == IN_FLIGHT
    assert router.count("POST", RUNS_URL) == 1


@pytest.mark.asyncio
async def test_null_run_descriptor_still_counts_as_dispatched(http, services, router, fake_db):
    """
    Test a 2xx answer whose "data" is null.

    The run has started, so the dispatch must succeed and the record must be
    stamped; otherwise every later page view would start another crawl.

    Asserts:
        - dispatch() returns an empty descriptor instead of raising
        - The enricher reports queued without a run id
        - category_fetched_at is stamped
    """
    router.add("POST", RUNS_URL, status_code=201, json={"data": None})
    dispatcher = CrawlDispatcher(http, "tok", "task-1", "abc")

    assert await dispatcher.dispatch(dispatcher.build_job(ISBN, PRODUCT_URL)) == {}

    route_resolvable(router)
    outcome = await services.category.run(ISBN)

    assert outcome.status == QUEUED
    assert outcome.run_id is None
    assert fake_db[BOOKS].docs[ISBN]["category_fetched_at"] is not None


@pytest.mark.asyncio
async def test_slow_task_runner_answer_is_dispatch_error(http, router):
    router.add("POST", RUNS_URL, handler=trickle(b'{"data": {"id": "run-1"}}'))
    dispatcher = CrawlDispatcher(http, "tok", "task-1", "abc", timeout=0.3)

    started = time.monotonic()
    with pytest.raises(DispatchError) as exc:
        await dispatcher.dispatch(dispatcher.build_job(ISBN, PRODUCT_URL))

    assert exc.value.status is None
    assert time.monotonic() - started < 1.0

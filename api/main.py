# api/main.py
from contextlib import asynccontextmanager
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enrichment.config import load_settings
from enrichment.db import StoreError
from enrichment.dispatcher import DispatchError
from enrichment.pipeline import load_book_view
from enrichment.services import Services, open_services
from enrichment.utils import normalize_isbn13
from enrichment import webhook as webhook_status
from .auth import NO_STORE, verify_webhook_secret
from .rate_limit import FETCH_LIMIT, PAGE_LIMIT, limiter, register_rate_limit

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tests install their own services before the first request
    owned = None
    if getattr(app.state, "services", None) is None:
        owned = open_services(load_settings())
        app.state.services = owned
    try:
        yield
    finally:
        if owned is not None:
            await owned.close()
            app.state.services = None


app = FastAPI(title="Book Enrichment API", version="1.0", lifespan=lifespan)

register_rate_limit(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    return request.app.state.services


def no_store(content, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content, status_code=status_code, headers=NO_STORE)


def require_isbn(raw: str) -> str:
    isbn13 = normalize_isbn13(raw)
    if not isbn13:
        raise HTTPException(status_code=400, detail="invalid isbn")
    return isbn13


@app.get("/books/{isbn}")
@limiter.limit(PAGE_LIMIT)
async def get_book(
    request: Request,
    isbn: str,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    Return the book view for one ISBN, enriching it on the way.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        isbn (str): ISBN-13 or ISBN-10, hyphens allowed

    Returns:
        dict: BookView fields (title, authors, publisher, publish_year,
            description, category, retailer_url, retailer_unavailable)

    Raises:
        HTTPException: 400 if the ISBN is not valid
        HTTPException: 503 if the record can neither be read nor created

    Note:
        Catalog enrichment runs inline when the record is incomplete;
        category enrichment is queued as a background task. Enrichment
        failures never fail the page, which renders with stored data.
    """
    isbn13 = require_isbn(isbn)

    def schedule_category(target: str) -> None:
        background_tasks.add_task(services.category.run_quietly, target)

    try:
        view = await load_book_view(
            isbn13,
            services.store,
            services.catalog,
            services.cache,
            schedule_category,
        )
    except StoreError as e:
        logger.error(f"Book page unavailable for {isbn13}: {e}")
        raise HTTPException(status_code=503, detail="book unavailable")
    return view.model_dump()


@app.get("/fetch-catalog")
@limiter.limit(FETCH_LIMIT)
async def fetch_catalog(
    request: Request,
    isbn: str = Query(""),
    services: Services = Depends(get_services),
):
    """
    Run catalog enrichment for one ISBN on demand.

    Returns:
        JSONResponse: isbn13, cache_hit, status ("ok", "not_found" or
            "unavailable"), the normalized catalog data and the stored book

    Raises:
        HTTPException: 400 if the ISBN is not valid
    """
    isbn13 = require_isbn(isbn)
    try:
        result = await services.catalog.enrich(isbn13)
        record = result.record or await services.store.get_by_isbn(isbn13)
    except StoreError as e:
        logger.error(f"Catalog enrichment store failure for {isbn13}: {e}")
        return no_store({"error": "store error"}, 500)

    return no_store(
        {
            "isbn13": isbn13,
            "cache_hit": result.cache_hit,
            "status": result.status,
            "catalog": result.book.model_dump() if result.book else None,
            "book": record.model_dump(mode="json") if record else None,
        }
    )


@app.get("/fetch-category")
@limiter.limit(FETCH_LIMIT)
async def fetch_category(
    request: Request,
    isbn: str = Query(""),
    services: Services = Depends(get_services),
):
    """
    Start category enrichment (URL resolution + crawl dispatch) on demand.

    Returns:
        JSONResponse:
            - 200 {"status": "skipped"} when the category needs no refresh
            - 202 {"status": "skipped"} when the crawler is not configured
            - 202 {"status": "in_flight"} when another request holds the lease
            - 200 {"status": "unresolved"} when no retailer URL validated
            - 202 {"status": "queued", "run_id": ...} after a dispatch
            - 500 on store failure, 502 when the task runner refuses the job

    Raises:
        HTTPException: 400 if the ISBN is not valid
    """
    isbn13 = require_isbn(isbn)
    try:
        outcome = await services.category.run(isbn13)
    except StoreError as e:
        logger.error(f"Category enrichment store failure for {isbn13}: {e}")
        return no_store({"error": "store error"}, 500)
    except DispatchError as e:
        logger.error(f"Crawl trigger failed for {isbn13}: {e}")
        return no_store({"error": "trigger failed", "upstream_status": e.status}, 502)

    content = {"status": outcome.status}
    if outcome.reason:
        content["reason"] = outcome.reason
    if outcome.run_id:
        content["run_id"] = outcome.run_id
    accepted = outcome.status in ("queued", "in_flight") or outcome.reason is not None
    return no_store(content, 202 if accepted else 200)


@app.post("/webhook")
async def crawler_webhook(
    request: Request,
    _secret: str = Depends(verify_webhook_secret),
    services: Services = Depends(get_services),
):
    """
    Receive a crawl result from the task runner.

    Returns:
        JSONResponse (always Cache-Control: no-store):
            - 200 {"status": "ok"} after the result was stored
            - 200 {"ok": true, "note": "test event"} when no valid ISBN is
              present (vendor test pings); nothing is stored
            - 202 {"status": "pending"} when the run output is not available
            - 400 for a malformed body or one without any object in it,
              500 when persistence fails

    Security:
        Requires the shared secret in one of the accepted webhook headers
        (see api.auth.WEBHOOK_SECRET_HEADERS)
    """
    try:
        body = await request.json()
    except ValueError as e:
        logger.error(f"Webhook body is not valid JSON: {e}")
        return no_store({"error": "invalid json"}, 400)

    if isinstance(body, list):
        has_item = any(isinstance(entry, dict) for entry in body)
    else:
        has_item = isinstance(body, dict)
    if not has_item:
        return no_store({"error": "missing payload"}, 400)

    try:
        outcome = await services.webhook.ingest(body, request.headers)
    except StoreError as e:
        logger.error(f"Webhook persistence failed: {e}")
        return no_store({"error": "store error"}, 500)

    if outcome.status == webhook_status.STATUS_PENDING:
        return no_store({"status": "pending"}, 202)
    if outcome.status == webhook_status.STATUS_IGNORED:
        return no_store({"ok": True, "note": "test event"})
    return no_store({"status": "ok"})


# Run uvicorn externally or here
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=load_settings().api_port, reload=True)

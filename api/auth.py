# api/auth.py
import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger("api")

WEBHOOK_SECRET_HEADERS = (
    "x-bookshelf-webhook-secret",
    "x-apify-webhook-secret",
    "x-apify-secret",
    "x-webhook-secret",
)
NO_STORE = {"Cache-Control": "no-store"}


def provided_webhook_secret(request: Request) -> str:
    """Return the first secret header present, or an empty string."""
    for name in WEBHOOK_SECRET_HEADERS:
        value = request.headers.get(name)
        if value is not None:
            return value
    return ""


async def verify_webhook_secret(request: Request) -> str:
    """
    Check the crawler's webhook secret header.

    FastAPI dependency guarding POST /webhook. Any of the accepted header
    names may carry the secret; the comparison is constant-time.

    Returns:
        str: The validated secret

    Raises:
        HTTPException: 500 if no webhook secret is configured
        HTTPException: 401 if the header is missing or does not match

    Note:
        Runs before the body is read, so a rejected call never reaches
        parsing or persistence.
    """
    expected = request.app.state.services.settings.webhook_secret
    if not expected:
        logger.error("Webhook secret not configured")
        raise HTTPException(status_code=500, detail="server misconfigured", headers=NO_STORE)

    provided = provided_webhook_secret(request)
    if not provided or not hmac.compare_digest(
        provided.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Unauthorized webhook attempt")
        raise HTTPException(status_code=401, detail="unauthorized", headers=NO_STORE)
    return provided

# api/rate_limit.py
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from fastapi import FastAPI

limiter = Limiter(key_func=get_remote_address)

PAGE_LIMIT = "300/minute"
FETCH_LIMIT = "60/minute"


def register_rate_limit(app: FastAPI):
    """
    Register rate limiting state and the 429 handler on the app.

    Args:
        app (FastAPI): The FastAPI application instance to configure

    Side Effects:
        - Sets app.state.limiter to the shared limiter instance
        - Registers the handler for RateLimitExceeded (429 Too Many Requests)

    Note:
        The webhook endpoint is not limited: the crawler vendor has its own
        retry policy and must never be throttled into dropping results.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

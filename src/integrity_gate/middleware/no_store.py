"""
Response headers middleware: caching disabled, baseline OWASP headers.
"""

import os
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

NO_STORE_RESPONSE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    # JSON API only, nothing may be framed or executed
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def _hsts_enabled() -> bool:
    return os.getenv("ENVIRONMENT") == "production" and os.getenv("HTTPS_ENABLED") == "true"


class NoStoreHeadersMiddleware(BaseHTTPMiddleware):
    """
    Challenges and verdicts must never be cached by clients or proxies,
    so every response, errors included, carries no-store.
    """

    async def dispatch(self, request: Request,
                       call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        response = await call_next(request)
        response.headers.update(NO_STORE_RESPONSE_HEADERS)
        if _hsts_enabled():
            response.headers["Strict-Transport-Security"] = HSTS_VALUE
        return response

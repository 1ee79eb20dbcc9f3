"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Milliseconds before a request is logged as slow. Routes that wait on a
# payment provider get a looser budget than plain database reads.
DEFAULT_SLOW_MS = 1000
PROVIDER_SLOW_MS = 4000
PROVIDER_PATH_MARKERS = ("/checkout", "/paypal/complete", "/stripe/complete", "/retry-payment", "/webhooks/")

QUIET_PATHS = ("/health", "/health/ready")


def slow_threshold_ms(method: str, path: str) -> int:
    if method == "POST" and path.rstrip("/") == "/api/v1/contributions":
        return PROVIDER_SLOW_MS
    return PROVIDER_SLOW_MS if any(marker in path for marker in PROVIDER_PATH_MARKERS) else DEFAULT_SLOW_MS


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log method, path, status and latency for every request.

    Event streams are timed to the first byte only.
    """
    started = time.perf_counter()
    path = request.url.path
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        latency_ms = (time.perf_counter() - started) * 1000
        status_code = response.status_code if response is not None else 500
        args = (request.method, path, status_code, latency_ms)

        if path in QUIET_PATHS:
            logger.debug("%s %s - %d - %.2fms", *args)
        elif status_code >= 500:
            logger.error("%s %s - %d - %.2fms", *args)
        elif latency_ms > slow_threshold_ms(request.method, path):
            logger.warning("Slow request: %s %s - %d - %.2fms", *args)
        elif status_code >= 400:
            logger.warning("%s %s - %d - %.2fms", *args)
        else:
            logger.info("%s %s - %d - %.2fms", *args)

"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from livreo.api.middleware.error_handler import error_handler_middleware, validation_exception_handler
from livreo.api.middleware.latency_logging import latency_logging_middleware
from livreo.api.middleware.request_size import request_size_limit_middleware
from livreo.api.routes import auth, contributions, health, orders, payments, webhooks
from livreo.core.config import get_settings
from livreo.core.rate_limiter import init_rate_limiter, shutdown_rate_limiter
from livreo.core.stripe import configure_stripe
from livreo.services.payment_providers import close_payment_providers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Configure payment SDKs and the rate limiter; close provider clients on exit."""
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    configure_stripe()
    providers = settings.configured_providers
    if providers:
        logger.info("Payment providers configured: %s", ", ".join(providers))
    else:
        logger.warning("No payment provider is configured; checkouts will fail")

    await init_rate_limiter()

    yield

    await close_payment_providers()
    await shutdown_rate_limiter()
    logger.info("Shut down %s", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Livreo API",
        description="Bookstore orders, crowdfunding contributions and payment reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Reject oversized requests before anything reads the body
    app.add_middleware(BaseHTTPMiddleware, dispatch=request_size_limit_middleware)

    # Turn domain errors into JSON responses
    app.add_middleware(BaseHTTPMiddleware, dispatch=error_handler_middleware)

    # Logs the final status code, so it wraps the error handler
    app.add_middleware(BaseHTTPMiddleware, dispatch=latency_logging_middleware)

    # Outermost, so error responses carry CORS headers too
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount health routes at root level (no prefix)
    app.include_router(health.router)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(auth.router)
    api_v1_router.include_router(orders.router)
    api_v1_router.include_router(payments.router)
    api_v1_router.include_router(contributions.router)
    api_v1_router.include_router(webhooks.router)

    app.include_router(api_v1_router)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "livreo.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )

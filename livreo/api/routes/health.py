"""Liveness and readiness probes."""

import time

from fastapi import APIRouter, Response, status

from livreo.core.config import get_settings
from livreo.core.supabase import check_database_connection
from livreo.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])

PROVIDERS = ("stripe", "paypal", "fedapay")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Returns 200 while the process is up. Touches no dependency.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status=HealthStatus.HEALTHY)


async def _database_check() -> CheckResult:
    started = time.perf_counter()
    result = await check_database_connection()
    return CheckResult(
        name="database",
        healthy=result["healthy"],
        latency_ms=round((time.perf_counter() - started) * 1000, 2),
        error=result.get("error"),
    )


def _payments_check() -> CheckResult:
    configured = get_settings().configured_providers
    missing = [name for name in PROVIDERS if name not in configured]
    return CheckResult(
        name="payments",
        healthy=bool(configured),
        error=f"not configured: {', '.join(missing)}" if missing else None,
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Database reachable and at least one payment provider configured"},
        503: {"description": "Service cannot take payments"},
    },
    summary="Readiness check",
    description="Checks the database and payment provider configuration. Used for readiness probes.",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Report each dependency; any unhealthy check turns the probe into a 503.

    A partially configured payment stack is reported in the check's error
    but stays ready as long as one provider can take payments.
    """
    checks = [await _database_check(), _payments_check()]

    ready = all(check.healthy for check in checks)
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=HealthStatus.HEALTHY if ready else HealthStatus.UNHEALTHY,
        checks=checks,
    )

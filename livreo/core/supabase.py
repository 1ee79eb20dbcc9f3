"""Supabase client singleton for database operations."""

import logging
from collections.abc import Callable
from decimal import Decimal
from functools import lru_cache
from typing import Any

from starlette.concurrency import run_in_threadpool
from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions
from supabase_auth import SyncMemoryStorage

from livreo.core.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton for database operations.

    Uses secret key (sb_secret_) for backend operations, which bypasses RLS
    at the PostgREST level. This should only be used for server-side
    database operations where proper authorization has already been verified.

    IMPORTANT: Do NOT use this client for auth operations that call
    sign_in_*() - use create_auth_client() instead to avoid polluting
    the singleton's Authorization header.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


def create_auth_client() -> Client:
    """Create a fresh Supabase client for credential checks.

    Each call creates a new isolated client instance so that signing a
    user in never leaks that user's session into the shared client.

    Returns:
        Client: Fresh Supabase client instance with isolated session storage.
    """
    settings = get_settings()
    options = SyncClientOptions(
        storage=SyncMemoryStorage(),
        auto_refresh_token=False,
        persist_session=False,
    )
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
        options=options,
    )


async def execute(query: Any) -> Any:
    """Run a PostgREST query builder off the event loop.

    The Supabase client is synchronous; every round trip is dispatched to
    the threadpool so request handlers never block the loop.

    Args:
        query: A built query (select/insert/update/upsert chain).

    Returns:
        The APIResponse, or None for an empty maybe_single() result.
    """
    return await run_in_threadpool(query.execute)


async def check_database_connection() -> dict[str, Any]:
    """Check if database connection is healthy.

    Performs a simple query to verify database connectivity.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        client = get_supabase_client()
        await execute(client.table("books").select("id").limit(1))
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}


# Compare-and-set attempts before giving up on a contended counter
COUNTER_RETRIES = 5


async def adjust_counter(
    table: str,
    match_column: str,
    match_value: Any,
    column: str,
    delta: Any,
    cast: Callable[[Any], Any] = int,
) -> Any:
    """Add delta to a numeric column with optimistic compare-and-set.

    The row is read, then updated only if the column still holds the value
    read, retrying on contention. The result is clamped at zero.

    Returns:
        The new value, or None if the row is missing or contention persists.
    """
    client = get_supabase_client()
    for _ in range(COUNTER_RETRIES):
        response = await execute(
            client.table(table).select(f"{match_column}, {column}").eq(match_column, match_value).maybe_single()
        )
        if not response or not response.data:
            logger.warning("Cannot adjust %s.%s: no row where %s=%s", table, column, match_column, match_value)
            return None

        raw = response.data.get(column)
        current = cast(raw or 0)
        target = current + delta
        if target < 0:
            logger.warning("Clamping %s.%s at zero for %s (%s %+s)", table, column, match_value, current, delta)
            target = cast(0)

        query = client.table(table).update({column: _json_number(target)}).eq(match_column, match_value)
        query = query.is_(column, "null") if raw is None else query.eq(column, raw)
        updated = await execute(query)
        if updated.data:
            return target

        logger.debug("Concurrent update on %s.%s for %s, retrying", table, column, match_value)

    logger.error("Gave up adjusting %s.%s for %s after %d attempts", table, column, match_value, COUNTER_RETRIES)
    return None


def _json_number(value: Any) -> Any:
    return float(value) if isinstance(value, Decimal) else value

"""Pytest configuration and fixtures."""

import copy
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from postgrest.exceptions import APIError as PostgrestAPIError

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("AUTH_SECRET", "test-auth-secret")
os.environ.setdefault("APP_BASE_URL", "https://livreo.test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST")
os.environ.setdefault("FEDAPAY_SECRET_KEY", "sk_sandbox_fedapay")
os.environ.setdefault("FEDAPAY_WEBHOOK_SECRET", "wh_sandbox_fedapay")

# Modules that bind get_supabase_client at import time
SUPABASE_CONSUMERS = (
    "livreo.core.supabase",
    "livreo.services.auth_service",
    "livreo.services.book_service",
    "livreo.services.campaign_service",
    "livreo.services.contribution_service",
    "livreo.services.order_service",
    "livreo.services.payment_ledger_service",
)

UNIQUE_CONSTRAINTS: dict[str, list[tuple[str, ...]]] = {
    "orders": [("invoice_number",)],
    "payment_transactions": [("provider", "provider_event_id")],
}


class FakeResponse:
    """Stand-in for postgrest's APIResponse."""

    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    """Chainable query mirroring the subset of the PostgREST builder the app uses."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.action = "select"
        self.payload: Any = None
        self.on_conflict: list[str] = []
        self.filters: list[Callable[[dict], bool]] = []
        self.order_by: tuple[str, bool] | None = None
        self.limit_count: int | None = None
        self.single = False

    def select(self, *columns: str, **kwargs: Any) -> "FakeQuery":
        self.action = "select"
        return self

    def insert(self, payload: Any, **kwargs: Any) -> "FakeQuery":
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict, **kwargs: Any) -> "FakeQuery":
        self.action = "update"
        self.payload = payload
        return self

    def upsert(self, payload: Any, on_conflict: str = "", **kwargs: Any) -> "FakeQuery":
        self.action = "upsert"
        self.payload = payload
        self.on_conflict = [column.strip() for column in on_conflict.split(",") if column.strip()]
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column: str, values: Any) -> "FakeQuery":
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def is_(self, column: str, value: Any) -> "FakeQuery":
        if value in ("null", None):
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) == value)
        return self

    def order(self, column: str, desc: bool = False, **kwargs: Any) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, count: int, **kwargs: Any) -> "FakeQuery":
        self.limit_count = count
        return self

    def maybe_single(self) -> "FakeQuery":
        self.single = True
        return self

    def execute(self) -> FakeResponse | None:
        for hook in list(self.db.hooks):
            hook(self)
        self.db.calls.append((self.table, self.action))
        rows = self.db.tables.setdefault(self.table, [])

        if self.action == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResponse([copy.deepcopy(self.db.insert_row(self.table, item)) for item in items])

        if self.action == "upsert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResponse([copy.deepcopy(self._upsert_one(rows, item)) for item in items])

        matched = [row for row in rows if all(check(row) for check in self.filters)]

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
                row["updated_at"] = self.db.now()
            return FakeResponse([copy.deepcopy(row) for row in matched])

        if self.order_by:
            column, desc = self.order_by
            matched = sorted(
                matched,
                key=lambda row: (row.get(column) is None, row.get(column) or ""),
                reverse=desc,
            )
        if self.limit_count is not None:
            matched = matched[: self.limit_count]
        result = [copy.deepcopy(row) for row in matched]

        if self.single:
            return FakeResponse(result[0]) if result else None
        return FakeResponse(result)

    def _upsert_one(self, rows: list[dict], item: dict) -> dict:
        if self.on_conflict:
            for row in rows:
                if all(item.get(c) is not None and row.get(c) == item.get(c) for c in self.on_conflict):
                    row.update(copy.deepcopy(item))
                    row["updated_at"] = self.db.now()
                    return row
        return self.db.insert_row(self.table, item)


class FakeSupabase:
    """In-memory Supabase client with unique constraints and conditional updates."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.hooks: list[Callable[[FakeQuery], None]] = []
        self._tick = 0

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def now(self) -> str:
        self._tick += 1
        return (datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick)).isoformat()

    def insert_row(self, table: str, item: dict) -> dict:
        rows = self.tables.setdefault(table, [])
        row = copy.deepcopy(item)
        for columns in UNIQUE_CONSTRAINTS.get(table, []):
            values = tuple(row.get(c) for c in columns)
            if any(v is None for v in values):
                continue
            if any(tuple(existing.get(c) for c in columns) == values for existing in rows):
                raise PostgrestAPIError(
                    {
                        "code": "23505",
                        "message": f"duplicate key value violates unique constraint on {table}",
                        "details": "",
                        "hint": "",
                    }
                )
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", self.now())
        row.setdefault("updated_at", row["created_at"])
        rows.append(row)
        return row

    def seed(self, table: str, rows: list[dict]) -> list[dict]:
        return [self.insert_row(table, row) for row in rows]

    def rows(self, table: str, **filters: Any) -> list[dict]:
        return [
            row
            for row in self.tables.get(table, [])
            if all(row.get(key) == value for key, value in filters.items())
        ]

    def get(self, table: str, row_id: str) -> dict | None:
        found = self.rows(table, id=row_id)
        return found[0] if found else None


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from livreo.core.config import get_settings

    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Give every test a fresh rate limiter and provider registry."""
    from livreo.core import rate_limiter
    from livreo.services import payment_providers

    rate_limiter._rate_limiter = None
    payment_providers._providers.clear()
    yield
    rate_limiter._rate_limiter = None
    payment_providers._providers.clear()


@pytest.fixture
def fake_db() -> Generator[FakeSupabase, None, None]:
    """Patch every Supabase consumer with one shared in-memory database.

    Yields:
        FakeSupabase: The database the services read and write.
    """
    db = FakeSupabase()
    with ExitStack() as stack:
        for module in SUPABASE_CONSUMERS:
            stack.enter_context(patch(f"{module}.get_supabase_client", return_value=db))
        yield db


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with ExitStack() as stack:
        for module in SUPABASE_CONSUMERS:
            stack.enter_context(patch(f"{module}.get_supabase_client", return_value=mock_client))
        yield mock_client


@pytest.fixture
def mock_email_service() -> AsyncMock:
    """Email service whose sends always succeed."""
    service = AsyncMock()
    service.send_order_confirmation.return_value = {"success": True, "email_id": "email-1"}
    service.send_contribution_confirmation.return_value = {"success": True, "email_id": "email-2"}
    return service


@pytest.fixture
def client(fake_db: FakeSupabase) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application backed by the fake database.

    Args:
        fake_db: In-memory database fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from livreo.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def issue_token() -> Callable[..., str]:
    """Sign session tokens with the configured secret."""
    from livreo.services.session_token_service import SessionTokenService

    service = SessionTokenService()

    def _issue(subject_id: str = "user-1", role: str = "client", email: str = "reader@example.com") -> str:
        return service.issue(subject_id=subject_id, email=email, role=role, display_name="Reader")

    return _issue


@pytest.fixture
def auth_headers(issue_token: Callable[..., str]) -> dict[str, str]:
    """Bearer headers for a client user with ID user-1."""
    return {"Authorization": f"Bearer {issue_token()}"}


@pytest.fixture
def seed_books(fake_db: FakeSupabase) -> dict[str, dict]:
    """A direct-sale book, a preorder book and a crowdfunding campaign."""
    direct, preorder, campaign = fake_db.seed(
        "books",
        [
            {"title": "Le Vent du Sahel", "price": 12.5, "sale_type": "direct", "stock": 5},
            {"title": "Tome 2", "price": 20.0, "sale_type": "preorder", "stock": 100},
            {
                "title": "Contes d'Abomey",
                "price": 15.0,
                "sale_type": "crowdfunding",
                "stock": None,
                "funding_goal": 100.0,
                "funding_raised": 0.0,
            },
        ],
    )
    return {"direct": direct, "preorder": preorder, "campaign": campaign}

"""Idempotent payment ledger backed by the payment_transactions table."""

import logging
from decimal import Decimal
from typing import Any

from livreo.core.supabase import execute, get_supabase_client
from livreo.models import LedgerKind, LedgerStatus, PaymentTransaction

logger = logging.getLogger(__name__)

TABLE = "payment_transactions"
EVENT_CONFLICT_TARGET = "provider,provider_event_id"


class PaymentLedgerService:
    """Append-only log of provider events and payment attempts.

    The unique (provider, provider_event_id) index is the only guard
    against duplicate webhook delivery; entries are never deleted.
    """

    def __init__(self) -> None:
        self.client = get_supabase_client()

    async def record(
        self,
        provider: str,
        kind: LedgerKind,
        status: LedgerStatus,
        order_id: str | None = None,
        contribution_id: str | None = None,
        user_id: str | None = None,
        provider_event_id: str | None = None,
        provider_reference: str | None = None,
        amount: Decimal | float | None = None,
        currency: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> PaymentTransaction | None:
        """Write a ledger entry.

        Entries with a provider event id are upserted on
        (provider, provider_event_id) so a second write for the same
        event updates the existing row instead of duplicating it.

        Returns:
            PaymentTransaction | None: The stored row.
        """
        row: dict[str, Any] = {
            "provider": provider,
            "kind": kind,
            "status": status,
            "order_id": order_id,
            "contribution_id": contribution_id,
            "user_id": user_id,
            "provider_event_id": provider_event_id,
            "provider_reference": provider_reference,
            "amount": float(amount) if amount is not None else None,
            "currency": currency,
            "payload": payload or {},
        }

        table = self.client.table(TABLE)
        if provider_event_id:
            query = table.upsert(row, on_conflict=EVENT_CONFLICT_TARGET)
        else:
            query = table.insert(row)
        response = await execute(query)

        logger.info(
            "Ledger %s/%s entry recorded for %s (status=%s, event=%s)",
            provider,
            kind,
            order_id or contribution_id or "-",
            status,
            provider_event_id or "-",
        )
        return response.data[0] if response.data else None

    async def has_processed(self, provider: str, provider_event_id: str) -> bool:
        """Check whether an event id has already been recorded for a provider."""
        response = await execute(
            self.client.table(TABLE)
            .select("id")
            .eq("provider", provider)
            .eq("provider_event_id", provider_event_id)
            .limit(1)
        )
        return bool(response.data)

    async def list_for_order(self, order_id: str) -> list[PaymentTransaction]:
        """Get the audit trail of an order, newest first."""
        response = await execute(
            self.client.table(TABLE)
            .select("*")
            .eq("order_id", order_id)
            .order("created_at", desc=True)
        )
        return response.data or []

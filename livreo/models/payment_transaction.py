"""Payment ledger model type definitions."""

from datetime import datetime
from typing import Any, Literal, TypedDict

ProviderName = Literal["stripe", "paypal", "fedapay"]
LedgerKind = Literal["payment", "refund", "webhook"]
LedgerStatus = Literal["pending", "succeeded", "failed"]


class PaymentTransaction(TypedDict, total=False):
    """payment_transactions table row representation.

    (provider, provider_event_id) is unique whenever provider_event_id
    is set; rows are never deleted.
    """

    id: str
    order_id: str | None
    contribution_id: str | None
    user_id: str | None
    provider: ProviderName
    kind: LedgerKind
    provider_event_id: str | None
    provider_reference: str | None
    status: LedgerStatus
    amount: float | None
    currency: str | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime

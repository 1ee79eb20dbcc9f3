"""Provider webhook reconciliation.

Each delivery is verified, deduplicated against the payment ledger on
(provider, event id), applied through the order/contribution state
machines, then recorded as a `webhook` ledger entry. Duplicate
deliveries and racing transitions are acknowledged without effect;
payloads that do not match a local record are recorded as failed and
still acknowledged so the provider stops retrying.
"""

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal

from livreo.api.middleware.error_handler import ConflictError, NotFoundError, ValidationError
from livreo.core.config import get_settings
from livreo.models import LedgerStatus
from livreo.services.contribution_service import ContributionService, parse_contribution_reference
from livreo.services.order_service import OrderService
from livreo.services.payment_ledger_service import PaymentLedgerService
from livreo.services.payment_providers import (
    FedaPayProvider,
    PaymentProvider,
    PayPalProvider,
    StripeProvider,
    ensure_amount_matches,
    get_payment_provider,
    parse_amount_cents,
    to_minor_units,
)

logger = logging.getLogger(__name__)

FEDAPAY_APPROVED = ("approved", "success", "completed", "transferred")
FEDAPAY_FAILED = ("canceled", "cancelled", "declined", "refunded")


@dataclass
class Target:
    """The local record a provider event refers to."""

    kind: Literal["order", "contribution"]
    row: dict[str, Any]

    @property
    def id(self) -> str:
        return self.row["id"]

    @property
    def amount(self) -> Decimal:
        value = self.row["total"] if self.kind == "order" else self.row["amount"]
        return Decimal(str(value))

    @property
    def currency(self) -> str:
        return (self.row.get("currency") or get_settings().payment_currency).upper()


@dataclass
class Outcome:
    """What applying an event did, for the webhook ledger entry."""

    status: LedgerStatus
    detail: str
    target: Target | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _parse_json(body: bytes, provider: str) -> dict[str, Any]:
    try:
        event = json.loads(body)
    except ValueError as e:
        raise ValidationError(f"Invalid {provider} webhook payload") from e
    if not isinstance(event, dict):
        raise ValidationError(f"Invalid {provider} webhook payload")
    return event


class WebhookService:
    """Apply provider events to orders and contributions exactly once."""

    def __init__(
        self,
        order_service: OrderService | None = None,
        contribution_service: ContributionService | None = None,
        ledger: PaymentLedgerService | None = None,
    ) -> None:
        self.ledger = ledger or PaymentLedgerService()
        self.orders = order_service or OrderService(ledger=self.ledger)
        self.contributions = contribution_service or ContributionService(ledger=self.ledger)

    async def handle_stripe(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify and apply a Stripe event."""
        stripe_provider: StripeProvider = get_payment_provider(PaymentProvider.STRIPE)
        event = stripe_provider.construct_event(payload, sig_header)
        event_type = event.get("type", "")
        obj = _as_dict(_as_dict(event.get("data")).get("object"))

        async def apply() -> Outcome:
            if event_type == "checkout.session.completed":
                return await self._stripe_session_completed(obj)
            if event_type == "charge.refunded":
                return await self._stripe_charge_refunded(obj)
            return Outcome("succeeded", f"ignored {event_type}")

        return await self._reconcile(PaymentProvider.STRIPE, event.get("id"), event_type, apply)

    async def handle_paypal(self, headers: Mapping[str, str], body: bytes) -> dict[str, Any]:
        """Verify and apply a PayPal event."""
        event = _parse_json(body, "PayPal")
        paypal: PayPalProvider = get_payment_provider(PaymentProvider.PAYPAL)
        await paypal.verify_webhook_signature(headers, event)

        event_type = event.get("event_type", "")
        resource = _as_dict(event.get("resource"))

        async def apply() -> Outcome:
            if event_type == "PAYMENT.CAPTURE.COMPLETED":
                return await self._paypal_capture_completed(resource)
            if event_type == "PAYMENT.CAPTURE.REFUNDED":
                return await self._paypal_capture_refunded(resource)
            return Outcome("succeeded", f"ignored {event_type}")

        return await self._reconcile(PaymentProvider.PAYPAL, event.get("id"), event_type, apply)

    async def handle_fedapay(self, body: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify and apply a FedaPay event."""
        fedapay: FedaPayProvider = get_payment_provider(PaymentProvider.FEDAPAY)
        fedapay.verify_webhook_signature(body, sig_header)
        event = _parse_json(body, "FedaPay")

        event_type = str(event.get("name") or event.get("type") or event.get("event") or "")
        transaction = _as_dict(
            event.get("entity") or event.get("data") or event.get("object") or event.get("transaction")
        )
        event_id = event.get("id")
        if not event_id and transaction.get("id") and event_type:
            event_id = f"{event_type}:{transaction['id']}"

        async def apply() -> Outcome:
            if "transaction" not in event_type or not transaction:
                return Outcome("succeeded", f"ignored {event_type}")
            return await self._fedapay_transaction(event_type, transaction, fedapay)

        return await self._reconcile(PaymentProvider.FEDAPAY, event_id, event_type, apply)

    async def _reconcile(
        self,
        provider: PaymentProvider,
        event_id: Any,
        event_type: str,
        apply: Callable[[], Awaitable[Outcome]],
    ) -> dict[str, Any]:
        if not event_id or not event_type:
            raise ValidationError(f"Invalid {provider.value} webhook event")
        event_id = str(event_id)

        if await self.ledger.has_processed(provider.value, event_id):
            logger.info("Duplicate %s webhook %s (%s) ignored", provider.value, event_id, event_type)
            return {"received": True, "duplicate": True}

        try:
            outcome = await apply()
        except (ConflictError, NotFoundError, ValidationError) as e:
            logger.warning("%s webhook %s (%s) rejected: %s", provider.value, event_id, event_type, e.message)
            outcome = Outcome("failed", e.message)

        target = outcome.target
        await self.ledger.record(
            provider=provider.value,
            kind="webhook",
            status=outcome.status,
            order_id=target.id if target and target.kind == "order" else None,
            contribution_id=target.id if target and target.kind == "contribution" else None,
            user_id=target.row.get("user_id") if target else None,
            provider_event_id=event_id,
            provider_reference=event_type,
            payload={"event_type": event_type, "detail": outcome.detail, **outcome.extra},
        )
        logger.info("%s webhook %s (%s): %s", provider.value, event_id, event_type, outcome.detail)
        return {"received": True}

    async def _resolve(self, reference: str | None, payment_reference: str | None = None) -> Target:
        """Find the order or contribution an event points at.

        Raises:
            NotFoundError: If neither the local reference nor the provider
                reference matches a record.
        """
        contribution_id = parse_contribution_reference(reference)
        if contribution_id:
            contribution = await self.contributions.get_contribution(contribution_id)
            if contribution:
                return Target("contribution", contribution)
        elif reference:
            order = await self.orders.get_order(reference)
            if order:
                return Target("order", order)

        if payment_reference:
            order = await self.orders.find_by_payment_reference(payment_reference)
            if order:
                return Target("order", order)
            contribution = await self.contributions.find_by_payment_reference(payment_reference)
            if contribution:
                return Target("contribution", contribution)

        raise NotFoundError("No order or contribution matches this payment")

    async def _resolve_by_transaction(self, transaction_id: str) -> Target:
        order = await self.orders.find_by_transaction_id(transaction_id)
        if order:
            return Target("order", order)
        contribution = await self.contributions.find_by_transaction_id(transaction_id)
        if contribution:
            return Target("contribution", contribution)
        raise NotFoundError("No order or contribution matches this payment")

    async def _settle(
        self,
        target: Target,
        provider: PaymentProvider,
        transaction_id: str,
        payment_reference: str | None,
    ) -> Outcome:
        if target.kind == "order":
            settled = await self.orders.settle(target.id, provider, transaction_id, payment_reference)
        else:
            settled = await self.contributions.settle(target.id, provider, transaction_id, payment_reference)
        if settled is None:
            return Outcome("succeeded", f"{target.kind} already {target.row.get('status')}", target)
        return Outcome("succeeded", f"{target.kind} paid", Target(target.kind, settled))

    async def _refund(
        self,
        target: Target,
        provider: PaymentProvider,
        refund_reference: str | None,
        amount: Decimal | None = None,
    ) -> Outcome:
        if target.kind == "order":
            refunded = await self.orders.refund(target.id, provider, refund_reference, amount)
        else:
            refunded = await self.contributions.refund(target.id, provider, refund_reference)
        if refunded is None:
            return Outcome("succeeded", f"{target.kind} not refundable from {target.row.get('status')}", target)
        return Outcome("succeeded", f"{target.kind} refunded", Target(target.kind, refunded))

    async def _stripe_session_completed(self, session: dict[str, Any]) -> Outcome:
        reference = session.get("client_reference_id") or _as_dict(session.get("metadata")).get("reference")
        target = await self._resolve(reference, session.get("id"))

        if session.get("payment_status") != "paid":
            return Outcome("pending", "checkout completed without payment", target)
        if str(session.get("currency", "")).upper() != target.currency:
            raise ConflictError("Stripe currency mismatch")
        amount_total = session.get("amount_total")
        if not isinstance(amount_total, int):
            raise ConflictError("Stripe amount is missing")
        ensure_amount_matches(target.amount, amount_total, target.currency)

        transaction_id = session.get("payment_intent") or session["id"]
        return await self._settle(target, PaymentProvider.STRIPE, str(transaction_id), session.get("id"))

    async def _stripe_charge_refunded(self, charge: dict[str, Any]) -> Outcome:
        payment_intent = charge.get("payment_intent")
        if not payment_intent:
            raise NotFoundError("Refunded charge has no payment intent")
        target = await self._resolve_by_transaction(str(payment_intent))

        refunds = _as_dict(charge.get("refunds")).get("data") or []
        latest = refunds[0] if refunds and isinstance(refunds[0], dict) else {}
        refund_id = latest.get("id") or charge.get("id")
        amount_refunded = charge.get("amount_refunded")
        fully_refunded = charge.get("refunded") is True or (
            isinstance(amount_refunded, int) and amount_refunded == charge.get("amount")
        )
        if not fully_refunded:
            # Partial refunds leave the order paid; only the money movement is recorded
            refund_cents = latest.get("amount") if isinstance(latest.get("amount"), int) else amount_refunded
            await self.ledger.record(
                provider=PaymentProvider.STRIPE.value,
                kind="refund",
                status="succeeded",
                order_id=target.id if target.kind == "order" else None,
                contribution_id=target.id if target.kind == "contribution" else None,
                user_id=target.row.get("user_id"),
                provider_reference=refund_id,
                amount=Decimal(refund_cents) / 100 if isinstance(refund_cents, int) else None,
                currency=target.currency,
            )
            return Outcome("succeeded", "partial refund recorded", target)

        amount = Decimal(amount_refunded) / 100 if isinstance(amount_refunded, int) else None
        return await self._refund(target, PaymentProvider.STRIPE, refund_id, amount)

    async def _paypal_capture_completed(self, resource: dict[str, Any]) -> Outcome:
        capture_id = resource.get("id")
        related = _as_dict(_as_dict(resource.get("supplementary_data")).get("related_ids"))
        paypal_order_id = related.get("order_id")
        amount = _as_dict(resource.get("amount"))
        amount_cents = parse_amount_cents(amount.get("value"))
        if not capture_id or not paypal_order_id or amount_cents is None:
            raise ValidationError("Invalid PayPal capture payload")

        target = await self._resolve(resource.get("custom_id"), paypal_order_id)
        if target.row.get("payment_method") != "paypal":
            raise ConflictError(f"{target.kind.capitalize()} payment method must be paypal")
        if resource.get("status") != "COMPLETED":
            raise ConflictError("PayPal payment is not completed")
        if str(amount.get("currency_code", "")).upper() != target.currency:
            raise ConflictError("PayPal currency mismatch")
        ensure_amount_matches(target.amount, amount_cents, target.currency)

        return await self._settle(target, PaymentProvider.PAYPAL, str(capture_id), str(paypal_order_id))

    async def _paypal_capture_refunded(self, resource: dict[str, Any]) -> Outcome:
        related = _as_dict(_as_dict(resource.get("supplementary_data")).get("related_ids"))
        capture_id = related.get("capture_id")
        if not capture_id:
            return Outcome("succeeded", "refund without capture reference")
        target = await self._resolve_by_transaction(str(capture_id))
        amount_cents = parse_amount_cents(_as_dict(resource.get("amount")).get("value"))
        amount = Decimal(amount_cents) / 100 if amount_cents is not None else None
        return await self._refund(target, PaymentProvider.PAYPAL, resource.get("id") or capture_id, amount)

    async def _fedapay_transaction(
        self,
        event_type: str,
        transaction: dict[str, Any],
        fedapay: FedaPayProvider,
    ) -> Outcome:
        transaction_id = transaction.get("id")
        if not transaction_id:
            raise ValidationError("Invalid FedaPay transaction payload")
        metadata = _as_dict(transaction.get("custom_metadata") or transaction.get("metadata"))
        target = await self._resolve(metadata.get("reference"), str(transaction_id))

        status = str(transaction.get("status") or event_type.rsplit(".", 1)[-1])
        if status in FEDAPAY_FAILED:
            return Outcome("failed", f"transaction {status}", target)
        if status not in FEDAPAY_APPROVED:
            return Outcome("pending", f"transaction {status}", target)

        if target.row.get("payment_method") != "mobile_money":
            raise ConflictError(f"{target.kind.capitalize()} payment method must be mobile_money")
        amount = transaction.get("amount")
        if isinstance(amount, int):
            settlement_currency = get_settings().fedapay_currency
            expected = to_minor_units(fedapay.convert(target.amount, target.currency), settlement_currency)
            if amount != expected:
                raise ConflictError("Payment amount mismatch")

        return await self._settle(target, PaymentProvider.FEDAPAY, str(transaction_id), str(transaction_id))

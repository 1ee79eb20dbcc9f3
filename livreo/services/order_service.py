"""Order lifecycle: creation, payment initiation, settlement, cancellation, refund."""

import logging
import secrets
from collections import defaultdict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from urllib.parse import urlencode

from postgrest.exceptions import APIError as PostgrestAPIError

from livreo.api.middleware.error_handler import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from livreo.core.config import get_settings
from livreo.core.supabase import execute, get_supabase_client
from livreo.models import Order, OrderItem, PaymentTransaction
from livreo.services.book_service import BookService
from livreo.services.email_service import EmailService
from livreo.services.loyalty_service import LoyaltyService
from livreo.services.payment_ledger_service import PaymentLedgerService
from livreo.services.payment_providers import (
    PaymentProvider,
    PaypalCapture,
    StripeCheckout,
    get_payment_provider,
    provider_for_method,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
INVOICE_ATTEMPTS = 5
CENT = Decimal("0.01")


def build_invoice_number(now: datetime | None = None) -> str:
    """Invoice numbers look like INV-20240131-0F3A."""
    now = now or datetime.now(timezone.utc)
    return f"INV-{now:%Y%m%d}-{secrets.token_hex(2).upper()}"


def order_return_urls(origin: str, provider: PaymentProvider, order_id: str) -> tuple[str, str]:
    """Success and cancel URLs the provider sends the buyer back to."""
    query = urlencode({"provider": provider.value, "orderId": order_id})
    if provider == PaymentProvider.PAYPAL:
        success_url = f"{origin}/commande/paypal/succes?{urlencode({'orderId': order_id})}"
    elif provider == PaymentProvider.STRIPE:
        success_url = f"{origin}/commande/succes?{query}&session_id={{CHECKOUT_SESSION_ID}}"
    else:
        success_url = f"{origin}/commande/succes?{query}"
    return success_url, f"{origin}/commande/annulee?{query}"


class OrderService:
    """Order state machine.

    Every status change is a conditional update on the expected source
    status, so concurrent requests (a webhook settling while the buyer
    cancels) resolve to exactly one winner. The loser sees an empty
    update result and treats it as a no-op.
    """

    def __init__(
        self,
        ledger: PaymentLedgerService | None = None,
        email_service: EmailService | None = None,
        book_service: BookService | None = None,
        loyalty: LoyaltyService | None = None,
    ) -> None:
        self.client = get_supabase_client()
        self.settings = get_settings()
        self.ledger = ledger or PaymentLedgerService()
        self.email_service = email_service or EmailService()
        self.books = book_service or BookService()
        self.loyalty = loyalty or LoyaltyService()

    async def get_order(self, order_id: str) -> Order | None:
        """Get an order by ID.

        Returns:
            Order | None: The order row or None if not found.
        """
        response = await execute(
            self.client.table("orders").select("*").eq("id", order_id).maybe_single()
        )
        return response.data if response and response.data else None

    async def get_order_for_user(self, order_id: str, user_id: str) -> Order:
        """Get an order owned by user_id.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If another user owns it.
        """
        order = await self.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if order["user_id"] != user_id:
            raise AuthorizationError("Forbidden")
        return order

    async def list_transactions(self, order_id: str, user_id: str) -> list[PaymentTransaction]:
        """Get the payment history of an order owned by user_id, newest first."""
        await self.get_order_for_user(order_id, user_id)
        return await self.ledger.list_for_order(order_id)

    async def list_orders_for_user(self, user_id: str) -> list[Order]:
        """Get all orders of a user, newest first."""
        response = await execute(
            self.client.table("orders")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        return response.data or []

    async def find_by_payment_reference(self, payment_reference: str) -> Order | None:
        """Find the order a provider payment reference was stored on."""
        response = await execute(
            self.client.table("orders")
            .select("*")
            .eq("payment_reference", payment_reference)
            .limit(1)
        )
        return response.data[0] if response.data else None

    async def find_by_transaction_id(self, transaction_id: str) -> Order | None:
        """Find the order settled with a provider transaction (capture/charge) ID."""
        response = await execute(
            self.client.table("orders")
            .select("*")
            .eq("transaction_id", transaction_id)
            .limit(1)
        )
        return response.data[0] if response.data else None

    async def create_order(
        self,
        user_id: str,
        email: str,
        items: list[dict[str, Any]],
        sale_type: str,
        payment_method: str,
        promo_code: str | None = None,
    ) -> Order:
        """Create a pending order priced from the current book prices.

        Args:
            user_id: Owner of the order.
            email: Email the confirmation is sent to.
            items: [{"book_id", "quantity"}] lines.
            sale_type: "direct" or "preorder"; every book must match it.
            payment_method: "stripe", "paypal" or "mobile_money".
            promo_code: Optional promo code, stored as given.

        Returns:
            Order: The created order.

        Raises:
            ValidationError: On empty items or sale type mismatch.
            NotFoundError: If a book does not exist.
            ConflictError: If a book lacks stock.
        """
        if not items:
            raise ValidationError("At least one item is required")
        provider_for_method(payment_method)

        books = await self.books.get_books([item["book_id"] for item in items])

        requested: dict[str, int] = defaultdict(int)
        for item in items:
            requested[item["book_id"]] += int(item["quantity"])

        lines: list[OrderItem] = []
        total = Decimal("0")
        for item in items:
            book = books.get(item["book_id"])
            if not book:
                raise NotFoundError("Book not found")
            if book.get("sale_type") != sale_type:
                raise ValidationError("Book sale type mismatch")
            stock = book.get("stock")
            if stock is None or stock < requested[book["id"]]:
                raise ConflictError("Insufficient stock")

            unit_price = Decimal(str(book["price"]))
            total += unit_price * int(item["quantity"])
            lines.append(
                {
                    "book_id": book["id"],
                    "quantity": int(item["quantity"]),
                    "unit_price": float(unit_price),
                }
            )

        row: dict[str, Any] = {
            "user_id": user_id,
            "email": email,
            "items": lines,
            "total": float(total.quantize(CENT, rounding=ROUND_HALF_UP)),
            "currency": self.settings.payment_currency,
            "status": "pending",
            "sale_type": sale_type,
            "payment_method": payment_method,
            "promo_code": promo_code,
        }

        for attempt in range(1, INVOICE_ATTEMPTS + 1):
            row["invoice_number"] = build_invoice_number()
            try:
                response = await execute(self.client.table("orders").insert(row))
            except PostgrestAPIError as e:
                if e.code == UNIQUE_VIOLATION and attempt < INVOICE_ATTEMPTS:
                    logger.warning("Invoice number collision on %s, retrying", row["invoice_number"])
                    continue
                raise
            order = response.data[0]
            logger.info("Order %s created for user %s (total=%s)", order["id"], user_id, row["total"])
            return order

        raise ConflictError("Could not allocate an invoice number")

    async def initiate_payment(
        self,
        order_id: str,
        user_id: str,
        provider: PaymentProvider | str,
        origin: str,
    ) -> dict[str, str]:
        """Start a provider checkout for a pending order.

        The provider reference is stored (still conditional on `pending`)
        before the redirect target is returned, so a fast webhook can be
        matched to the order.

        Returns:
            dict: {"provider", "order_id", "redirect_url"}.

        Raises:
            NotFoundError, AuthorizationError: Ownership checks.
            ConflictError: Order not pending, wrong provider or non-positive total.
            PaymentProviderError: Provider call failed.
        """
        provider = PaymentProvider(provider)
        order = await self.get_order_for_user(order_id, user_id)

        if order["status"] != "pending":
            raise ConflictError("Only pending orders can be paid")
        if provider_for_method(order["payment_method"]) != provider:
            raise ConflictError(f"Order payment method must be {order['payment_method']}")
        total = Decimal(str(order["total"]))
        if total <= 0:
            raise ConflictError("Invalid order total")

        success_url, cancel_url = order_return_urls(origin, provider, order_id)
        currency = order.get("currency") or self.settings.payment_currency
        handle = await get_payment_provider(provider).create_checkout(
            amount=total,
            currency=currency,
            success_url=success_url,
            cancel_url=cancel_url,
            description=f"Commande {order['invoice_number']}",
            reference=order_id,
        )

        stored = await execute(
            self.client.table("orders")
            .update({"payment_reference": handle.provider_payment_reference})
            .eq("id", order_id)
            .eq("status", "pending")
        )
        if not stored.data:
            raise ConflictError("Order is no longer pending")

        await self.ledger.record(
            provider=provider.value,
            kind="payment",
            status="pending",
            order_id=order_id,
            user_id=user_id,
            provider_reference=handle.provider_payment_reference,
            amount=total,
            currency=currency,
        )
        logger.info("Checkout started for order %s via %s", order_id, provider.value)

        return {
            "provider": provider.value,
            "order_id": order_id,
            "redirect_url": handle.redirect_url,
        }

    async def settle(
        self,
        order_id: str,
        provider: PaymentProvider | str,
        transaction_id: str,
        payment_reference: str | None = None,
    ) -> Order | None:
        """Move a pending order to paid.

        Returns:
            Order | None: The paid order, or None when it was no longer
            pending (duplicate delivery or lost race).
        """
        provider = PaymentProvider(provider)
        update: dict[str, Any] = {
            "status": "paid",
            "transaction_id": transaction_id,
            "paid_at": datetime.now(timezone.utc).isoformat(),
        }
        if payment_reference:
            update["payment_reference"] = payment_reference

        response = await execute(
            self.client.table("orders")
            .update(update)
            .eq("id", order_id)
            .eq("status", "pending")
        )
        if not response.data:
            logger.info("Order %s not settled: no longer pending", order_id)
            return None

        order = response.data[0]
        for item in order.get("items") or []:
            await self.books.adjust_stock(item["book_id"], -int(item["quantity"]))

        await self.ledger.record(
            provider=provider.value,
            kind="payment",
            status="succeeded",
            order_id=order_id,
            user_id=order.get("user_id"),
            provider_reference=transaction_id,
            amount=Decimal(str(order["total"])),
            currency=order.get("currency"),
        )
        logger.info("Order %s paid via %s (transaction %s)", order_id, provider.value, transaction_id)
        await self.loyalty.award(order.get("user_id"), order["total"])
        await self.loyalty.mark_promo_code_used(order.get("promo_code"))

        if order.get("email"):
            await self.email_service.send_order_confirmation(
                to_email=order["email"],
                name=None,
                order_id=order_id,
                invoice_number=order.get("invoice_number", ""),
                total=order["total"],
                currency=order.get("currency") or self.settings.payment_currency,
                sale_type=order.get("sale_type", ""),
            )
        return order

    async def refund(
        self,
        order_id: str,
        provider: PaymentProvider | str,
        refund_reference: str | None = None,
        amount: Decimal | None = None,
    ) -> Order | None:
        """Move a paid order to refunded and put its items back in stock.

        Returns:
            Order | None: The refunded order, or None when it was not paid.
        """
        provider = PaymentProvider(provider)
        response = await execute(
            self.client.table("orders")
            .update({"status": "refunded"})
            .eq("id", order_id)
            .eq("status", "paid")
        )
        if not response.data:
            logger.info("Order %s not refunded: not in paid state", order_id)
            return None

        order = response.data[0]
        for item in order.get("items") or []:
            await self.books.adjust_stock(item["book_id"], int(item["quantity"]))

        await self.ledger.record(
            provider=provider.value,
            kind="refund",
            status="succeeded",
            order_id=order_id,
            user_id=order.get("user_id"),
            provider_reference=refund_reference,
            amount=amount if amount is not None else Decimal(str(order["total"])),
            currency=order.get("currency"),
        )
        await self.loyalty.revoke(order.get("user_id"), order["total"])
        logger.info("Order %s refunded via %s", order_id, provider.value)
        return order

    async def cancel(self, order_id: str, user_id: str) -> Order:
        """Cancel a pending order on behalf of its owner.

        Cancelling an already cancelled order returns it unchanged. If a
        concurrent settlement wins between the check and the update, the
        cancel is a no-op and the order is returned as the winner left it.

        Raises:
            NotFoundError, AuthorizationError: Ownership checks.
            ConflictError: If the order was already paid or not pending on entry.
        """
        order = await self.get_order_for_user(order_id, user_id)
        if order["status"] == "cancelled":
            return order
        if order["status"] == "paid":
            raise ConflictError("Paid order cannot be cancelled")
        if order["status"] != "pending":
            raise ConflictError("Order cannot be cancelled in its current state")

        response = await execute(
            self.client.table("orders")
            .update({"status": "cancelled"})
            .eq("id", order_id)
            .eq("status", "pending")
        )
        if response.data:
            logger.info("Order %s cancelled by user %s", order_id, user_id)
            return response.data[0]

        # Lost the race: whichever transition won stands, report its result
        current = await self.get_order(order_id)
        if not current:
            raise NotFoundError("Order not found")
        logger.info("Cancel of order %s was a no-op: order is %s", order_id, current["status"])
        return current

    async def retry_payment(self, order_id: str, user_id: str, origin: str) -> dict[str, str]:
        """Start a new checkout for a pending order with its stored payment method."""
        order = await self.get_order_for_user(order_id, user_id)
        if order["status"] != "pending":
            raise ConflictError("Only pending orders can be retried")
        provider = provider_for_method(order["payment_method"])
        return await self.initiate_payment(order_id, user_id, provider, origin)

    async def complete_paypal(self, order_id: str, user_id: str, paypal_order_id: str) -> Order:
        """Capture an approved PayPal order and settle the local order.

        Raises:
            ConflictError: If the order cannot be paid or the capture does not match it.
        """
        order = await self.get_order_for_user(order_id, user_id)
        if order["status"] == "paid":
            return order
        if order["status"] != "pending":
            raise ConflictError("Order cannot be paid in its current state")
        if order["payment_method"] != "paypal":
            raise ConflictError("Order payment method must be paypal")
        if order.get("payment_reference") and order["payment_reference"] != paypal_order_id:
            raise ConflictError("PayPal order does not match this order")

        payload = await get_payment_provider(PaymentProvider.PAYPAL).capture(paypal_order_id)
        capture = PaypalCapture.from_payload(payload)
        capture.ensure_matches(
            reference=order_id,
            paypal_order_id=paypal_order_id,
            amount=Decimal(str(order["total"])),
            currency=order.get("currency") or self.settings.payment_currency,
        )

        settled = await self.settle(order_id, PaymentProvider.PAYPAL, capture.capture_id, paypal_order_id)
        if settled:
            return settled

        current = await self.get_order(order_id)
        if current and current["status"] == "paid":
            return current
        raise ConflictError("Order cannot be paid in its current state")

    async def complete_stripe(
        self,
        order_id: str,
        user_id: str,
        session_id: str,
        email: str | None = None,
    ) -> Order:
        """Settle an order when the buyer returns from Stripe Checkout.

        The Checkout Session is read back from Stripe and must pay exactly
        this order. Whichever of this call and the webhook settles first
        wins; the other returns the paid order.

        Raises:
            ConflictError: If the order cannot be paid or the session does not match it.
            PaymentProviderError: If Stripe cannot be reached.
        """
        order = await self.get_order_for_user(order_id, user_id)
        if order["status"] == "paid":
            return order
        if order["status"] != "pending":
            raise ConflictError("Order cannot be paid in its current state")
        if order["payment_method"] != "stripe":
            raise ConflictError("Order payment method must be stripe")
        if order.get("payment_reference") and order["payment_reference"] != session_id:
            raise ConflictError("Stripe session does not match this order")

        payload = await get_payment_provider(PaymentProvider.STRIPE).retrieve_session(session_id)
        checkout = StripeCheckout.from_payload(payload)
        checkout.ensure_matches(
            reference=order_id,
            amount=Decimal(str(order["total"])),
            currency=order.get("currency") or self.settings.payment_currency,
            email=email,
        )

        settled = await self.settle(order_id, PaymentProvider.STRIPE, checkout.transaction_id, session_id)
        if settled:
            return settled

        current = await self.get_order(order_id)
        if current and current["status"] == "paid":
            return current
        raise ConflictError("Order cannot be paid in its current state")

"""Crowdfunding contribution lifecycle."""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from urllib.parse import urlencode

from livreo.api.middleware.error_handler import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from livreo.core.config import get_settings
from livreo.core.supabase import execute, get_supabase_client
from livreo.models import Contribution
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

CONTRIBUTION_REFERENCE_PREFIX = "contribution:"
CENT = Decimal("0.01")


def contribution_reference(contribution_id: str) -> str:
    """Local reference handed to providers for a contribution."""
    return f"{CONTRIBUTION_REFERENCE_PREFIX}{contribution_id}"


def parse_contribution_reference(reference: str | None) -> str | None:
    """Return the contribution ID if reference designates a contribution."""
    if reference and reference.startswith(CONTRIBUTION_REFERENCE_PREFIX):
        return reference[len(CONTRIBUTION_REFERENCE_PREFIX):] or None
    return None


def contribution_return_urls(origin: str, provider: PaymentProvider, contribution_id: str) -> tuple[str, str]:
    """Success and cancel URLs the provider sends the contributor back to."""
    query = urlencode({"provider": provider.value, "contributionId": contribution_id})
    if provider == PaymentProvider.PAYPAL:
        success_url = f"{origin}/contribution/paypal/succes?{urlencode({'contributionId': contribution_id})}"
    elif provider == PaymentProvider.STRIPE:
        success_url = f"{origin}/contribution/succes?{query}&session_id={{CHECKOUT_SESSION_ID}}"
    else:
        success_url = f"{origin}/contribution/succes?{query}"
    cancel_query = urlencode({"reason": "Paiement contribution annulé.", "contributionId": contribution_id})
    return success_url, f"{origin}/commande/echec?{cancel_query}"


class ContributionService:
    """Pledge state machine: pending -> paid -> refunded.

    Transitions are conditional updates; `books.funding_raised` follows
    them through a compare-and-set counter.
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

    async def get_contribution(self, contribution_id: str) -> Contribution | None:
        response = await execute(
            self.client.table("contributions").select("*").eq("id", contribution_id).maybe_single()
        )
        return response.data if response and response.data else None

    async def get_contribution_for_user(self, contribution_id: str, user_id: str) -> Contribution:
        contribution = await self.get_contribution(contribution_id)
        if not contribution:
            raise NotFoundError("Contribution not found")
        if contribution.get("user_id") != user_id:
            raise AuthorizationError("Forbidden")
        return contribution

    async def find_by_payment_reference(self, payment_reference: str) -> Contribution | None:
        response = await execute(
            self.client.table("contributions")
            .select("*")
            .eq("payment_reference", payment_reference)
            .limit(1)
        )
        return response.data[0] if response.data else None

    async def find_by_transaction_id(self, transaction_id: str) -> Contribution | None:
        response = await execute(
            self.client.table("contributions")
            .select("*")
            .eq("transaction_id", transaction_id)
            .limit(1)
        )
        return response.data[0] if response.data else None

    async def list_contributions_for_user(self, user_id: str) -> list[Contribution]:
        """Get a user's contributions, newest first."""
        response = await execute(
            self.client.table("contributions")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        return response.data or []

    async def create_pledge(
        self,
        book_id: str,
        user_id: str,
        amount: Decimal,
        payment_method: str,
        origin: str,
        reward: str | None = None,
        contributor_name: str | None = None,
        is_public: bool = True,
    ) -> dict[str, str]:
        """Create a pending contribution and start its provider checkout.

        Returns:
            dict: {"provider", "contribution_id", "redirect_url"}.

        Raises:
            ValidationError: Non-positive amount or book not in crowdfunding mode.
            NotFoundError: Book not found.
            PaymentProviderError: Provider call failed.
        """
        amount = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise ValidationError("Contribution amount must be positive")
        provider = provider_for_method(payment_method)

        book = await self.books.get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        if book.get("sale_type") != "crowdfunding":
            raise ValidationError("Book is not in crowdfunding mode")

        row: dict[str, Any] = {
            "book_id": book_id,
            "user_id": user_id,
            "amount": float(amount),
            "reward": reward.strip() if reward and reward.strip() else None,
            "contributor_name": contributor_name,
            "is_public": is_public,
            "status": "pending",
            "payment_method": payment_method,
        }
        response = await execute(self.client.table("contributions").insert(row))
        contribution = response.data[0]
        contribution_id = contribution["id"]

        success_url, cancel_url = contribution_return_urls(origin, provider, contribution_id)
        handle = await get_payment_provider(provider).create_checkout(
            amount=amount,
            currency=self.settings.payment_currency,
            success_url=success_url,
            cancel_url=cancel_url,
            description=f"Contribution - {book.get('title', book_id)}",
            reference=contribution_reference(contribution_id),
        )

        await execute(
            self.client.table("contributions")
            .update({"payment_reference": handle.provider_payment_reference})
            .eq("id", contribution_id)
            .eq("status", "pending")
        )
        await self.ledger.record(
            provider=provider.value,
            kind="payment",
            status="pending",
            contribution_id=contribution_id,
            user_id=user_id,
            provider_reference=handle.provider_payment_reference,
            amount=amount,
            currency=self.settings.payment_currency,
        )
        logger.info("Pledge %s of %s on book %s started via %s", contribution_id, amount, book_id, provider.value)

        return {
            "provider": provider.value,
            "contribution_id": contribution_id,
            "redirect_url": handle.redirect_url,
        }

    async def settle(
        self,
        contribution_id: str,
        provider: PaymentProvider | str,
        transaction_id: str,
        payment_reference: str | None = None,
    ) -> Contribution | None:
        """Mark a pending contribution paid and add it to the campaign total.

        Returns:
            Contribution | None: The paid row, or None when it was not pending.
        """
        provider = PaymentProvider(provider)
        update: dict[str, Any] = {"status": "paid", "transaction_id": transaction_id}
        if payment_reference:
            update["payment_reference"] = payment_reference

        response = await execute(
            self.client.table("contributions")
            .update(update)
            .eq("id", contribution_id)
            .eq("status", "pending")
        )
        if not response.data:
            logger.info("Contribution %s not settled: no longer pending", contribution_id)
            return None

        contribution = response.data[0]
        amount = Decimal(str(contribution["amount"]))
        await self.books.adjust_funding_raised(contribution["book_id"], amount)
        await self.ledger.record(
            provider=provider.value,
            kind="payment",
            status="succeeded",
            contribution_id=contribution_id,
            user_id=contribution.get("user_id"),
            provider_reference=transaction_id,
            amount=amount,
            currency=self.settings.payment_currency,
        )
        logger.info("Contribution %s paid via %s", contribution_id, provider.value)
        await self.loyalty.award(contribution.get("user_id"), amount)

        await self._send_confirmation(contribution, amount)
        return contribution

    async def refund(
        self,
        contribution_id: str,
        provider: PaymentProvider | str,
        refund_reference: str | None = None,
    ) -> Contribution | None:
        """Mark a paid contribution refunded and take it off the campaign total."""
        provider = PaymentProvider(provider)
        response = await execute(
            self.client.table("contributions")
            .update({"status": "refunded"})
            .eq("id", contribution_id)
            .eq("status", "paid")
        )
        if not response.data:
            logger.info("Contribution %s not refunded: not in paid state", contribution_id)
            return None

        contribution = response.data[0]
        amount = Decimal(str(contribution["amount"]))
        await self.books.adjust_funding_raised(contribution["book_id"], -amount)
        await self.ledger.record(
            provider=provider.value,
            kind="refund",
            status="succeeded",
            contribution_id=contribution_id,
            user_id=contribution.get("user_id"),
            provider_reference=refund_reference,
            amount=amount,
            currency=self.settings.payment_currency,
        )
        await self.loyalty.revoke(contribution.get("user_id"), amount)
        logger.info("Contribution %s refunded via %s", contribution_id, provider.value)
        return contribution

    async def complete_paypal(self, contribution_id: str, user_id: str, paypal_order_id: str) -> Contribution:
        """Capture an approved PayPal order and settle the contribution."""
        contribution = await self.get_contribution_for_user(contribution_id, user_id)
        if contribution["status"] == "paid":
            return contribution
        if contribution["status"] != "pending":
            raise ConflictError("Contribution cannot be paid in its current state")
        if contribution.get("payment_method") != "paypal":
            raise ConflictError("Contribution payment method must be paypal")
        if contribution.get("payment_reference") and contribution["payment_reference"] != paypal_order_id:
            raise ConflictError("PayPal order does not match this contribution")

        payload = await get_payment_provider(PaymentProvider.PAYPAL).capture(paypal_order_id)
        capture = PaypalCapture.from_payload(payload)
        capture.ensure_matches(
            reference=contribution_reference(contribution_id),
            paypal_order_id=paypal_order_id,
            amount=Decimal(str(contribution["amount"])),
            currency=self.settings.payment_currency,
        )

        settled = await self.settle(contribution_id, PaymentProvider.PAYPAL, capture.capture_id, paypal_order_id)
        if settled:
            return settled

        current = await self.get_contribution(contribution_id)
        if current and current["status"] == "paid":
            return current
        raise ConflictError("Contribution cannot be paid in its current state")

    async def complete_stripe(self, contribution_id: str, user_id: str, session_id: str) -> Contribution:
        """Settle a contribution when the contributor returns from Stripe Checkout."""
        contribution = await self.get_contribution_for_user(contribution_id, user_id)
        if contribution["status"] == "paid":
            return contribution
        if contribution["status"] != "pending":
            raise ConflictError("Contribution cannot be paid in its current state")
        if contribution.get("payment_method") != "stripe":
            raise ConflictError("Contribution payment method must be stripe")
        if contribution.get("payment_reference") and contribution["payment_reference"] != session_id:
            raise ConflictError("Stripe session does not match this contribution")

        payload = await get_payment_provider(PaymentProvider.STRIPE).retrieve_session(session_id)
        checkout = StripeCheckout.from_payload(payload)
        checkout.ensure_matches(
            reference=contribution_reference(contribution_id),
            amount=Decimal(str(contribution["amount"])),
            currency=self.settings.payment_currency,
        )

        settled = await self.settle(contribution_id, PaymentProvider.STRIPE, checkout.transaction_id, session_id)
        if settled:
            return settled

        current = await self.get_contribution(contribution_id)
        if current and current["status"] == "paid":
            return current
        raise ConflictError("Contribution cannot be paid in its current state")

    async def _send_confirmation(self, contribution: Contribution, amount: Decimal) -> None:
        if not contribution.get("user_id"):
            return
        profile = await execute(
            self.client.table("profiles")
            .select("email, display_name")
            .eq("id", contribution["user_id"])
            .maybe_single()
        )
        if not profile or not profile.data or not profile.data.get("email"):
            return
        book = await self.books.get_book(contribution["book_id"])
        await self.email_service.send_contribution_confirmation(
            to_email=profile.data["email"],
            name=contribution.get("contributor_name") or profile.data.get("display_name"),
            book_title=(book or {}).get("title", ""),
            amount=amount,
            currency=self.settings.payment_currency,
        )

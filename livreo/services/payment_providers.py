"""Payment provider adapters for Stripe, PayPal and FedaPay mobile money."""

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping

import httpx
import stripe
from starlette.concurrency import run_in_threadpool

from livreo.api.middleware.error_handler import ConflictError, PaymentProviderError, ValidationError
from livreo.core.config import Settings, get_settings
from livreo.core.stripe import get_stripe

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset({"XOF", "XAF", "JPY"})
SIGNATURE_TOLERANCE_SECONDS = 300

PAYPAL_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
    "paypal-transmission-sig",
)


class PaymentProvider(str, Enum):
    """External payment providers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    FEDAPAY = "fedapay"


METHOD_PROVIDERS: dict[str, PaymentProvider] = {
    "stripe": PaymentProvider.STRIPE,
    "paypal": PaymentProvider.PAYPAL,
    "mobile_money": PaymentProvider.FEDAPAY,
}


def provider_for_method(payment_method: str) -> PaymentProvider:
    """Map an order/contribution payment method to the provider that serves it.

    Raises:
        ValidationError: If the payment method is unknown.
    """
    try:
        return METHOD_PROVIDERS[payment_method]
    except KeyError as e:
        raise ValidationError(f"Unsupported payment method: {payment_method}") from e


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Express an amount in the currency's smallest unit (cents for EUR)."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    """Two-decimal string used by PayPal amount objects."""
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CheckoutHandle:
    """Result of starting a provider checkout.

    The reference must be stored on the order before the user is
    redirected so an early webhook can still be matched.
    """

    provider: PaymentProvider
    provider_payment_reference: str
    redirect_url: str


class PaymentProviderAdapter(ABC):
    """One provider's checkout protocol."""

    provider: PaymentProvider

    @abstractmethod
    async def create_checkout(
        self,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        description: str,
        reference: str,
    ) -> CheckoutHandle:
        """Create a provider-hosted payment for `amount` (major units).

        Args:
            amount: Amount to charge, in major units. Must be > 0.
            currency: ISO currency code the amount is expressed in.
            success_url: Where the provider sends the user after paying.
            cancel_url: Where the provider sends the user on abandon.
            description: Human-readable label shown by the provider.
            reference: Local order reference echoed back in webhooks.

        Returns:
            CheckoutHandle: Opaque provider reference and redirect target.

        Raises:
            PaymentProviderError: If the provider call fails.
        """

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""


class StripeProvider(PaymentProviderAdapter):
    """Hosted Stripe Checkout Sessions through the Stripe SDK."""

    provider = PaymentProvider.STRIPE

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.stripe = get_stripe()

    async def create_checkout(
        self,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        description: str,
        reference: str,
    ) -> CheckoutHandle:
        if not self.settings.stripe_secret_key:
            raise PaymentProviderError("Stripe is not configured")

        params: dict[str, Any] = {
            "mode": "payment",
            "client_reference_id": reference,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": to_minor_units(amount, currency),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {"reference": reference},
        }

        try:
            session = await run_in_threadpool(self.stripe.checkout.Session.create, **params)
        except stripe.error.StripeError as e:
            logger.error("Stripe error creating checkout session: %s", str(e))
            raise PaymentProviderError("Stripe provider error") from e

        if not session.id or not session.url:
            raise PaymentProviderError("Invalid Stripe session response")

        return CheckoutHandle(
            provider=self.provider,
            provider_payment_reference=session.id,
            redirect_url=session.url,
        )

    async def retrieve_session(self, session_id: str) -> dict[str, Any]:
        """Fetch a Checkout Session as a plain dict.

        Raises:
            PaymentProviderError: If Stripe is not configured or the call fails.
        """
        if not self.settings.stripe_secret_key:
            raise PaymentProviderError("Stripe is not configured")
        try:
            session = await run_in_threadpool(self.stripe.checkout.Session.retrieve, session_id)
        except stripe.error.StripeError as e:
            logger.error("Stripe error retrieving checkout session %s: %s", session_id, str(e))
            raise PaymentProviderError("Stripe provider error") from e
        return session.to_dict() if hasattr(session, "to_dict") else dict(session)

    def construct_event(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify the Stripe-Signature header and return the event.

        Raises:
            ValidationError: If the header is missing or the signature is invalid.
            PaymentProviderError: If no webhook secret is configured.
        """
        if not self.settings.stripe_webhook_secret:
            raise PaymentProviderError("Stripe webhook secret is not configured")
        if not sig_header:
            raise ValidationError("Missing Stripe signature")
        try:
            event = self.stripe.Webhook.construct_event(
                payload, sig_header, self.settings.stripe_webhook_secret
            )
        except stripe.error.SignatureVerificationError as e:
            logger.warning("Invalid Stripe webhook signature: %s", str(e))
            raise ValidationError("Invalid Stripe signature") from e
        except ValueError as e:
            raise ValidationError("Invalid Stripe payload") from e
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)


class PayPalProvider(PaymentProviderAdapter):
    """PayPal Orders v2 over the REST API."""

    provider = PaymentProvider.PAYPAL

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.paypal_api_base_url,
                timeout=self.settings.provider_timeout_seconds,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
            raise PaymentProviderError("PayPal is not configured")

        payload = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            authorize=False,
        )
        token = payload.get("access_token")
        if not token:
            raise PaymentProviderError("Invalid PayPal token response")

        # Refresh a minute early
        expires_in = int(payload.get("expires_in", 0))
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(0, expires_in - 60)
        return token

    async def _request(self, method: str, path: str, authorize: bool = True, **kwargs: Any) -> dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if authorize:
            headers["Authorization"] = f"Bearer {await self._get_access_token()}"
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("PayPal request %s %s failed: %s", method, path, str(e))
            raise PaymentProviderError("PayPal provider error") from e

        if response.status_code >= 400:
            logger.error("PayPal %s %s returned %d: %s", method, path, response.status_code, response.text[:500])
            raise PaymentProviderError("PayPal provider error")
        return response.json()

    async def create_checkout(
        self,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        description: str,
        reference: str,
    ) -> CheckoutHandle:
        payload = await self._request(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": reference,
                        "custom_id": reference,
                        "description": description,
                        "amount": {"currency_code": currency.upper(), "value": format_amount(amount)},
                    }
                ],
                "application_context": {
                    "return_url": success_url,
                    "cancel_url": cancel_url,
                    "user_action": "PAY_NOW",
                },
            },
        )

        approval_url = next(
            (link.get("href") for link in payload.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not payload.get("id") or not approval_url:
            raise PaymentProviderError("Invalid PayPal create order response")

        return CheckoutHandle(
            provider=self.provider,
            provider_payment_reference=payload["id"],
            redirect_url=approval_url,
        )

    async def capture(self, paypal_order_id: str) -> dict[str, Any]:
        """Capture an approved PayPal order and return the raw capture payload."""
        return await self._request("POST", f"/v2/checkout/orders/{paypal_order_id}/capture", json={})

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> None:
        """Ask PayPal to verify a webhook delivery.

        Raises:
            ValidationError: If signature headers are missing or PayPal rejects them.
        """
        if not self.settings.paypal_webhook_id:
            raise PaymentProviderError("PayPal webhook ID is not configured")

        values = {name: headers.get(name) for name in PAYPAL_SIGNATURE_HEADERS}
        if not all(values.values()):
            raise ValidationError("Missing PayPal signature headers")

        payload = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "transmission_id": values["paypal-transmission-id"],
                "transmission_time": values["paypal-transmission-time"],
                "cert_url": values["paypal-cert-url"],
                "auth_algo": values["paypal-auth-algo"],
                "transmission_sig": values["paypal-transmission-sig"],
                "webhook_id": self.settings.paypal_webhook_id,
                "webhook_event": event,
            },
        )
        if payload.get("verification_status") != "SUCCESS":
            raise ValidationError("Invalid PayPal signature")


@dataclass(frozen=True)
class PaypalCapture:
    """Fields of a PayPal capture response the settlement checks rely on."""

    status: str
    paypal_order_id: str
    custom_id: str
    currency: str
    amount_cents: int | None
    capture_id: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PaypalCapture":
        units = payload.get("purchase_units") or [{}]
        unit = units[0] if isinstance(units[0], dict) else {}
        amount = unit.get("amount") or {}
        captures = (unit.get("payments") or {}).get("captures") or []
        first_capture = captures[0] if captures else {}
        # Capture responses carry the amount on the capture, not the unit
        if not amount and first_capture:
            amount = first_capture.get("amount") or {}
        return cls(
            status=str(payload.get("status", "")),
            paypal_order_id=str(payload.get("id", "")),
            custom_id=str(unit.get("custom_id") or first_capture.get("custom_id") or ""),
            currency=str(amount.get("currency_code", "")).upper(),
            amount_cents=parse_amount_cents(amount.get("value")),
            capture_id=str(first_capture.get("id", "")),
        )

    def ensure_matches(self, reference: str, paypal_order_id: str, amount: Decimal, currency: str) -> None:
        """Check the capture pays exactly this local record.

        Raises:
            ConflictError: On any status, identity, currency or amount mismatch.
        """
        if self.status != "COMPLETED":
            raise ConflictError("PayPal payment is not completed")
        if self.paypal_order_id and self.paypal_order_id != paypal_order_id:
            raise ConflictError("PayPal order does not match this order")
        if self.custom_id != reference:
            raise ConflictError("PayPal order does not match this order")
        if self.currency != currency.upper():
            raise ConflictError("PayPal currency mismatch")
        if self.amount_cents is None:
            raise ConflictError("PayPal amount is missing")
        if not self.capture_id:
            raise ConflictError("PayPal capture ID is missing")
        ensure_amount_matches(amount, self.amount_cents, currency)


@dataclass(frozen=True)
class StripeCheckout:
    """Fields of a retrieved Checkout Session the settlement checks rely on."""

    session_id: str
    reference: str
    status: str
    payment_status: str
    currency: str
    amount_total: int | None
    customer_email: str
    payment_intent: str | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StripeCheckout":
        metadata = payload.get("metadata") or {}
        amount_total = payload.get("amount_total")
        payment_intent = payload.get("payment_intent")
        # Expanded sessions carry the PaymentIntent object instead of its id
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return cls(
            session_id=str(payload.get("id", "")),
            reference=str(payload.get("client_reference_id") or metadata.get("reference") or ""),
            status=str(payload.get("status") or ""),
            payment_status=str(payload.get("payment_status") or ""),
            currency=str(payload.get("currency") or "").upper(),
            amount_total=amount_total if isinstance(amount_total, int) and not isinstance(amount_total, bool) else None,
            customer_email=str(payload.get("customer_email") or "").lower(),
            payment_intent=str(payment_intent) if payment_intent else None,
        )

    @property
    def transaction_id(self) -> str:
        return self.payment_intent or self.session_id

    def ensure_matches(self, reference: str, amount: Decimal, currency: str, email: str | None = None) -> None:
        """Check the session paid exactly this local record.

        Raises:
            ConflictError: On any identity, status, currency, amount or customer mismatch.
        """
        if self.reference != reference:
            raise ConflictError("Stripe session does not match this payment")
        if self.status != "complete":
            raise ConflictError("Stripe checkout is not complete")
        if self.payment_status != "paid":
            raise ConflictError("Stripe payment is not completed")
        if self.currency != currency.upper():
            raise ConflictError("Stripe currency mismatch")
        if self.amount_total is None:
            raise ConflictError("Stripe amount is missing")
        ensure_amount_matches(amount, self.amount_total, currency)
        if self.customer_email and email and self.customer_email != email.lower():
            raise ConflictError("Stripe customer mismatch")


def ensure_amount_matches(expected: Decimal, provider_minor_units: int, currency: str) -> None:
    """Raise ConflictError unless the provider charged exactly the expected amount."""
    if provider_minor_units != to_minor_units(expected, currency):
        raise ConflictError("Payment amount mismatch")


def parse_amount_cents(value: Any) -> int | None:
    """Parse a provider decimal amount string into cents, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return to_minor_units(Decimal(str(value)), "EUR")
    except ArithmeticError:
        return None


class FedaPayProvider(PaymentProviderAdapter):
    """FedaPay mobile money transactions over the REST API."""

    provider = PaymentProvider.FEDAPAY

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.fedapay_api_base_url,
                timeout=self.settings.provider_timeout_seconds,
                headers={"Authorization": f"Bearer {self.settings.fedapay_secret_key}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def convert(self, amount: Decimal, currency: str) -> Decimal:
        """Convert an order amount into the FedaPay settlement currency."""
        target = self.settings.fedapay_currency.upper()
        if currency.upper() == target:
            return amount
        if currency.upper() == "EUR" and target == "XOF":
            return amount * self.settings.xof_per_eur
        raise ValidationError(f"Mobile money payments cannot be made in {currency}")

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(path, json=body)
        except httpx.HTTPError as e:
            logger.error("FedaPay request %s failed: %s", path, str(e))
            raise PaymentProviderError("FedaPay provider error") from e
        if response.status_code >= 400:
            logger.error("FedaPay %s returned %d: %s", path, response.status_code, response.text[:500])
            raise PaymentProviderError("FedaPay provider error")
        return response.json()

    async def create_checkout(
        self,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        description: str,
        reference: str,
    ) -> CheckoutHandle:
        if not self.settings.fedapay_secret_key:
            raise PaymentProviderError("FedaPay is not configured")

        settlement_currency = self.settings.fedapay_currency.upper()
        payload = await self._post(
            "/v1/transactions",
            {
                "description": description,
                "amount": to_minor_units(self.convert(amount, currency), settlement_currency),
                "currency": {"iso": settlement_currency},
                "callback_url": success_url,
                "custom_metadata": {"reference": reference},
            },
        )
        transaction = payload.get("v1/transaction") or payload.get("transaction") or payload
        transaction_id = transaction.get("id")
        if not transaction_id:
            raise PaymentProviderError("Invalid FedaPay transaction response")

        token_payload = await self._post(f"/v1/transactions/{transaction_id}/token", {})
        payment_url = token_payload.get("url")
        if not payment_url:
            raise PaymentProviderError("Invalid FedaPay token response")

        return CheckoutHandle(
            provider=self.provider,
            provider_payment_reference=str(transaction_id),
            redirect_url=payment_url,
        )

    def verify_webhook_signature(self, raw_body: bytes, header: str | None, now: int | None = None) -> None:
        """Check an `X-FEDAPAY-SIGNATURE: t=<ts>,s=<hex>` header.

        Raises:
            ValidationError: If the header is missing, malformed, stale or wrong.
        """
        secret = self.settings.fedapay_webhook_secret
        if not secret:
            raise PaymentProviderError("FedaPay webhook secret is not configured")
        if not header:
            raise ValidationError("Missing FedaPay signature")

        parts: dict[str, str] = {}
        for part in header.split(","):
            key, _, value = part.partition("=")
            if key.strip() and value.strip():
                parts[key.strip()] = value.strip()
        timestamp = parts.get("t")
        signature = parts.get("s")
        if not timestamp or not signature or not timestamp.isdigit():
            raise ValidationError("Invalid FedaPay signature header")

        signed_payload = timestamp.encode() + b"." + raw_body
        expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise ValidationError("Invalid FedaPay signature")

        current = int(time.time()) if now is None else now
        if abs(current - int(timestamp)) > SIGNATURE_TOLERANCE_SECONDS:
            raise ValidationError("Expired FedaPay signature")


_providers: dict[PaymentProvider, PaymentProviderAdapter] = {}

PROVIDER_CLASSES: dict[PaymentProvider, type[PaymentProviderAdapter]] = {
    PaymentProvider.STRIPE: StripeProvider,
    PaymentProvider.PAYPAL: PayPalProvider,
    PaymentProvider.FEDAPAY: FedaPayProvider,
}


def get_payment_provider(provider: PaymentProvider | str) -> PaymentProviderAdapter:
    """Get the shared adapter for a provider."""
    provider = PaymentProvider(provider)
    if provider not in _providers:
        _providers[provider] = PROVIDER_CLASSES[provider]()
    return _providers[provider]


async def close_payment_providers() -> None:
    """Close provider HTTP clients. Call at app shutdown."""
    for adapter in list(_providers.values()):
        await adapter.aclose()
    _providers.clear()

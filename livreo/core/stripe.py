"""Stripe SDK setup shared by the card payment adapter."""

import logging

import stripe

from livreo.core.config import get_settings

logger = logging.getLogger(__name__)

STRIPE_NETWORK_RETRIES = 2


def stripe_mode(secret_key: str) -> str:
    """Return "live" or "test" from the key prefix."""
    return "live" if secret_key.startswith(("sk_live_", "rk_live_")) else "test"


def configure_stripe() -> None:
    """Set the module-level Stripe key once at startup.

    Without a key, card checkout and Stripe webhooks fail at call time
    with a payment provider error instead of at boot.
    """
    settings = get_settings()
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set; card payments are disabled")
        return

    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = STRIPE_NETWORK_RETRIES
    stripe.set_app_info("livreo-backend")

    mode = stripe_mode(settings.stripe_secret_key)
    if settings.is_production and mode != "live":
        logger.warning("Stripe is configured with a test key in production")
    logger.info("Stripe configured (%s mode)", mode)


def get_stripe() -> stripe:
    """Stripe keeps its configuration on the module, so hand that out."""
    return stripe

"""Email service using Resend for transactional emails."""

import logging
from decimal import Decimal
from typing import Any

import resend
from starlette.concurrency import run_in_threadpool

from livreo.core.config import get_settings

logger = logging.getLogger(__name__)

SALE_TYPE_LABELS = {
    "direct": "Achat direct",
    "preorder": "Précommande",
}


class EmailService:
    """Service for sending payment confirmation emails via Resend.

    Sending is best effort: a failed email is logged and reported in the
    return value, never raised into the payment flow.
    """

    def __init__(self) -> None:
        """Initialize email service with Resend API key."""
        settings = get_settings()
        resend.api_key = settings.resend_api_key
        self.enabled = bool(settings.resend_api_key)
        self.from_email = settings.email_from_address
        self.base_url = settings.app_base_url

    async def _send(self, to_email: str, subject: str, html: str, text: str) -> dict[str, Any]:
        if not self.enabled:
            logger.info("Email disabled (no RESEND_API_KEY); skipping '%s' to %s", subject, to_email)
            return {"success": False, "error": "email disabled"}

        try:
            response = await run_in_threadpool(
                resend.Emails.send,
                {
                    "from": self.from_email,
                    "to": [to_email],
                    "subject": subject,
                    "html": html,
                    "text": text,
                },
            )
            logger.info("Email '%s' sent to %s, id: %s", subject, to_email, response.get("id"))
            return {"success": True, "email_id": response.get("id")}

        except Exception as e:
            logger.error("Failed to send email '%s' to %s: %s", subject, to_email, str(e))
            return {"success": False, "error": str(e)}

    async def send_order_confirmation(
        self,
        to_email: str,
        name: str | None,
        order_id: str,
        invoice_number: str,
        total: Decimal | float,
        currency: str,
        sale_type: str,
    ) -> dict[str, Any]:
        """Send the confirmation for a paid order.

        Args:
            to_email: Buyer email address.
            name: Buyer display name.
            order_id: Order ID for the order link.
            invoice_number: Invoice number shown in the subject.
            total: Amount paid.
            currency: Currency code.
            sale_type: "direct" or "preorder".

        Returns:
            dict: success flag and email id or error.
        """
        greeting = name or "Client"
        label = SALE_TYPE_LABELS.get(sale_type, sale_type)
        order_url = f"{self.base_url}/mes-achats?order={order_id}"
        amount = f"{Decimal(str(total)):.2f} {currency}"

        html_content = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="font-size: 22px;">Merci pour votre commande</h1>
    <p>Bonjour {greeting},</p>
    <p>Votre paiement de <strong>{amount}</strong> pour la commande <strong>{invoice_number}</strong> ({label}) a bien été reçu.</p>
    <p><a href="{order_url}">Voir ma commande</a></p>
</body>
</html>
"""

        text_content = f"""
Bonjour {greeting},

Votre paiement de {amount} pour la commande {invoice_number} ({label}) a bien été reçu.

Voir ma commande : {order_url}
"""

        return await self._send(
            to_email,
            f"Confirmation de commande {invoice_number}",
            html_content,
            text_content,
        )

    async def send_contribution_confirmation(
        self,
        to_email: str,
        name: str | None,
        book_title: str,
        amount: Decimal | float,
        currency: str,
    ) -> dict[str, Any]:
        """Thank a contributor once their pledge is paid."""
        greeting = name or "Contributeur"
        formatted = f"{Decimal(str(amount)):.2f} {currency}"

        html_content = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="font-size: 22px;">Merci pour votre soutien</h1>
    <p>Bonjour {greeting},</p>
    <p>Votre contribution de <strong>{formatted}</strong> à <strong>{book_title}</strong> a bien été reçue.</p>
    <p><a href="{self.base_url}/mes-contributions">Voir mes contributions</a></p>
</body>
</html>
"""

        text_content = f"""
Bonjour {greeting},

Votre contribution de {formatted} à {book_title} a bien été reçue.

Voir mes contributions : {self.base_url}/mes-contributions
"""

        return await self._send(
            to_email,
            f"Merci pour votre contribution à {book_title}",
            html_content,
            text_content,
        )

"""Unit tests for crowdfunding contributions."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from livreo.api.middleware.error_handler import ConflictError, NotFoundError, ValidationError
from livreo.services.contribution_service import (
    ContributionService,
    contribution_reference,
    contribution_return_urls,
    parse_contribution_reference,
)
from livreo.services.payment_providers import CheckoutHandle, PaymentProvider

ORIGIN = "https://livreo.test"


@pytest.fixture
def provider_adapter():
    adapter = MagicMock()
    adapter.create_checkout = AsyncMock(
        return_value=CheckoutHandle(
            provider=PaymentProvider.STRIPE,
            provider_payment_reference="cs_test_1",
            redirect_url="https://checkout.stripe.com/c/pay/cs_test_1",
        )
    )
    with patch("livreo.services.contribution_service.get_payment_provider", return_value=adapter):
        yield adapter


@pytest.fixture
def service(fake_db, mock_email_service) -> ContributionService:
    return ContributionService(email_service=mock_email_service)


def seed_contribution(fake_db, book: dict, **overrides) -> dict:
    row = {
        "book_id": book["id"],
        "user_id": "user-1",
        "amount": 30.0,
        "status": "pending",
        "payment_method": "stripe",
        "is_public": True,
        "contributor_name": "Ama",
        "reward": None,
        "payment_reference": None,
        "transaction_id": None,
    }
    row.update(overrides)
    return fake_db.seed("contributions", [row])[0]


class TestReferences:
    """Tests for the local contribution reference helpers."""

    def test_roundtrip(self) -> None:
        assert parse_contribution_reference(contribution_reference("c-1")) == "c-1"

    @pytest.mark.parametrize("reference", [None, "", "order-id", "contribution:"])
    def test_non_contribution_references(self, reference) -> None:
        assert parse_contribution_reference(reference) is None

    def test_return_urls(self) -> None:
        success, cancel = contribution_return_urls(ORIGIN, PaymentProvider.PAYPAL, "c-1")

        assert success == f"{ORIGIN}/contribution/paypal/succes?contributionId=c-1"
        assert cancel.startswith(f"{ORIGIN}/commande/echec?")
        assert "contributionId=c-1" in cancel


class TestCreatePledge:
    """Tests for ContributionService.create_pledge."""

    @pytest.mark.asyncio
    async def test_creates_pending_contribution_and_checkout(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        campaign = seed_books["campaign"]

        result = await service.create_pledge(
            book_id=campaign["id"],
            user_id="user-1",
            amount=Decimal("30"),
            payment_method="stripe",
            origin=ORIGIN,
            reward="  Exemplaire dédicacé ",
            contributor_name="Ama",
        )

        assert result["provider"] == "stripe"
        assert result["redirect_url"] == "https://checkout.stripe.com/c/pay/cs_test_1"

        stored = fake_db.get("contributions", result["contribution_id"])
        assert stored["status"] == "pending"
        assert stored["amount"] == 30.0
        assert stored["reward"] == "Exemplaire dédicacé"
        assert stored["payment_reference"] == "cs_test_1"

        kwargs = provider_adapter.create_checkout.await_args.kwargs
        assert kwargs["reference"] == f"contribution:{result['contribution_id']}"
        assert kwargs["amount"] == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_blank_reward_is_dropped(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        result = await service.create_pledge(
            seed_books["campaign"]["id"], "user-1", Decimal("5"), "stripe", ORIGIN, reward="   "
        )

        assert fake_db.get("contributions", result["contribution_id"])["reward"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("0.001")])
    async def test_non_positive_amount(
        self, service: ContributionService, seed_books, provider_adapter, amount: Decimal
    ) -> None:
        with pytest.raises(ValidationError):
            await service.create_pledge(seed_books["campaign"]["id"], "user-1", amount, "stripe", ORIGIN)

    @pytest.mark.asyncio
    async def test_book_must_be_crowdfunding(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        with pytest.raises(ValidationError):
            await service.create_pledge(seed_books["direct"]["id"], "user-1", Decimal("10"), "stripe", ORIGIN)

        assert fake_db.rows("contributions") == []

    @pytest.mark.asyncio
    async def test_missing_book(self, service: ContributionService, fake_db, provider_adapter) -> None:
        with pytest.raises(NotFoundError):
            await service.create_pledge("missing", "user-1", Decimal("10"), "stripe", ORIGIN)


class TestSettleAndRefund:
    """Tests for contribution settlement and refunds."""

    @pytest.mark.asyncio
    async def test_settle_adds_to_funding_raised_once(
        self, service: ContributionService, seed_books, fake_db
    ) -> None:
        campaign = seed_books["campaign"]
        contribution = seed_contribution(fake_db, campaign)

        settled = await service.settle(contribution["id"], "stripe", "pi_1", "cs_1")
        again = await service.settle(contribution["id"], "stripe", "pi_1")

        assert settled["status"] == "paid"
        assert again is None
        assert fake_db.get("books", campaign["id"])["funding_raised"] == 30.0

    @pytest.mark.asyncio
    async def test_settle_emails_contributor_profile(
        self, service: ContributionService, seed_books, fake_db, mock_email_service
    ) -> None:
        fake_db.seed("profiles", [{"id": "user-1", "email": "ama@example.com", "display_name": "Ama K."}])
        contribution = seed_contribution(fake_db, seed_books["campaign"], contributor_name=None)

        await service.settle(contribution["id"], "stripe", "pi_1")

        kwargs = mock_email_service.send_contribution_confirmation.await_args.kwargs
        assert kwargs["to_email"] == "ama@example.com"
        assert kwargs["name"] == "Ama K."
        assert kwargs["book_title"] == "Contes d'Abomey"
        assert kwargs["amount"] == Decimal("30.0")

    @pytest.mark.asyncio
    async def test_refund_takes_amount_back(self, service: ContributionService, seed_books, fake_db) -> None:
        campaign = seed_books["campaign"]
        fake_db.get("books", campaign["id"])["funding_raised"] = 30.0
        contribution = seed_contribution(fake_db, campaign, status="paid")

        refunded = await service.refund(contribution["id"], "stripe", "re_1")

        assert refunded["status"] == "refunded"
        assert fake_db.get("books", campaign["id"])["funding_raised"] == 0.0
        assert await service.refund(contribution["id"], "stripe", "re_1") is None

    @pytest.mark.asyncio
    async def test_funding_raised_starts_from_null(self, service: ContributionService, seed_books, fake_db) -> None:
        campaign = seed_books["campaign"]
        fake_db.get("books", campaign["id"])["funding_raised"] = None
        contribution = seed_contribution(fake_db, campaign, amount=12.5)

        await service.settle(contribution["id"], "paypal", "CAPTURE-1")

        assert fake_db.get("books", campaign["id"])["funding_raised"] == 12.5

    @pytest.mark.asyncio
    async def test_reward_points_follow_settle_and_refund(
        self, service: ContributionService, seed_books, fake_db
    ) -> None:
        fake_db.seed("profiles", [{"id": "user-1", "email": "ama@example.com", "reward_points": 2}])
        contribution = seed_contribution(fake_db, seed_books["campaign"], amount=30.75)

        await service.settle(contribution["id"], "stripe", "pi_1")
        assert fake_db.get("profiles", "user-1")["reward_points"] == 32

        await service.refund(contribution["id"], "stripe", "re_1")
        assert fake_db.get("profiles", "user-1")["reward_points"] == 2

    @pytest.mark.asyncio
    async def test_anonymous_contribution_earns_nothing(
        self, service: ContributionService, seed_books, fake_db
    ) -> None:
        contribution = seed_contribution(fake_db, seed_books["campaign"], user_id=None)

        settled = await service.settle(contribution["id"], "stripe", "pi_1")

        assert settled["status"] == "paid"
        assert fake_db.rows("profiles") == []


class TestCompletePaypal:
    """Tests for ContributionService.complete_paypal."""

    @pytest.mark.asyncio
    async def test_capture_must_reference_contribution(
        self, service: ContributionService, seed_books, fake_db
    ) -> None:
        contribution = seed_contribution(
            fake_db, seed_books["campaign"], payment_method="paypal", payment_reference="PP-1"
        )
        adapter = MagicMock()
        adapter.capture = AsyncMock(
            return_value={
                "id": "PP-1",
                "status": "COMPLETED",
                "purchase_units": [
                    {
                        "custom_id": "some-order-id",
                        "payments": {
                            "captures": [{"id": "CAP-1", "amount": {"currency_code": "EUR", "value": "30.00"}}]
                        },
                    }
                ],
            }
        )

        with patch("livreo.services.contribution_service.get_payment_provider", return_value=adapter):
            with pytest.raises(ConflictError):
                await service.complete_paypal(contribution["id"], "user-1", "PP-1")

        assert fake_db.get("contributions", contribution["id"])["status"] == "pending"

    @pytest.mark.asyncio
    async def test_captures_and_settles(self, service: ContributionService, seed_books, fake_db) -> None:
        contribution = seed_contribution(
            fake_db, seed_books["campaign"], payment_method="paypal", payment_reference="PP-1"
        )
        adapter = MagicMock()
        adapter.capture = AsyncMock(
            return_value={
                "id": "PP-1",
                "status": "COMPLETED",
                "purchase_units": [
                    {
                        "custom_id": f"contribution:{contribution['id']}",
                        "payments": {
                            "captures": [{"id": "CAP-1", "amount": {"currency_code": "EUR", "value": "30.00"}}]
                        },
                    }
                ],
            }
        )

        with patch("livreo.services.contribution_service.get_payment_provider", return_value=adapter):
            result = await service.complete_paypal(contribution["id"], "user-1", "PP-1")

        assert result["status"] == "paid"
        assert result["transaction_id"] == "CAP-1"


class TestCompleteStripe:
    """Tests for ContributionService.complete_stripe."""

    def session_payload(self, reference: str, **overrides) -> dict:
        payload = {
            "id": "cs_test_1",
            "client_reference_id": reference,
            "status": "complete",
            "payment_status": "paid",
            "currency": "eur",
            "amount_total": 3000,
            "payment_intent": {"id": "pi_1", "object": "payment_intent"},
        }
        payload.update(overrides)
        return payload

    @pytest.mark.asyncio
    async def test_retrieves_session_and_settles(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        campaign = seed_books["campaign"]
        contribution = seed_contribution(fake_db, campaign, payment_reference="cs_test_1")
        provider_adapter.retrieve_session = AsyncMock(
            return_value=self.session_payload(contribution_reference(contribution["id"]))
        )

        result = await service.complete_stripe(contribution["id"], "user-1", "cs_test_1")

        assert result["status"] == "paid"
        assert result["transaction_id"] == "pi_1"
        assert fake_db.get("books", campaign["id"])["funding_raised"] == 30.0
        provider_adapter.retrieve_session.assert_awaited_once_with("cs_test_1")

    @pytest.mark.asyncio
    async def test_session_must_reference_contribution(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        contribution = seed_contribution(fake_db, seed_books["campaign"], payment_reference="cs_test_1")
        provider_adapter.retrieve_session = AsyncMock(return_value=self.session_payload(contribution["id"]))

        with pytest.raises(ConflictError):
            await service.complete_stripe(contribution["id"], "user-1", "cs_test_1")

        assert fake_db.get("contributions", contribution["id"])["status"] == "pending"

    @pytest.mark.asyncio
    async def test_amount_mismatch_leaves_contribution_pending(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        contribution = seed_contribution(fake_db, seed_books["campaign"], payment_reference="cs_test_1")
        provider_adapter.retrieve_session = AsyncMock(
            return_value=self.session_payload(contribution_reference(contribution["id"]), amount_total=2999)
        )

        with pytest.raises(ConflictError) as exc_info:
            await service.complete_stripe(contribution["id"], "user-1", "cs_test_1")

        assert exc_info.value.message == "Payment amount mismatch"
        assert fake_db.get("contributions", contribution["id"])["status"] == "pending"

    @pytest.mark.asyncio
    async def test_paypal_contribution_rejected(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        contribution = seed_contribution(fake_db, seed_books["campaign"], payment_method="paypal")
        provider_adapter.retrieve_session = AsyncMock()

        with pytest.raises(ConflictError) as exc_info:
            await service.complete_stripe(contribution["id"], "user-1", "cs_test_1")

        assert exc_info.value.message == "Contribution payment method must be stripe"
        provider_adapter.retrieve_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_paid_returns_contribution(
        self, service: ContributionService, seed_books, fake_db, provider_adapter
    ) -> None:
        contribution = seed_contribution(fake_db, seed_books["campaign"], status="paid")
        provider_adapter.retrieve_session = AsyncMock()

        result = await service.complete_stripe(contribution["id"], "user-1", "cs_test_1")

        assert result["status"] == "paid"
        provider_adapter.retrieve_session.assert_not_awaited()


class TestListContributions:
    """Tests for ContributionService.list_contributions_for_user."""

    @pytest.mark.asyncio
    async def test_listing_is_scoped_to_user(self, service: ContributionService, seed_books, fake_db) -> None:
        mine = seed_contribution(fake_db, seed_books["campaign"])
        seed_contribution(fake_db, seed_books["campaign"], user_id="user-2")

        rows = await service.list_contributions_for_user("user-1")

        assert [row["id"] for row in rows] == [mine["id"]]

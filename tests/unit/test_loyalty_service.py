"""Unit tests for reward points and promo code usage."""

from decimal import Decimal

import pytest

from livreo.services.loyalty_service import LoyaltyService, reward_points_for


class TestRewardPointsFor:
    """Tests for the points earned by a payment."""

    @pytest.mark.parametrize(
        ("amount", "points"),
        [(Decimal("25.99"), 25), (30, 30), ("0.50", 1), (Decimal("0"), 1), (1.999, 1)],
    )
    def test_whole_units_with_a_floor_of_one(self, amount, points: int) -> None:
        assert reward_points_for(amount) == points


class TestLoyaltyService:
    """Tests for LoyaltyService."""

    @pytest.mark.asyncio
    async def test_award_and_revoke(self, fake_db) -> None:
        fake_db.seed("profiles", [{"id": "user-1", "reward_points": 4}])
        loyalty = LoyaltyService()

        assert await loyalty.award("user-1", Decimal("12.40")) == 16
        assert await loyalty.revoke("user-1", Decimal("12.40")) == 4
        assert fake_db.get("profiles", "user-1")["reward_points"] == 4

    @pytest.mark.asyncio
    async def test_revoke_clamps_at_zero(self, fake_db) -> None:
        fake_db.seed("profiles", [{"id": "user-1", "reward_points": 3}])

        assert await LoyaltyService().revoke("user-1", 50) == 0

    @pytest.mark.asyncio
    async def test_award_retries_after_concurrent_write(self, fake_db) -> None:
        fake_db.seed("profiles", [{"id": "user-1", "reward_points": 10}])
        raced = []

        def concurrent_award(query) -> None:
            if query.table == "profiles" and query.action == "update" and not raced:
                raced.append(True)
                fake_db.get("profiles", "user-1")["reward_points"] = 15

        fake_db.hooks.append(concurrent_award)

        assert await LoyaltyService().award("user-1", 5) == 20
        assert fake_db.get("profiles", "user-1")["reward_points"] == 20

    @pytest.mark.asyncio
    async def test_missing_user_or_profile(self, fake_db) -> None:
        loyalty = LoyaltyService()

        assert await loyalty.award(None, 10) is None
        assert await loyalty.award("ghost", 10) is None

    @pytest.mark.asyncio
    async def test_promo_code_matched_in_upper_case(self, fake_db) -> None:
        fake_db.seed("promo_codes", [{"code": "LIRE10", "used_count": 0}])
        loyalty = LoyaltyService()

        assert await loyalty.mark_promo_code_used(" lire10 ") == 1
        assert await loyalty.mark_promo_code_used("LIRE10") == 2
        assert fake_db.rows("promo_codes", code="LIRE10")[0]["used_count"] == 2

    @pytest.mark.asyncio
    async def test_unknown_or_blank_promo_code(self, fake_db) -> None:
        loyalty = LoyaltyService()

        assert await loyalty.mark_promo_code_used("NOPE") is None
        assert await loyalty.mark_promo_code_used("   ") is None
        assert await loyalty.mark_promo_code_used(None) is None

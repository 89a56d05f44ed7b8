"""Tests for entitlement calculation."""

import pytest

from bookclub.entitlements.calculator import EntitlementCalculator
from bookclub.entitlements.catalog import (
    CLUB_LEAD_ENTITLEMENTS,
    CLUB_MODERATOR_ENTITLEMENTS,
    MEMBER_ENTITLEMENTS,
    PLATFORM_OWNER_ENTITLEMENTS,
    PRIVILEGED_ENTITLEMENTS,
    PRIVILEGED_PLUS_ENTITLEMENTS,
    STORE_MANAGER_ENTITLEMENTS,
    STORE_OWNER_ENTITLEMENTS,
    Role,
)
from bookclub.platform.errors import ValidationError
from bookclub.platform.feature_flags import FeatureFlag


@pytest.fixture
def calculator(store, flags, subscriptions):
    return EntitlementCalculator(store, flags=flags, subscriptions=subscriptions)


# ============================================================================
# TEST SUITE: MEMBERSHIP TIERS
# ============================================================================

class TestTierEntitlements:
    @pytest.mark.asyncio
    async def test_unknown_user_gets_member_set(self, calculator):
        assert await calculator.calculate("nobody") == list(MEMBER_ENTITLEMENTS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier,expected", [
        ("MEMBER", MEMBER_ENTITLEMENTS),
        ("PRIVILEGED", PRIVILEGED_ENTITLEMENTS),
        ("PRIVILEGED_PLUS", PRIVILEGED_PLUS_ENTITLEMENTS),
        ("privileged_plus", PRIVILEGED_PLUS_ENTITLEMENTS),
    ])
    async def test_tier_set(self, calculator, seed_user, tier, expected):
        seed_user("u1", tier)
        assert set(await calculator.calculate("u1")) == set(expected)

    @pytest.mark.asyncio
    async def test_invalid_stored_tier_is_member(self, calculator, seed_user):
        seed_user("u1", "GOLD")
        assert await calculator.calculate("u1") == list(MEMBER_ENTITLEMENTS)

    @pytest.mark.asyncio
    async def test_no_duplicates(self, calculator, seed_user, seed_clubs):
        seed_user("u1", "PRIVILEGED_PLUS")
        seed_clubs("u1", 2)
        result = await calculator.calculate("u1")
        assert len(result) == len(set(result))

    @pytest.mark.asyncio
    async def test_idempotent(self, calculator, seed_user, seed_clubs):
        seed_user("u1", "PRIVILEGED")
        seed_clubs("u1", 1)
        assert await calculator.calculate("u1") == await calculator.calculate("u1")

    @pytest.mark.asyncio
    async def test_tier_upgrade_reflected_on_next_calculation(self, calculator, store, seed_user):
        seed_user("u1", "MEMBER")
        before = await calculator.calculate("u1")
        store.tables["users"][0]["membership_tier"] = "PRIVILEGED"
        after = await calculator.calculate("u1")

        assert "CAN_CREATE_LIMITED_CLUBS" not in before
        assert "CAN_CREATE_LIMITED_CLUBS" in after


class TestPlatformOwner:
    @pytest.mark.asyncio
    async def test_owner_gets_platform_set_only(self, calculator, store, seed_user, platform_owner, seed_clubs):
        seed_user("owner", "MEMBER")
        platform_owner("owner")
        seed_clubs("owner", 1)

        result = await calculator.calculate("owner")

        assert set(result) == set(PLATFORM_OWNER_ENTITLEMENTS)
        assert not any(token.startswith("CLUB_LEAD_") for token in result)
        assert store.calls_to("book_clubs") == 0


# ============================================================================
# TEST SUITE: POSITIONS
# ============================================================================

class TestPositions:
    @pytest.mark.asyncio
    async def test_store_owner(self, calculator, store, seed_user):
        seed_user("u1")
        store.seed("store_administrators", {"store_id": "s1", "user_id": "u1", "role": "owner"})

        result = await calculator.calculate("u1")

        assert "STORE_OWNER_s1" in result
        assert set(STORE_OWNER_ENTITLEMENTS) <= set(result)

    @pytest.mark.asyncio
    async def test_store_manager(self, calculator, store, seed_user):
        seed_user("u1")
        store.seed("store_administrators", {"store_id": "s2", "user_id": "u1", "role": "manager"})

        result = await calculator.calculate("u1")

        assert "STORE_MANAGER_s2" in result
        assert set(STORE_MANAGER_ENTITLEMENTS) <= set(result)
        assert "CAN_MANAGE_STORE_SETTINGS" not in result

    @pytest.mark.asyncio
    async def test_club_lead_and_moderator_without_enforcement(self, calculator, store, seed_user, seed_clubs):
        seed_user("u1")
        seed_clubs("u1", 1)
        store.seed("club_moderators", {"club_id": "other", "user_id": "u1"})

        result = await calculator.calculate("u1")

        assert "CLUB_LEAD_club-u1-0" in result
        assert "CLUB_MODERATOR_other" in result
        assert set(CLUB_LEAD_ENTITLEMENTS) <= set(result)

    @pytest.mark.asyncio
    async def test_lookup_failure_contributes_nothing(self, calculator, store, seed_user, seed_clubs):
        seed_user("u1", "PRIVILEGED")
        seed_clubs("u1", 1)
        store.fail("book_clubs")

        result = await calculator.calculate("u1")

        assert set(result) == set(PRIVILEGED_ENTITLEMENTS)


class TestRoleBasedEnforcement:
    @pytest.fixture(autouse=True)
    def enforce(self, flags):
        flags.set(FeatureFlag.ROLE_BASED_ENFORCEMENT, True)

    @pytest.mark.asyncio
    async def test_lead_without_subscription_keeps_token_only(self, calculator, seed_user, seed_clubs):
        seed_user("u1")
        seed_clubs("u1", 1)

        result = await calculator.calculate("u1")

        assert "CLUB_LEAD_club-u1-0" in result
        assert "CAN_MANAGE_CLUB" not in result
        assert set(result) == set(MEMBER_ENTITLEMENTS) | {"CLUB_LEAD_club-u1-0"}

    @pytest.mark.asyncio
    async def test_lead_with_subscription(self, calculator, seed_user, seed_clubs, subscriptions):
        seed_user("u1", "PRIVILEGED")
        seed_clubs("u1", 1)
        subscriptions.active.add("u1")

        result = await calculator.calculate("u1")

        assert set(CLUB_LEAD_ENTITLEMENTS) <= set(result)

    @pytest.mark.asyncio
    async def test_subscription_checked_once_per_calculation(
        self, calculator, store, seed_user, seed_clubs, subscriptions
    ):
        seed_user("u1")
        seed_clubs("u1", 3)
        store.seed("club_moderators", {"club_id": "c9", "user_id": "u1"})

        await calculator.calculate("u1")

        assert subscriptions.active_checks == 1

    @pytest.mark.asyncio
    async def test_administrator_exempt(self, calculator, store, seed_user, seed_clubs, subscriptions):
        seed_user("u1")
        seed_clubs("u1", 1)
        store.seed("store_administrators", {"store_id": "s1", "user_id": "u1", "role": "manager"})

        result = await calculator.calculate("u1")

        assert set(CLUB_LEAD_ENTITLEMENTS) <= set(result)
        assert subscriptions.active_checks == 0

    @pytest.mark.asyncio
    async def test_subscription_error_withholds_position(self, calculator, seed_user, store, subscriptions):
        seed_user("u1")
        store.seed("club_moderators", {"club_id": "c1", "user_id": "u1"})
        subscriptions.error = RuntimeError("billing down")

        result = await calculator.calculate("u1")

        assert "CLUB_MODERATOR_c1" in result
        assert not set(CLUB_MODERATOR_ENTITLEMENTS) & set(result)


class TestSubscriptionValidation:
    @pytest.mark.asyncio
    async def test_validated_tier_replaces_stored_tier(self, calculator, flags, seed_user, subscriptions):
        flags.set(FeatureFlag.SUBSCRIPTION_VALIDATION, True)
        seed_user("u1", "PRIVILEGED_PLUS")
        subscriptions.tiers["u1"] = Role.PRIVILEGED

        result = await calculator.calculate("u1")

        assert set(result) == set(PRIVILEGED_ENTITLEMENTS)

    @pytest.mark.asyncio
    async def test_validation_error_falls_back_to_member(self, calculator, flags, seed_user, subscriptions):
        flags.set(FeatureFlag.SUBSCRIPTION_VALIDATION, True)
        seed_user("u1", "PRIVILEGED_PLUS")
        subscriptions.error = RuntimeError("billing down")

        assert await calculator.calculate("u1") == list(MEMBER_ENTITLEMENTS)

    @pytest.mark.asyncio
    async def test_flag_off_uses_stored_tier(self, calculator, seed_user, subscriptions):
        seed_user("u1", "PRIVILEGED_PLUS")
        subscriptions.tiers["u1"] = Role.MEMBER

        assert set(await calculator.calculate("u1")) == set(PRIVILEGED_PLUS_ENTITLEMENTS)


# ============================================================================
# TEST SUITE: FAILURES
# ============================================================================

class TestCalculationFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["", "   ", None, "has space", "x" * 65])
    async def test_invalid_user_id(self, calculator, bad_id):
        with pytest.raises(ValidationError):
            await calculator.calculate(bad_id)

    @pytest.mark.asyncio
    async def test_user_lookup_failure_returns_member(self, calculator, store, seed_user):
        seed_user("u1", "PRIVILEGED_PLUS")
        store.fail("users")
        assert await calculator.calculate("u1") == list(MEMBER_ENTITLEMENTS)

    @pytest.mark.asyncio
    async def test_platform_lookup_failure_is_not_owner(self, calculator, store, seed_user):
        seed_user("u1", "PRIVILEGED")
        store.fail("platform_settings")
        assert set(await calculator.calculate("u1")) == set(PRIVILEGED_ENTITLEMENTS)

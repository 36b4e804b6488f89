"""Unit tests for the access gate."""

import itertools

import pytest
from pydantic import ValidationError

from services.access_gate import AccessResult, AccessType, check_access


class TestCheckAccess:
    """Tests for check_access."""

    @pytest.mark.parametrize(
        "is_free,is_subscription_active,is_subscription_available",
        list(itertools.product([True, False], repeat=3)),
    )
    def test_owned_always_allowed(
        self, is_free: bool, is_subscription_active: bool, is_subscription_available: bool
    ) -> None:
        """Test owned content is always accessible."""
        result = check_access(True, is_free, is_subscription_active, is_subscription_available)

        assert result.can_access is True
        assert result.type is AccessType.ALLOWED

    @pytest.mark.parametrize(
        "is_subscription_active,is_subscription_available",
        list(itertools.product([True, False], repeat=2)),
    )
    def test_paid_not_owned_needs_purchase(
        self, is_subscription_active: bool, is_subscription_available: bool
    ) -> None:
        """Test a subscription never unlocks paid content."""
        result = check_access(False, False, is_subscription_active, is_subscription_available)

        assert result.can_access is False
        assert result.needs_subscription is False
        assert result.needs_purchase is True

    def test_free_with_active_subscription(self) -> None:
        assert check_access(False, True, True, True).can_access is True

    def test_free_without_subscription_when_available(self) -> None:
        """Test free content asks for a subscription when subscriptions are offered."""
        result = check_access(False, True, False, True)

        assert result.can_access is False
        assert result.needs_subscription is True
        assert result.needs_purchase is False

    def test_free_when_subscriptions_unavailable(self) -> None:
        """Test free content is open when no subscription product exists."""
        assert check_access(False, True, False, False).can_access is True

    def test_preview_allowed_without_ownership(self) -> None:
        """Test preview chapters bypass purchase and subscription checks."""
        paid = check_access(False, False, False, True, is_preview=True)
        free = check_access(False, True, False, True, is_preview=True)

        assert paid.can_access is True
        assert paid.is_preview is True
        assert free.can_access is True

    def test_owned_preview_is_not_flagged(self) -> None:
        assert check_access(True, False, False, True, is_preview=True).is_preview is False

    def test_result_is_immutable(self) -> None:
        result = check_access(True, False, False, True)
        with pytest.raises(ValidationError):
            result.type = AccessType.NEEDS_PURCHASE  # type: ignore[misc]

    def test_result_equality(self) -> None:
        """Test the gate is deterministic."""
        assert check_access(False, True, False, True) == AccessResult(
            type=AccessType.NEEDS_SUBSCRIPTION
        )

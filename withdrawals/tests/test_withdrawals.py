"""
Unit Tests for the Withdrawal Tier Limiter

Tests cover:
1. Tier assignment
2. Daily and monthly caps
3. Global min/max bounds
4. Tier limit updates
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from core.admin import AdminControlsService
from core.config import Settings
from core.errors import NotFoundError, ValidationError
from core.storage import InMemoryStorage
from ledger.models import TransactionStatus, TransactionType
from withdrawals.service import WithdrawalLimitsService


# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


def add_user(storage, clock, age_days=0, kyc_verified=False):
    storage.insert_user({
        "id": USER_ID,
        "email": "user@example.com",
        "phone_number": "254700000000",
        "created_at": clock() - timedelta(days=age_days),
        "is_admin": False,
        "kyc_verified": kyc_verified,
    })


def add_transaction(storage, processed_at, amount="100", tx_type=TransactionType.WITHDRAWAL,
                    status=TransactionStatus.COMPLETED):
    storage.insert_transaction({
        "id": uuid4(),
        "user_id": USER_ID,
        "type": tx_type,
        "amount": Decimal(amount),
        "status": status,
        "reference": f"WD-{uuid4()}",
        "metadata": {},
        "created_at": processed_at,
        "updated_at": processed_at,
        "processed_at": processed_at if status == TransactionStatus.COMPLETED else None,
    })


def make_service(storage, clock):
    return WithdrawalLimitsService(storage, AdminControlsService(storage, Settings(), clock=clock), clock=clock)


class TestTierAssignment:
    """Tests for picking a user's tier."""

    def test_new_user_is_basic(self, clock):
        """Test a brand new account."""
        storage = InMemoryStorage()
        add_user(storage, clock)

        assert make_service(storage, clock).get_user_tier(USER_ID).name == "Basic"

    def test_standard_tier(self, clock):
        """Test an account meeting the Standard requirements."""
        storage = InMemoryStorage()
        add_user(storage, clock, age_days=10)
        for _ in range(5):
            add_transaction(storage, clock() - timedelta(days=5), tx_type=TransactionType.DEPOSIT)

        assert make_service(storage, clock).get_user_tier(USER_ID).name == "Standard"

    def test_premium_requires_kyc(self, clock):
        """Test that Premium needs a verified identity."""
        storage = InMemoryStorage()
        add_user(storage, clock, age_days=40)
        for _ in range(20):
            add_transaction(storage, clock() - timedelta(days=35), tx_type=TransactionType.DEPOSIT)
        service = make_service(storage, clock)

        assert service.get_user_tier(USER_ID).name == "Standard"

        storage.update("users", USER_ID, {"kyc_verified": True})
        assert service.get_user_tier(USER_ID).name == "Premium"

    def test_pending_transactions_do_not_count(self, clock):
        """Test that only completed transactions count toward tiers."""
        storage = InMemoryStorage()
        add_user(storage, clock, age_days=10)
        for _ in range(5):
            add_transaction(storage, clock(), tx_type=TransactionType.DEPOSIT, status=TransactionStatus.PENDING)

        assert make_service(storage, clock).get_user_tier(USER_ID).name == "Basic"

    def test_missing_user_falls_back_to_lowest_tier(self, clock):
        """Test an unknown user id."""
        service = make_service(InMemoryStorage(), clock)

        assert service.get_user_tier(uuid4()).tier == 1


class TestWithdrawalLimits:
    """Tests for limit checks."""

    def test_daily_cap_scenario(self, clock):
        """Test 4800 used today plus 500 requested on a 5000 daily cap."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock() - timedelta(hours=2), amount="4800")

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("500"))

        assert check.allowed is False
        assert check.daily_remaining == Decimal("200")
        assert check.reason.startswith("Daily limit exceeded")
        assert check.current_tier.name == "Basic"

    def test_approved_check_reports_remaining_after(self, clock):
        """Test that an allowed check shows headroom net of the request."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock() - timedelta(hours=2), amount="4800")

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("150"))

        assert check.allowed is True
        assert check.reason is None
        assert check.daily_remaining == Decimal("50")
        assert check.monthly_remaining == Decimal("45050")

    def test_yesterday_counts_only_toward_month(self, clock):
        """Test the midnight boundary."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock() - timedelta(days=1), amount="4800")

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("500"))

        assert check.allowed is True
        assert check.daily_remaining == Decimal("4500")
        assert check.monthly_remaining == Decimal("44700")

    def test_monthly_cap(self, clock):
        """Test a request that fits today but not this month."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock() - timedelta(days=10), amount="48000")

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("3000"))

        assert check.allowed is False
        assert check.monthly_remaining == Decimal("2000")
        assert check.reason.startswith("Monthly limit exceeded")

    def test_last_month_is_ignored(self, clock):
        """Test the month-start boundary."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock() - timedelta(days=20), amount="48000")

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("3000"))

        assert check.allowed is True

    def test_non_withdrawals_and_pending_ignored(self, clock):
        """Test that only completed withdrawals use headroom."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock(), amount="4000", tx_type=TransactionType.DEPOSIT)
        add_transaction(storage, clock(), amount="4000", status=TransactionStatus.PENDING)

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("1000"))

        assert check.allowed is True
        assert check.daily_remaining == Decimal("4000")

    def test_minimum_amount(self, clock):
        """Test the global minimum."""
        storage = InMemoryStorage()
        add_user(storage, clock)

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("50"))

        assert check.allowed is False
        assert "Minimum" in check.reason

    def test_maximum_amount(self, clock):
        """Test the global maximum before tier headroom."""
        storage = InMemoryStorage()
        add_user(storage, clock)

        check = make_service(storage, clock).check_withdrawal_limit(USER_ID, Decimal("2000000"))

        assert check.allowed is False
        assert "Maximum" in check.reason

    def test_non_positive_amount_rejected(self, clock):
        """Test that zero is a validation error, not a denial."""
        service = make_service(InMemoryStorage(), clock)

        with pytest.raises(ValidationError):
            service.check_withdrawal_limit(USER_ID, Decimal("0"))


class TestTierLimitUpdates:
    """Tests for admin tier edits."""

    def test_update_tier_limits(self, clock):
        """Test raising the Basic daily cap."""
        storage = InMemoryStorage()
        add_user(storage, clock)
        add_transaction(storage, clock(), amount="4800")
        service = make_service(storage, clock)

        updated = service.update_tier_limits(1, daily_limit=Decimal("6000"))

        assert updated.daily_limit == Decimal("6000")
        assert updated.monthly_limit == Decimal("50000")
        assert service.check_withdrawal_limit(USER_ID, Decimal("500")).allowed is True

    def test_update_unknown_tier(self, clock):
        """Test that an unknown tier raises."""
        service = make_service(InMemoryStorage(), clock)

        with pytest.raises(NotFoundError):
            service.update_tier_limits(9, daily_limit=Decimal("1"))

    def test_services_do_not_share_tiers(self, clock):
        """Test that edits stay local to the service instance."""
        first = make_service(InMemoryStorage(), clock)
        second = make_service(InMemoryStorage(), clock)

        first.update_tier_limits(1, daily_limit=Decimal("1"))

        assert second.get_tiers()[0].daily_limit == Decimal("5000")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

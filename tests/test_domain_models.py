"""
Tests for domain models.
"""

import pytest
from ledger_fakes import make_account

from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import (
    BalanceUpdate,
    DeductionResult,
    EntryTemplate,
    PoolTotals,
    Posting,
    PurchaseEvent,
    UsageRequest,
)


class TestTenantAccountData:
    """Tests for the account snapshot."""

    def test_total_credits(self):
        """Total is the sum of both pools."""
        account = make_account(subscription_credits=40, topoff_credits=15)
        assert account.total_credits == 55

    def test_pool_balance(self):
        """pool_balance reads the matching pool."""
        account = make_account(subscription_credits=40, topoff_credits=15)
        assert account.pool_balance(CreditPool.SUBSCRIPTION) == 40
        assert account.pool_balance(CreditPool.TOPOFF) == 15

    @pytest.mark.parametrize(
        "overrides",
        [
            {"subscription_credits": -1},
            {"topoff_credits": -1},
            {"version": -1},
            {"tenant_id": ""},
        ],
    )
    def test_invalid_snapshots_rejected(self, overrides):
        """Negative pools, negative versions and empty tenants are invalid."""
        with pytest.raises(ValueError):
            make_account(**overrides)

    def test_snapshot_is_frozen(self):
        """Snapshots are immutable."""
        account = make_account()
        with pytest.raises(AttributeError):
            account.subscription_credits = 0  # type: ignore[misc]


class TestPostingAndTemplate:
    """Tests for postings and entry templates."""

    def test_posting_defaults(self):
        """Postings carry the reference and no overage by default."""
        posting = Posting(pool=CreditPool.TOPOFF, amount=50)
        assert posting.carries_reference is True
        assert posting.overage_credits == 0
        assert posting.entry_type is None

    def test_negative_overage_rejected(self):
        """Overage cannot be negative."""
        with pytest.raises(ValueError, match="Overage"):
            Posting(pool=CreditPool.SUBSCRIPTION, amount=-5, overage_credits=-1)

    def test_template_requires_description(self):
        """Every ledger entry needs a description."""
        with pytest.raises(ValueError, match="Description"):
            EntryTemplate(entry_type=EntryType.USAGE, description="")


class TestBalanceUpdate:
    """Tests for BalanceUpdate."""

    def test_keep_balances(self):
        """keep_balances leaves pools untouched and has no postings."""
        account = make_account(subscription_credits=12, topoff_credits=3)
        update = BalanceUpdate.keep_balances(account)
        assert update.subscription_credits == 12
        assert update.topoff_credits == 3
        assert update.status == AccountStatus.ACTIVE
        assert update.postings == ()

    def test_keep_balances_with_status(self):
        """keep_balances can change the status."""
        update = BalanceUpdate.keep_balances(make_account(), AccountStatus.SUSPENDED)
        assert update.status == AccountStatus.SUSPENDED

    def test_total_credits(self):
        """Total across pools after the update."""
        update = BalanceUpdate(
            subscription_credits=5, topoff_credits=6, status=AccountStatus.ACTIVE
        )
        assert update.total_credits == 11


class TestUsageRequest:
    """Tests for UsageRequest validation."""

    def test_valid(self):
        request = UsageRequest(tenant_id="t", action="web_search", quantity=3)
        assert request.quantity == 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"tenant_id": "", "action": "web_search"},
            {"tenant_id": "t", "action": ""},
            {"tenant_id": "t", "action": "web_search", "quantity": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            UsageRequest(**kwargs)


class TestPurchaseEvent:
    """Tests for PurchaseEvent validation."""

    def test_requires_positive_credits(self):
        with pytest.raises(ValueError, match="Credits granted"):
            PurchaseEvent(
                external_reference="pi_1", tenant_id="t", credits_granted=0, amount_paid_cents=0
            )

    def test_requires_reference(self):
        with pytest.raises(ValueError, match="external_reference"):
            PurchaseEvent(
                external_reference="", tenant_id="t", credits_granted=10, amount_paid_cents=100
            )

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="Amount paid"):
            PurchaseEvent(
                external_reference="pi_1", tenant_id="t", credits_granted=10, amount_paid_cents=-1
            )


class TestResults:
    """Tests for result dataclasses."""

    def test_untracked_deduction(self):
        """A deduction without status is untracked."""
        result = DeductionResult(
            success=True,
            credits_deducted=10,
            credits_remaining=-1,
            subscription_credits=0,
            topoff_credits=0,
            status=None,
            is_overage=False,
        )
        assert result.untracked is True

    def test_pool_totals(self):
        totals = PoolTotals(subscription=-30, topoff=50)
        assert totals.for_pool(CreditPool.SUBSCRIPTION) == -30
        assert totals.for_pool(CreditPool.TOPOFF) == 50


"""
Tests for the deduction engine and its pure balance function.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from ledger_fakes import make_account

from credit_ledger.exceptions import DatabaseError, StorageConflictError, UnknownActionError
from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import UsageRequest
from credit_ledger.services.catalog import get_plan
from credit_ledger.services.deduction import (
    balance_status,
    derive_status,
    plan_deduction,
    soft_limit,
)

RATIO = 0.8


class TestStatusRules:
    """Tests for status derivation."""

    def test_soft_limit(self):
        assert soft_limit(get_plan("starter"), RATIO) == 200
        assert soft_limit(get_plan("growth"), RATIO) == 460

    @pytest.mark.parametrize(
        ("total", "used", "expected"),
        [
            (0, 0, AccountStatus.EXHAUSTED),
            (0, 250, AccountStatus.EXHAUSTED),
            (50, 200, AccountStatus.WARNING),
            (50, 199, AccountStatus.ACTIVE),
            (250, 0, AccountStatus.ACTIVE),
        ],
    )
    def test_balance_status(self, total, used, expected):
        assert balance_status(total, used, get_plan("starter"), RATIO) == expected

    @pytest.mark.parametrize(
        "sticky", [AccountStatus.SUSPENDED, AccountStatus.PAST_DUE, AccountStatus.CANCELED]
    )
    def test_sticky_statuses_survive(self, sticky):
        assert derive_status(sticky, 0, 999, get_plan("starter"), RATIO) == sticky

    def test_exhausted_recovers(self):
        """Exhausted is derived, not sticky."""
        status = derive_status(AccountStatus.EXHAUSTED, 100, 0, get_plan("starter"), RATIO)
        assert status == AccountStatus.ACTIVE


class TestPlanDeduction:
    """Tests for plan_deduction."""

    def test_subscription_first(self):
        account = make_account(subscription_credits=100, topoff_credits=50)

        update = plan_deduction(account, 10, RATIO)

        assert (update.subscription_credits, update.topoff_credits) == (90, 50)
        assert [(p.pool, p.amount) for p in update.postings] == [(CreditPool.SUBSCRIPTION, -10)]
        assert update.credits_used_this_cycle == 10
        assert update.record_usage is True

    def test_spills_into_topoff(self):
        account = make_account(subscription_credits=3, topoff_credits=50)

        update = plan_deduction(account, 10, RATIO)

        assert (update.subscription_credits, update.topoff_credits) == (0, 43)
        assert [(p.pool, p.amount) for p in update.postings] == [
            (CreditPool.SUBSCRIPTION, -3),
            (CreditPool.TOPOFF, -7),
        ]
        assert all(p.overage_credits == 0 for p in update.postings)

    def test_shortfall_recorded_as_overage(self):
        account = make_account(subscription_credits=3, topoff_credits=4)

        update = plan_deduction(account, 10, RATIO)

        assert (update.subscription_credits, update.topoff_credits) == (0, 0)
        assert update.postings[-1].overage_credits == 3
        assert update.overage_credits == 3
        assert update.status == AccountStatus.EXHAUSTED

    def test_fully_uncovered_deduction(self):
        account = make_account(
            subscription_credits=0, topoff_credits=0, status=AccountStatus.EXHAUSTED
        )

        update = plan_deduction(account, 5, RATIO)

        assert len(update.postings) == 1
        posting = update.postings[0]
        assert posting.pool == CreditPool.SUBSCRIPTION
        assert posting.amount == 0
        assert posting.overage_credits == 5

    def test_soft_limit_crossing_warns(self):
        account = make_account(subscription_credits=60, credits_used_this_cycle=190)

        update = plan_deduction(account, 10, RATIO)

        assert update.status == AccountStatus.WARNING

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            plan_deduction(make_account(), 0, RATIO)

    @settings(max_examples=200)
    @given(
        subscription=st.integers(min_value=0, max_value=5000),
        topoff=st.integers(min_value=0, max_value=5000),
        required=st.integers(min_value=1, max_value=12000),
    )
    def test_deduction_conserves_credits(self, subscription, topoff, required):
        """Consumed credits plus overage always equal the requirement."""
        account = make_account(subscription_credits=subscription, topoff_credits=topoff)

        update = plan_deduction(account, required, RATIO)

        consumed = account.total_credits - update.total_credits
        overage = sum(p.overage_credits for p in update.postings)
        assert consumed + overage == required
        assert update.subscription_credits >= 0
        assert update.topoff_credits >= 0
        # Top-off is touched only once the subscription pool is empty
        if update.topoff_credits < topoff:
            assert update.subscription_credits == 0
        assert sum(p.amount for p in update.postings) == -consumed


class TestDeductionEngine:
    """Tests for DeductionEngine.deduct."""

    async def test_deducts_and_records_usage_entry(self, engine, store, starter_account):
        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-1", action="article_generation"), "Draft article"
        )

        assert result.success is True
        assert result.credits_deducted == 10
        assert result.credits_remaining == 240
        assert result.subscription_credits == 240
        assert result.status == AccountStatus.ACTIVE
        assert result.is_overage is False
        assert result.previous_status == AccountStatus.ACTIVE

        entries = store.entries_for("tenant-1")
        assert len(entries) == 1
        assert entries[0].entry_type == EntryType.USAGE
        assert entries[0].action == "article_generation"
        assert entries[0].credits_requested == 10
        assert store.accounts["tenant-1"].credits_used_this_cycle == 10

    async def test_article_id_in_description(self, engine, store, starter_account):
        await engine.deduct(
            UsageRequest(tenant_id="tenant-1", action="fact_check"), "Fact check", "art-42"
        )

        assert store.entries_for("tenant-1")[0].description == "Fact check (article art-42)"

    async def test_overage_reported(self, engine, store, low_balance_account):
        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-low", action="article_generation"), "Draft"
        )

        assert result.success is True
        assert result.credits_deducted == 10
        assert result.credits_remaining == 0
        assert result.is_overage is True
        assert result.status == AccountStatus.EXHAUSTED
        assert result.previous_status == AccountStatus.WARNING
        assert store.accounts["tenant-low"].overage_credits == 3

    async def test_subscription_drained_before_topoff(self, engine, store, account_factory):
        store.seed(account_factory(subscription_credits=5, topoff_credits=10))

        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-1", action="web_search", quantity=12), "Search"
        )

        assert result.credits_deducted == 12
        assert result.subscription_credits == 0
        assert result.topoff_credits == 3
        assert result.credits_remaining == 3
        assert result.is_overage is False
        account = store.accounts["tenant-1"]
        assert (account.subscription_credits, account.topoff_credits) == (0, 3)

    async def test_empty_pools_report_overage(self, engine, store, account_factory):
        store.seed(
            account_factory(
                subscription_credits=0, topoff_credits=0, credits_used_this_cycle=250
            )
        )

        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-1", action="article_generation"), "Draft"
        )

        assert result.success is True
        assert result.credits_remaining == 0
        assert result.status == AccountStatus.EXHAUSTED
        assert result.is_overage is True
        assert store.accounts["tenant-1"].overage_credits == 10

    async def test_untracked_tenant(self, engine, store):
        result = await engine.deduct(
            UsageRequest(tenant_id="ghost", action="web_search", quantity=2), "Search"
        )

        assert result.success is True
        assert result.untracked is True
        assert result.credits_remaining == -1
        assert result.credits_deducted == 2
        entries = store.entries_for("ghost")
        assert len(entries) == 1
        assert entries[0].untracked is True
        assert entries[0].amount == 0

    async def test_untracked_write_failure_is_not_fatal(self, engine, store):
        store.untracked_error = DatabaseError("down")

        result = await engine.deduct(
            UsageRequest(tenant_id="ghost", action="web_search"), "Search"
        )

        assert result.success is True
        assert result.untracked is True

    async def test_conflicts_are_retried(self, engine, store, starter_account):
        store.conflicts_remaining = 2

        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-1", action="web_search"), "Search"
        )

        assert result.credits_remaining == 249
        assert store.append_calls == 3

    async def test_persistent_conflict_surfaces(self, engine, store, starter_account):
        store.conflicts_remaining = 10

        with pytest.raises(StorageConflictError):
            await engine.deduct(UsageRequest(tenant_id="tenant-1", action="web_search"), "Search")

        assert store.accounts["tenant-1"] == starter_account
        assert store.entries == []

    async def test_database_error_surfaces(self, engine, store, starter_account):
        store.append_error = DatabaseError("timeout")

        with pytest.raises(DatabaseError):
            await engine.deduct(UsageRequest(tenant_id="tenant-1", action="web_search"), "Search")

    async def test_unknown_action(self, engine, starter_account):
        with pytest.raises(UnknownActionError):
            await engine.deduct(UsageRequest(tenant_id="tenant-1", action="teleport"), "x")

    async def test_suspended_account_still_metered(self, engine, store, suspended_account):
        """Deductions never refuse; suspension only gates new actions."""
        result = await engine.deduct(
            UsageRequest(tenant_id="tenant-suspended", action="web_search"), "Search"
        )

        assert result.status == AccountStatus.SUSPENDED
        assert result.credits_remaining == 249

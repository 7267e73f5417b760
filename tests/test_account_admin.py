"""
Tests for account administration: provisioning, adjustments, plan changes,
suspension and reconciliation.
"""

from dataclasses import replace

import pytest

from credit_ledger.exceptions import (
    InsufficientCreditsError,
    TenantNotFoundError,
    UnknownPlanError,
)
from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import UsageRequest


class TestProvisionAccount:
    """Tests for AccountAdminService.provision_account."""

    async def test_creates_with_plan_allocation(self, admin, store):
        account, created = await admin.provision_account("tenant-new", "growth")

        assert created is True
        assert account.plan_id == "growth"
        assert account.subscription_credits == 575
        assert account.topoff_credits == 0
        assert account.initial_subscription_credits == 575
        assert account.status == AccountStatus.ACTIVE
        assert (account.billing_cycle_end - account.billing_cycle_start).days == 30
        assert store.entries == []

    async def test_explicit_credits(self, admin):
        account, _ = await admin.provision_account(
            "tenant-new", "starter", subscription_credits=100, topoff_credits=25
        )

        assert account.subscription_credits == 100
        assert account.topoff_credits == 25
        assert account.initial_topoff_credits == 25

    async def test_existing_account_returned_unchanged(self, admin, starter_account):
        account, created = await admin.provision_account("tenant-1", "growth")

        assert created is False
        assert account == starter_account

    async def test_existing_account_gets_missing_gateway_ids(self, admin, store, account_factory):
        store.seed(account_factory(tenant_id="tenant-x"))

        account, created = await admin.provision_account(
            "tenant-x",
            "starter",
            external_customer_id="cus_9",
            external_subscription_id="sub_9",
        )

        assert created is False
        assert account.external_customer_id == "cus_9"
        assert account.external_subscription_id == "sub_9"
        assert account.subscription_credits == 250

    async def test_existing_gateway_ids_not_overwritten(self, admin, starter_account):
        account, _ = await admin.provision_account(
            "tenant-1", "starter", external_customer_id="cus_other"
        )

        assert account.external_customer_id == "cus_123"

    async def test_unknown_plan(self, admin):
        with pytest.raises(UnknownPlanError):
            await admin.provision_account("tenant-new", "platinum")


class TestAdjustCredits:
    """Tests for AccountAdminService.adjust_credits."""

    async def test_grant_topoff(self, admin, store, starter_account):
        result = await admin.adjust_credits(
            "tenant-1", CreditPool.TOPOFF, 30, "Support credit", created_by="ops@example.com"
        )

        assert result.applied is True
        assert result.account.topoff_credits == 30
        entry = store.entries_for("tenant-1")[0]
        assert entry.entry_type == EntryType.ADJUSTMENT
        assert entry.amount == 30
        assert entry.topoff_balance_after == 30
        assert entry.balance_after == 280
        assert entry.created_by == "ops@example.com"

    async def test_negative_adjustment(self, admin, starter_account):
        result = await admin.adjust_credits(
            "tenant-1", CreditPool.SUBSCRIPTION, -50, "Clawback"
        )

        assert result.account.subscription_credits == 200

    async def test_cannot_drive_pool_negative(self, admin, store, starter_account):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await admin.adjust_credits("tenant-1", CreditPool.TOPOFF, -1, "Clawback")

        assert exc_info.value.balance == 0
        assert exc_info.value.required == 1
        assert store.entries == []

    async def test_replayed_reference_not_applied_twice(self, admin, store, starter_account):
        first = await admin.adjust_credits(
            "tenant-1", CreditPool.TOPOFF, 10, "Refund", reference="ticket-77"
        )
        second = await admin.adjust_credits(
            "tenant-1", CreditPool.TOPOFF, 10, "Refund", reference="ticket-77"
        )

        assert first.applied is True
        assert second.applied is False
        assert second.account.topoff_credits == 10
        assert len(store.entries_for("tenant-1")) == 1

    async def test_adjustment_recovers_exhausted(self, admin, store, account_factory):
        store.seed(
            account_factory(
                tenant_id="tenant-x", subscription_credits=0, status=AccountStatus.EXHAUSTED
            )
        )

        result = await admin.adjust_credits("tenant-x", CreditPool.TOPOFF, 100, "Goodwill")

        assert result.account.status == AccountStatus.ACTIVE

    async def test_zero_amount_rejected(self, admin, starter_account):
        with pytest.raises(ValueError):
            await admin.adjust_credits("tenant-1", CreditPool.TOPOFF, 0, "Nothing")

    async def test_missing_tenant(self, admin):
        with pytest.raises(TenantNotFoundError):
            await admin.adjust_credits("nobody", CreditPool.TOPOFF, 5, "Grant")


class TestChangePlan:
    """Tests for AccountAdminService.change_plan."""

    async def test_upgrade_replaces_allocation(self, admin, store, account_factory):
        store.seed(account_factory(subscription_credits=120, topoff_credits=9))

        result = await admin.change_plan("tenant-1", "professional")

        assert result.previous.plan_id == "starter"
        assert result.account.plan_id == "professional"
        assert result.account.subscription_credits == 1000
        assert result.account.topoff_credits == 9
        entry = store.entries_for("tenant-1")[0]
        assert entry.entry_type == EntryType.PLAN_CHANGE
        assert entry.amount == 880

    async def test_downgrade_records_negative_delta(self, admin, store, account_factory):
        store.seed(account_factory(plan_id="growth", subscription_credits=575))

        result = await admin.change_plan("tenant-1", "starter")

        assert result.account.subscription_credits == 250
        assert store.entries_for("tenant-1")[0].amount == -325

    async def test_same_plan_is_noop(self, admin, store, starter_account):
        result = await admin.change_plan("tenant-1", "starter")

        assert result.account.subscription_credits == 250
        assert store.entries == []

    async def test_unknown_plan(self, admin, starter_account):
        with pytest.raises(UnknownPlanError):
            await admin.change_plan("tenant-1", "platinum")


class TestSetStatus:
    """Tests for AccountAdminService.set_status."""

    async def test_suspend(self, admin, store, starter_account):
        result = await admin.set_status("tenant-1", suspended=True, reason="abuse")

        assert result.previous.status == AccountStatus.ACTIVE
        assert result.account.status == AccountStatus.SUSPENDED
        assert result.account.subscription_credits == 250
        assert store.entries == []

    async def test_reinstate_recomputes_from_balance(self, admin, store, account_factory):
        store.seed(
            account_factory(
                subscription_credits=30,
                credits_used_this_cycle=220,
                status=AccountStatus.SUSPENDED,
            )
        )

        result = await admin.set_status("tenant-1", suspended=False)

        assert result.account.status == AccountStatus.WARNING

    async def test_reinstate_leaves_past_due(self, admin, store, account_factory):
        store.seed(account_factory(status=AccountStatus.PAST_DUE))

        result = await admin.set_status("tenant-1", suspended=False)

        assert result.account.status == AccountStatus.PAST_DUE


class TestReconcile:
    """Tests for AccountAdminService.reconcile."""

    async def test_balanced_after_mixed_activity(self, admin, engine):
        await admin.provision_account("tenant-r", "starter")
        await admin.adjust_credits("tenant-r", CreditPool.TOPOFF, 20, "Grant")
        for _ in range(26):
            await engine.deduct(UsageRequest(tenant_id="tenant-r", action="article_generation"), "x")

        report = await admin.reconcile("tenant-r")

        assert report.balanced is True
        assert {p.pool: p.drift for p in report.pools} == {
            CreditPool.SUBSCRIPTION: 0,
            CreditPool.TOPOFF: 0,
        }
        topoff = next(p for p in report.pools if p.pool == CreditPool.TOPOFF)
        assert topoff.current_balance == 10
        assert topoff.ledger_sum == 10

    async def test_detects_drift(self, admin, store, starter_account):
        await admin.adjust_credits("tenant-1", CreditPool.TOPOFF, 20, "Grant")
        # Balance edited outside the ledger
        store.accounts["tenant-1"] = replace(store.accounts["tenant-1"], topoff_credits=25)

        report = await admin.reconcile("tenant-1")

        assert report.balanced is False
        topoff = next(p for p in report.pools if p.pool == CreditPool.TOPOFF)
        assert topoff.drift == 5

    async def test_missing_tenant(self, admin):
        with pytest.raises(TenantNotFoundError):
            await admin.reconcile("nobody")


class TestListEntries:
    """Tests for AccountAdminService.list_entries."""

    async def test_newest_first_with_paging(self, admin, starter_account):
        for amount in (1, 2, 3):
            await admin.adjust_credits("tenant-1", CreditPool.TOPOFF, amount, f"Grant {amount}")

        page = await admin.list_entries("tenant-1", limit=2)

        assert page.total_count == 3
        assert page.has_more is True
        assert [e.amount for e in page.entries] == [3, 2]

        rest = await admin.list_entries("tenant-1", limit=2, offset=2)
        assert [e.description for e in rest.entries] == ["Grant 1"]
        assert rest.has_more is False

    async def test_empty_history(self, admin):
        page = await admin.list_entries("nobody")

        assert page.entries == []
        assert page.total_count == 0

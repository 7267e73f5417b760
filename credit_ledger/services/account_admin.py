"""
Account Administration - Provisioning, manual corrections and reconciliation.

Every change except provisioning goes through the ledger store's versioned
write path and leaves a ledger entry (status changes excepted).
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from credit_ledger.exceptions import DuplicateReferenceError, InsufficientCreditsError
from credit_ledger.models.api import (
    AccountStatus,
    CreditPool,
    EntryType,
    LedgerEntryItem,
    LedgerListResponse,
    PoolReconciliation,
    ReconciliationResponse,
)
from credit_ledger.models.domain import (
    AppendResult,
    BalanceUpdate,
    EntryTemplate,
    Posting,
    TenantAccountData,
)
from credit_ledger.observability.logging import get_logger
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.catalog import get_plan, get_plan_or_default
from credit_ledger.services.deduction import STICKY_STATUSES, balance_status
from credit_ledger.services.ledger_store import (
    BalanceFunction,
    LedgerRepository,
    RetryPolicy,
    with_storage_retry,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of a manual adjustment; applied is False for a replayed reference."""

    account: TenantAccountData
    applied: bool


class AccountAdminService:
    """Administrative operations on tenant accounts."""

    def __init__(
        self,
        store: LedgerRepository,
        retry_policy: RetryPolicy,
        soft_limit_ratio: float,
        default_cycle_days: int,
    ) -> None:
        """Initialize service with its store and ledger policy."""
        self.store = store
        self.retry_policy = retry_policy
        self.soft_limit_ratio = soft_limit_ratio
        self.default_cycle_days = default_cycle_days

    async def provision_account(
        self,
        tenant_id: str,
        plan_id: str,
        subscription_credits: int | None = None,
        topoff_credits: int = 0,
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
    ) -> tuple[TenantAccountData, bool]:
        """
        Create the initial account for a tenant (idempotent).

        Subscription credits default to the plan's monthly allocation. The
        provisioned balances are the reconciliation baseline.

        Returns:
            (account, created)

        Raises:
            UnknownPlanError: Plan is not in the catalog
        """
        plan = get_plan(plan_id)
        now = datetime.now(UTC)
        account, created = await self.store.create_account(
            tenant_id=tenant_id,
            plan_id=plan.id,
            subscription_credits=(
                plan.monthly_credits if subscription_credits is None else subscription_credits
            ),
            topoff_credits=topoff_credits,
            billing_cycle_start=now,
            billing_cycle_end=now + timedelta(days=self.default_cycle_days),
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
        )

        if created:
            metrics.accounts_provisioned_total.inc()
            logger.info(
                "account_provisioned",
                tenant_id=tenant_id,
                plan_id=plan.id,
                subscription_credits=account.subscription_credits,
                topoff_credits=account.topoff_credits,
            )
            return account, True

        missing_customer = external_customer_id and not account.external_customer_id
        missing_subscription = external_subscription_id and not account.external_subscription_id
        if missing_customer or missing_subscription:
            account = await with_storage_retry(
                "link_gateway_ids",
                lambda: self.store.link_gateway_ids(
                    tenant_id,
                    external_customer_id if missing_customer else None,
                    external_subscription_id if missing_subscription else None,
                ),
                self.retry_policy,
            )
            logger.info("account_gateway_ids_linked", tenant_id=tenant_id)

        return account, False

    async def adjust_credits(
        self,
        tenant_id: str,
        pool: CreditPool,
        amount: int,
        description: str,
        reference: str | None = None,
        created_by: str | None = None,
    ) -> AdjustmentResult:
        """
        Apply a signed manual correction to one pool.

        Raises:
            TenantNotFoundError: No account exists
            InsufficientCreditsError: The pool would go below zero
        """
        if amount == 0:
            raise ValueError("Adjustment amount cannot be zero")

        template = EntryTemplate(
            entry_type=EntryType.ADJUSTMENT,
            description=description,
            external_reference=reference,
            created_by=created_by,
        )

        def _adjust(account: TenantAccountData) -> BalanceUpdate:
            balance = account.pool_balance(pool)
            if balance + amount < 0:
                raise InsufficientCreditsError(balance, -amount)
            subscription = account.subscription_credits
            topoff = account.topoff_credits
            if pool == CreditPool.SUBSCRIPTION:
                subscription += amount
            else:
                topoff += amount
            return BalanceUpdate(
                subscription_credits=subscription,
                topoff_credits=topoff,
                status=self._recompute_status(account, subscription + topoff),
                postings=(Posting(pool=pool, amount=amount),),
            )

        try:
            result = await self._write("adjust_credits", tenant_id, template, _adjust)
        except DuplicateReferenceError:
            logger.info("adjustment_already_applied", tenant_id=tenant_id, reference=reference)
            return AdjustmentResult(account=await self.store.get_account(tenant_id), applied=False)

        if amount > 0:
            metrics.record_credit_addition(EntryType.ADJUSTMENT.value, pool.value, amount)
        logger.info(
            "credits_adjusted",
            tenant_id=tenant_id,
            pool=pool.value,
            amount=amount,
            created_by=created_by,
        )
        return AdjustmentResult(account=result.account, applied=True)

    async def change_plan(
        self, tenant_id: str, plan_id: str, created_by: str | None = None
    ) -> AppendResult:
        """
        Move a tenant to another plan; the subscription pool becomes the new allocation.

        Raises:
            UnknownPlanError: Plan is not in the catalog
            TenantNotFoundError: No account exists
        """
        plan = get_plan(plan_id)
        template = EntryTemplate(
            entry_type=EntryType.PLAN_CHANGE,
            description=f"Plan changed to {plan.name}",
            created_by=created_by,
        )

        def _change(account: TenantAccountData) -> BalanceUpdate:
            if account.plan_id == plan.id:
                return BalanceUpdate.keep_balances(account)
            return BalanceUpdate(
                subscription_credits=plan.monthly_credits,
                topoff_credits=account.topoff_credits,
                status=self._recompute_status(
                    account, plan.monthly_credits + account.topoff_credits, plan.id
                ),
                postings=(
                    Posting(
                        pool=CreditPool.SUBSCRIPTION,
                        amount=plan.monthly_credits - account.subscription_credits,
                    ),
                ),
                plan_id=plan.id,
            )

        result = await self._write("change_plan", tenant_id, template, _change)
        logger.info(
            "plan_changed",
            tenant_id=tenant_id,
            previous_plan=result.previous.plan_id,
            plan_id=result.account.plan_id,
            created_by=created_by,
        )
        return result

    async def set_status(
        self, tenant_id: str, suspended: bool, reason: str | None = None
    ) -> AppendResult:
        """
        Administratively suspend or reinstate a tenant.

        Reinstating recomputes the status from the balance; it does not clear
        past_due or canceled, which only the payment gateway resolves.

        Raises:
            TenantNotFoundError: No account exists
        """

        def _set(account: TenantAccountData) -> BalanceUpdate:
            if suspended:
                return BalanceUpdate.keep_balances(account, AccountStatus.SUSPENDED)
            if account.status != AccountStatus.SUSPENDED:
                return BalanceUpdate.keep_balances(account)
            return BalanceUpdate.keep_balances(
                account,
                balance_status(
                    account.total_credits,
                    account.credits_used_this_cycle,
                    get_plan_or_default(account.plan_id),
                    self.soft_limit_ratio,
                ),
            )

        result = await self._write("set_status", tenant_id, None, _set)
        logger.warning(
            "account_suspended" if suspended else "account_reinstated",
            tenant_id=tenant_id,
            previous_status=result.previous.status.value,
            status=result.account.status.value,
            reason=reason,
        )
        return result

    async def reconcile(self, tenant_id: str) -> ReconciliationResponse:
        """
        Compare each pool's balance with its baseline plus the ledger sum.

        Raises:
            TenantNotFoundError: No account exists
        """
        account = await self.store.get_account(tenant_id)
        totals = await self.store.sum_entries_by_pool(tenant_id)

        pools: list[PoolReconciliation] = []
        for pool in CreditPool:
            initial = (
                account.initial_subscription_credits
                if pool == CreditPool.SUBSCRIPTION
                else account.initial_topoff_credits
            )
            ledger_sum = totals.for_pool(pool)
            current = account.pool_balance(pool)
            pools.append(
                PoolReconciliation(
                    pool=pool,
                    initial_credits=initial,
                    ledger_sum=ledger_sum,
                    current_balance=current,
                    drift=current - initial - ledger_sum,
                )
            )

        balanced = all(p.drift == 0 for p in pools)
        if not balanced:
            metrics.record_error("LedgerDrift", "reconcile")
            logger.error(
                "ledger_drift_detected",
                tenant_id=tenant_id,
                drift=[(p.pool.value, p.drift) for p in pools if p.drift],
            )
        return ReconciliationResponse(tenant_id=tenant_id, balanced=balanced, pools=pools)

    async def list_entries(
        self, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> LedgerListResponse:
        """Page through a tenant's ledger history, newest first."""
        entries, total = await self.store.list_entries(tenant_id, limit, offset)
        return LedgerListResponse(
            tenant_id=tenant_id,
            entries=[
                LedgerEntryItem(
                    entry_id=str(e.entry_id),
                    entry_type=e.entry_type,
                    pool=e.pool,
                    amount=e.amount,
                    balance_after=e.balance_after,
                    description=e.description,
                    external_reference=e.external_reference,
                    action=e.action,
                    overage_credits=e.overage_credits,
                    untracked=e.untracked,
                    created_by=e.created_by,
                    created_at=e.created_at.isoformat(),
                )
                for e in entries
            ],
            total_count=total,
            has_more=offset + len(entries) < total,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _recompute_status(
        self, account: TenantAccountData, total_credits: int, plan_id: str | None = None
    ) -> AccountStatus:
        if account.status in STICKY_STATUSES:
            return account.status
        return balance_status(
            total_credits,
            account.credits_used_this_cycle,
            get_plan_or_default(plan_id or account.plan_id),
            self.soft_limit_ratio,
        )

    async def _write(
        self,
        operation: str,
        tenant_id: str,
        template: EntryTemplate | None,
        balance_fn: BalanceFunction,
    ) -> AppendResult:
        return await with_storage_retry(
            operation,
            lambda: self.store.append_entry_and_update_balance(tenant_id, template, balance_fn),
            self.retry_policy,
        )



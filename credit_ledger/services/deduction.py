"""
Deduction Engine - Post-hoc metering of completed AI actions.

Consumes the subscription pool first, then top-off credits. A shortfall is
recorded as overage and the deduction still succeeds: the action it meters has
already run.
"""

import time
from dataclasses import replace

from credit_ledger.exceptions import (
    DatabaseError,
    LedgerError,
    StorageConflictError,
    TenantNotFoundError,
)
from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import (
    BalanceUpdate,
    DeductionResult,
    EntryTemplate,
    Posting,
    TenantAccountData,
    UsageRequest,
)
from credit_ledger.observability.logging import get_logger
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import PlanDefinition, cost_of, get_plan_or_default
from credit_ledger.services.ledger_store import LedgerRepository, RetryPolicy, with_storage_retry

logger = get_logger(__name__)

# Set by payment events or administrators; usage never moves an account out of these
STICKY_STATUSES = frozenset(
    {AccountStatus.SUSPENDED, AccountStatus.PAST_DUE, AccountStatus.CANCELED}
)

UNTRACKED_REMAINING = -1


def soft_limit(plan: PlanDefinition, soft_limit_ratio: float) -> int:
    """Cycle usage at which an account enters warning status."""
    return int(plan.monthly_credits * soft_limit_ratio)


def balance_status(
    total_credits: int,
    credits_used_this_cycle: int,
    plan: PlanDefinition,
    soft_limit_ratio: float,
) -> AccountStatus:
    """Status implied by balance and cycle usage alone."""
    if total_credits <= 0:
        return AccountStatus.EXHAUSTED
    if credits_used_this_cycle >= soft_limit(plan, soft_limit_ratio):
        return AccountStatus.WARNING
    return AccountStatus.ACTIVE


def derive_status(
    current: AccountStatus,
    total_credits: int,
    credits_used_this_cycle: int,
    plan: PlanDefinition,
    soft_limit_ratio: float,
) -> AccountStatus:
    """Recompute status after a balance change, keeping sticky statuses."""
    if current in STICKY_STATUSES:
        return current
    return balance_status(total_credits, credits_used_this_cycle, plan, soft_limit_ratio)


def plan_deduction(
    account: TenantAccountData, required: int, soft_limit_ratio: float
) -> BalanceUpdate:
    """
    Pure balance function for a deduction of `required` credits.

    Produces one usage posting per pool that bore a non-zero part of the
    deduction. Any shortfall is attached to the last posting as overage; a
    fully uncovered deduction yields a single zero-amount subscription posting.
    """
    if required <= 0:
        raise ValueError(f"Deduction must be positive: {required}")

    from_subscription = min(account.subscription_credits, required)
    from_topoff = min(account.topoff_credits, required - from_subscription)
    overage = required - from_subscription - from_topoff

    postings: list[Posting] = []
    if from_subscription:
        postings.append(Posting(pool=CreditPool.SUBSCRIPTION, amount=-from_subscription))
    if from_topoff:
        postings.append(Posting(pool=CreditPool.TOPOFF, amount=-from_topoff))
    if overage:
        if postings:
            postings[-1] = replace(postings[-1], overage_credits=overage)
        else:
            postings.append(
                Posting(pool=CreditPool.SUBSCRIPTION, amount=0, overage_credits=overage)
            )

    subscription = account.subscription_credits - from_subscription
    topoff = account.topoff_credits - from_topoff
    used = account.credits_used_this_cycle + required
    plan = get_plan_or_default(account.plan_id)

    return BalanceUpdate(
        subscription_credits=subscription,
        topoff_credits=topoff,
        status=derive_status(account.status, subscription + topoff, used, plan, soft_limit_ratio),
        postings=tuple(postings),
        credits_used_this_cycle=used,
        overage_credits=account.overage_credits + overage,
        record_usage=True,
    )


class DeductionEngine:
    """Records consumption of credits against a tenant's pools."""

    def __init__(
        self,
        store: LedgerRepository,
        retry_policy: RetryPolicy,
        soft_limit_ratio: float,
    ) -> None:
        """Initialize engine with its store and ledger policy."""
        self.store = store
        self.retry_policy = retry_policy
        self.soft_limit_ratio = soft_limit_ratio

    async def deduct(
        self,
        request: UsageRequest,
        description: str,
        article_id: str | None = None,
    ) -> DeductionResult:
        """
        Deduct the cost of a completed action.

        Tenants without an account get an untracked usage entry and
        remaining=-1. Conflicts and transient database failures are retried.

        Raises:
            UnknownActionError: Action is not in the cost table
            StorageConflictError: Conflicts persisted through every retry
            DatabaseError: The database kept failing through every retry
        """
        required = cost_of(request.action, request.quantity)
        if article_id:
            description = f"{description} (article {article_id})"
        template = EntryTemplate(
            entry_type=EntryType.USAGE,
            description=description,
            action=request.action,
            credits_requested=required,
        )
        start_time = time.time()

        with trace_operation(
            "ledger_deduct",
            tenant_id=request.tenant_id,
            action=request.action,
            credits_required=required,
        ) as span:
            try:
                result = await with_storage_retry(
                    "deduct",
                    lambda: self.store.append_entry_and_update_balance(
                        request.tenant_id,
                        template,
                        lambda account: plan_deduction(account, required, self.soft_limit_ratio),
                    ),
                    self.retry_policy,
                )
            except TenantNotFoundError:
                await self._record_untracked(request, required, description)
                metrics.record_deduction(
                    request.action, False, 0, 0, 0, time.time() - start_time
                )
                span.set_attribute("untracked", True)
                return DeductionResult(
                    success=True,
                    credits_deducted=required,
                    credits_remaining=UNTRACKED_REMAINING,
                    subscription_credits=0,
                    topoff_credits=0,
                    status=None,
                    is_overage=False,
                )
            except (StorageConflictError, DatabaseError) as e:
                metrics.record_error(type(e).__name__, "deduct")
                logger.error(
                    "deduction_failed",
                    tenant_id=request.tenant_id,
                    action=request.action,
                    credits_required=required,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        overage = sum(entry.overage_credits for entry in result.entries)
        from_subscription = -sum(
            e.amount for e in result.entries if e.pool == CreditPool.SUBSCRIPTION
        )
        from_topoff = -sum(e.amount for e in result.entries if e.pool == CreditPool.TOPOFF)

        metrics.record_deduction(
            request.action,
            True,
            from_subscription,
            from_topoff,
            overage,
            time.time() - start_time,
        )
        account = result.account
        logger.info(
            "credits_deducted",
            tenant_id=request.tenant_id,
            action=request.action,
            credits_required=required,
            subscription_credits=account.subscription_credits,
            topoff_credits=account.topoff_credits,
            overage_credits=overage,
            status=account.status.value,
        )

        return DeductionResult(
            success=True,
            credits_deducted=required,
            credits_remaining=account.total_credits,
            subscription_credits=account.subscription_credits,
            topoff_credits=account.topoff_credits,
            status=account.status,
            is_overage=overage > 0,
            previous_status=result.previous.status,
        )

    async def _record_untracked(
        self, request: UsageRequest, required: int, description: str
    ) -> None:
        """Observability write only; its failure never fails the deduction."""
        logger.warning(
            "deduction_untracked_tenant",
            tenant_id=request.tenant_id,
            action=request.action,
            credits_required=required,
        )
        try:
            await self.store.record_untracked_usage(
                request.tenant_id, request.action, required, description
            )
        except LedgerError as e:
            logger.error(
                "untracked_usage_write_failed",
                tenant_id=request.tenant_id,
                error=str(e),
            )

"""
Balance Gate - Advisory pre-authorization of AI actions.

Never mutates state. A passing check is not a reservation: a concurrent
deduction may still consume the credits before the caller deducts.
"""

import math
import time
from datetime import UTC, datetime

from credit_ledger.exceptions import TenantNotFoundError
from credit_ledger.models.api import (
    AccountStatus,
    BalanceBreakdown,
    BalanceResponse,
    CreditCheckResponse,
)
from credit_ledger.models.domain import TenantAccountData
from credit_ledger.observability.logging import get_logger
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import cost_of, get_plan_or_default
from credit_ledger.services.ledger_store import LedgerRepository

logger = get_logger(__name__)

UNLIMITED_MESSAGE = "No credit allocation - operating in unlimited mode"
CHECK_FAILED_MESSAGE = "Credit check failed, allowing operation"
SUSPENDED_MESSAGE = "Account is suspended. Please contact support."
CANCELED_MESSAGE = "Subscription is canceled. Please renew your plan to continue."
EXHAUSTED_MESSAGE = (
    "Insufficient credits: monthly plan credits are exhausted. "
    "Purchase additional credits or wait for your next billing cycle."
)


def insufficient_message(required: int, available: int) -> str:
    """Denial message for a balance below the cost of the action."""
    return f"Insufficient credits: {required} required, {available} available."


def days_until(moment: datetime | None, now: datetime | None = None) -> int:
    """Whole days (rounded up) until a moment; 0 if unknown or past."""
    if moment is None:
        return 0
    now = now or datetime.now(UTC)
    remaining = (moment - now).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 86400)


class BalanceGate:
    """Read-only credit checks and balance reporting."""

    def __init__(self, store: LedgerRepository) -> None:
        """Initialize gate with a ledger store."""
        self.store = store

    async def check(self, tenant_id: str, action: str, quantity: int = 1) -> CreditCheckResponse:
        """
        Decide whether an action may run.

        Missing accounts and internal failures fail open with remaining=-1.

        Raises:
            UnknownActionError: Action is not in the cost table
        """
        required = cost_of(action, quantity)
        start_time = time.time()

        with trace_operation(
            "ledger_check", tenant_id=tenant_id, action=action, credits_required=required
        ) as span:
            try:
                account = await self.store.find_account(tenant_id)
            except Exception as e:
                logger.warning(
                    "credit_check_failed_open",
                    tenant_id=tenant_id,
                    action=action,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                metrics.record_error(type(e).__name__, "check")
                metrics.record_credit_check(True, "check_failed", time.time() - start_time)
                return CreditCheckResponse(
                    allowed=True,
                    credits_required=required,
                    credits_remaining=-1,
                    message=CHECK_FAILED_MESSAGE,
                )

            if account is None:
                logger.warning("credit_check_untracked_tenant", tenant_id=tenant_id)
                response = CreditCheckResponse(
                    allowed=True,
                    credits_required=required,
                    credits_remaining=-1,
                    message=UNLIMITED_MESSAGE,
                )
                reason = "untracked"
            else:
                response, reason = self._evaluate(account, required)

            span.set_attribute("allowed", response.allowed)

        metrics.record_credit_check(response.allowed, reason, time.time() - start_time)
        logger.info(
            "credit_check_performed",
            tenant_id=tenant_id,
            action=action,
            credits_required=required,
            allowed=response.allowed,
            reason=reason,
        )
        return response

    def _evaluate(
        self, account: TenantAccountData, required: int
    ) -> tuple[CreditCheckResponse, str | None]:
        available = account.total_credits

        if account.status == AccountStatus.SUSPENDED:
            message, reason = SUSPENDED_MESSAGE, "suspended"
        elif account.status == AccountStatus.CANCELED:
            message, reason = CANCELED_MESSAGE, "canceled"
        elif available < required:
            reason = "insufficient_credits"
            if account.subscription_credits == 0 and account.status == AccountStatus.EXHAUSTED:
                message = EXHAUSTED_MESSAGE
            else:
                message = insufficient_message(required, available)
        else:
            return (
                CreditCheckResponse(
                    allowed=True, credits_required=required, credits_remaining=available
                ),
                None,
            )

        return (
            CreditCheckResponse(
                allowed=False,
                credits_required=required,
                credits_remaining=available,
                message=message,
            ),
            reason,
        )

    async def get_balance(self, tenant_id: str) -> BalanceResponse:
        """
        Report a tenant's balance, plan and billing cycle.

        Raises:
            TenantNotFoundError: No account exists
        """
        account = await self.store.find_account(tenant_id)
        if account is None:
            raise TenantNotFoundError(tenant_id)

        plan = get_plan_or_default(account.plan_id)
        return BalanceResponse(
            tenant_id=account.tenant_id,
            balance=BalanceBreakdown(
                subscription=account.subscription_credits,
                topoff=account.topoff_credits,
                total=account.total_credits,
            ),
            plan=account.plan_id,
            plan_limits=plan.limits(),
            status=account.status,
            days_until_renewal=days_until(account.billing_cycle_end),
            next_billing_date=(
                account.billing_cycle_end.isoformat() if account.billing_cycle_end else None
            ),
            current_billing_start=(
                account.billing_cycle_start.isoformat() if account.billing_cycle_start else None
            ),
            credits_used_this_cycle=account.credits_used_this_cycle,
        )

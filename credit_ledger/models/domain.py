"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from credit_ledger.models.api import AccountStatus, CreditPool, EntryType


@dataclass(frozen=True)
class TenantAccountData:
    """Immutable snapshot of a tenant's ledger account."""

    tenant_id: str
    plan_id: str
    subscription_credits: int
    topoff_credits: int
    status: AccountStatus
    billing_cycle_start: datetime | None
    billing_cycle_end: datetime | None
    external_subscription_id: str | None
    external_customer_id: str | None
    credits_used_this_cycle: int
    overage_credits: int
    initial_subscription_credits: int
    initial_topoff_credits: int
    version: int
    last_usage_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate balance invariants."""
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        if self.subscription_credits < 0:
            raise ValueError(f"Subscription credits cannot be negative: {self.subscription_credits}")
        if self.topoff_credits < 0:
            raise ValueError(f"Top-off credits cannot be negative: {self.topoff_credits}")
        if self.version < 0:
            raise ValueError(f"Version cannot be negative: {self.version}")

    @property
    def total_credits(self) -> int:
        """Credits available across both pools."""
        return self.subscription_credits + self.topoff_credits

    def pool_balance(self, pool: CreditPool) -> int:
        """Current balance of a single pool."""
        if pool == CreditPool.SUBSCRIPTION:
            return self.subscription_credits
        return self.topoff_credits


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    tenant_id: str
    entry_type: EntryType
    pool: CreditPool
    amount: int
    balance_after: int
    subscription_balance_after: int
    topoff_balance_after: int
    description: str
    external_reference: str | None
    action: str | None
    credits_requested: int | None
    overage_credits: int
    untracked: bool
    created_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class EntryTemplate:
    """Fields shared by every ledger entry written for one operation."""

    entry_type: EntryType
    description: str
    external_reference: str | None = None
    action: str | None = None
    credits_requested: int | None = None
    created_by: str | None = None

    def __post_init__(self) -> None:
        """Validate template fields."""
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class Posting:
    """
    One signed movement on one pool, materialized as one ledger entry.

    entry_type and description override the template when set. Only the first
    posting with carries_reference=True receives the template's external reference.
    """

    pool: CreditPool
    amount: int
    overage_credits: int = 0
    entry_type: EntryType | None = None
    description: str | None = None
    carries_reference: bool = True

    def __post_init__(self) -> None:
        """Validate posting constraints."""
        if self.overage_credits < 0:
            raise ValueError(f"Overage cannot be negative: {self.overage_credits}")


@dataclass(frozen=True)
class BalanceUpdate:
    """
    Result of a pure balance function: the account's next state plus its postings.

    Optional fields left as None keep the stored value.
    """

    subscription_credits: int
    topoff_credits: int
    status: AccountStatus
    postings: tuple[Posting, ...] = ()
    credits_used_this_cycle: int | None = None
    overage_credits: int | None = None
    plan_id: str | None = None
    billing_cycle_start: datetime | None = None
    billing_cycle_end: datetime | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    record_usage: bool = False

    @property
    def total_credits(self) -> int:
        """Credits available across both pools after the update."""
        return self.subscription_credits + self.topoff_credits

    @classmethod
    def keep_balances(
        cls, account: TenantAccountData, status: AccountStatus | None = None
    ) -> "BalanceUpdate":
        """Update that leaves both pools untouched, optionally changing status."""
        return cls(
            subscription_credits=account.subscription_credits,
            topoff_credits=account.topoff_credits,
            status=status if status is not None else account.status,
        )


@dataclass(frozen=True)
class AppendResult:
    """Outcome of a committed ledger write."""

    previous: TenantAccountData
    account: TenantAccountData
    entries: tuple[LedgerEntryData, ...]


@dataclass(frozen=True)
class PoolTotals:
    """Sum of ledger entry amounts per pool."""

    subscription: int
    topoff: int

    def for_pool(self, pool: CreditPool) -> int:
        """Ledger sum for a single pool."""
        if pool == CreditPool.SUBSCRIPTION:
            return self.subscription
        return self.topoff


@dataclass(frozen=True)
class UsageRequest:
    """Ephemeral request to meter an AI action - never persisted."""

    tenant_id: str
    action: str
    quantity: int = 1

    def __post_init__(self) -> None:
        """Validate usage request."""
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        if not self.action:
            raise ValueError("action cannot be empty")
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive: {self.quantity}")


@dataclass(frozen=True)
class PurchaseEvent:
    """Verified one-time credit purchase derived from the payment gateway."""

    external_reference: str
    tenant_id: str
    credits_granted: int
    amount_paid_cents: int

    def __post_init__(self) -> None:
        """Validate purchase constraints."""
        if not self.external_reference:
            raise ValueError("external_reference cannot be empty")
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        if self.credits_granted <= 0:
            raise ValueError(f"Credits granted must be positive: {self.credits_granted}")
        if self.amount_paid_cents < 0:
            raise ValueError(f"Amount paid cannot be negative: {self.amount_paid_cents}")


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a deduction. status is None when the tenant is untracked."""

    success: bool
    credits_deducted: int
    credits_remaining: int
    subscription_credits: int
    topoff_credits: int
    status: AccountStatus | None
    is_overage: bool
    previous_status: AccountStatus | None = None

    @property
    def untracked(self) -> bool:
        """True when no ledger account exists for the tenant."""
        return self.status is None

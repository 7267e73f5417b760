"""
Ledger Store - Tenant accounts and the append-only credit ledger.

Every balance mutation goes through append_entry_and_update_balance, which
applies a pure balance function to a fresh snapshot of the account and writes
the new balances and the resulting ledger entries in one transaction guarded by
the account's version column.

NO DICTIONARIES - Rows are converted to frozen domain dataclasses at this boundary.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, TypeVar
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from credit_ledger.config import settings
from credit_ledger.db.models import LedgerEntry, TenantAccount, utc_now
from credit_ledger.exceptions import (
    DatabaseError,
    DataIntegrityError,
    DuplicateReferenceError,
    LedgerError,
    StorageConflictError,
    TenantNotFoundError,
    WriteVerificationError,
)
from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import (
    AppendResult,
    BalanceUpdate,
    EntryTemplate,
    LedgerEntryData,
    PoolTotals,
    TenantAccountData,
)
from credit_ledger.observability.logging import get_logger
from credit_ledger.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

BalanceFunction = Callable[[TenantAccountData], BalanceUpdate]

REFERENCE_CONSTRAINT = "uq_ledger_external_reference"


class LedgerRepository(Protocol):
    """Storage interface used by the gate, the deduction engine and the ingestor."""

    async def find_account(self, tenant_id: str) -> TenantAccountData | None:
        """Get account snapshot or None."""
        ...

    async def get_account(self, tenant_id: str) -> TenantAccountData:
        """Get account snapshot or raise TenantNotFoundError."""
        ...

    async def find_account_by_customer(self, customer_id: str) -> TenantAccountData | None:
        """Find account by payment gateway customer id."""
        ...

    async def find_account_by_subscription(
        self, subscription_id: str
    ) -> TenantAccountData | None:
        """Find account by payment gateway subscription id."""
        ...

    async def find_entry_by_reference(self, external_reference: str) -> LedgerEntryData | None:
        """Find the ledger entry that applied an external reference."""
        ...

    async def create_account(
        self,
        tenant_id: str,
        plan_id: str,
        subscription_credits: int,
        topoff_credits: int,
        billing_cycle_start: datetime,
        billing_cycle_end: datetime,
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
    ) -> tuple[TenantAccountData, bool]:
        """Create an account; returns (account, created)."""
        ...

    async def link_gateway_ids(
        self,
        tenant_id: str,
        external_customer_id: str | None,
        external_subscription_id: str | None,
    ) -> TenantAccountData:
        """Attach payment gateway ids to an account."""
        ...

    async def append_entry_and_update_balance(
        self,
        tenant_id: str,
        template: EntryTemplate | None,
        balance_fn: BalanceFunction,
    ) -> AppendResult:
        """Apply a balance function and append its ledger entries atomically."""
        ...

    async def record_untracked_usage(
        self,
        tenant_id: str,
        action: str,
        credits_requested: int,
        description: str,
    ) -> LedgerEntryData:
        """Record usage for a tenant without an account."""
        ...

    async def list_entries(
        self, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        """Page through a tenant's ledger, newest first; returns (entries, total)."""
        ...

    async def sum_entries_by_pool(self, tenant_id: str) -> PoolTotals:
        """Sum ledger entry amounts per pool."""
        ...


# ============================================================================
# Retry
# ============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for conflicting or transiently failing writes."""

    attempts: int
    initial_backoff: float
    max_backoff: float

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.attempts < 1:
            raise ValueError(f"Attempts must be at least 1: {self.attempts}")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("Backoff cannot be negative")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            attempts=settings.storage_retry_attempts,
            initial_backoff=settings.storage_retry_initial_backoff,
            max_backoff=settings.storage_retry_max_backoff,
        )


RETRYABLE_STORAGE_ERRORS = (StorageConflictError, DatabaseError)


async def with_storage_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> T:
    """
    Run a ledger write, retrying conflicts and transient database failures.

    The final failure is re-raised unchanged.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        error_type = type(error).__name__
        metrics.record_storage_retry(operation, error_type)
        logger.warning(
            "storage_write_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            error_type=error_type,
            error=str(error),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.initial_backoff, max=policy.max_backoff),
        retry=retry_if_exception_type(RETRYABLE_STORAGE_ERRORS),
        before_sleep=_before_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError(f"Retry loop for {operation} ended without an outcome")


# ============================================================================
# Row conversion
# ============================================================================


def account_to_domain(account: TenantAccount) -> TenantAccountData:
    """Convert ORM account to domain model."""
    return TenantAccountData(
        tenant_id=account.tenant_id,
        plan_id=account.plan_id,
        subscription_credits=account.subscription_credits,
        topoff_credits=account.topoff_credits,
        status=AccountStatus(account.status),
        billing_cycle_start=account.billing_cycle_start,
        billing_cycle_end=account.billing_cycle_end,
        external_subscription_id=account.external_subscription_id,
        external_customer_id=account.external_customer_id,
        credits_used_this_cycle=account.credits_used_this_cycle,
        overage_credits=account.overage_credits,
        initial_subscription_credits=account.initial_subscription_credits,
        initial_topoff_credits=account.initial_topoff_credits,
        version=account.version,
        last_usage_at=account.last_usage_at,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def entry_to_domain(entry: LedgerEntry) -> LedgerEntryData:
    """Convert ORM ledger entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        tenant_id=entry.tenant_id,
        entry_type=EntryType(entry.entry_type),
        pool=CreditPool(entry.pool),
        amount=entry.amount,
        balance_after=entry.balance_after,
        subscription_balance_after=entry.subscription_balance_after,
        topoff_balance_after=entry.topoff_balance_after,
        description=entry.description,
        external_reference=entry.external_reference,
        action=entry.action,
        credits_requested=entry.credits_requested,
        overage_credits=entry.overage_credits,
        untracked=entry.untracked,
        created_by=entry.created_by,
        created_at=entry.created_at,
    )


def _is_reference_violation(error: IntegrityError) -> bool:
    return REFERENCE_CONSTRAINT in str(error.orig)


def validate_balance_update(
    previous: TenantAccountData,
    template: EntryTemplate | None,
    next_state: BalanceUpdate,
) -> None:
    """
    Reject updates that break the ledger invariants.

    Each pool must stay non-negative and its postings must sum to exactly the
    change in its balance.

    Raises:
        DataIntegrityError: Invariant violated
    """
    if next_state.subscription_credits < 0 or next_state.topoff_credits < 0:
        raise DataIntegrityError(
            f"Balance for {previous.tenant_id} would go negative: "
            f"subscription={next_state.subscription_credits}, "
            f"topoff={next_state.topoff_credits}"
        )
    if next_state.postings and template is None:
        raise DataIntegrityError("Ledger postings require an entry template")

    for pool in CreditPool:
        posted = sum(p.amount for p in next_state.postings if p.pool == pool)
        target = (
            next_state.subscription_credits
            if pool == CreditPool.SUBSCRIPTION
            else next_state.topoff_credits
        )
        if previous.pool_balance(pool) + posted != target:
            raise DataIntegrityError(
                f"Postings on {pool.value} pool ({posted}) do not explain balance change "
                f"{previous.pool_balance(pool)} -> {target}"
            )


# ============================================================================
# SQL implementation
# ============================================================================


class SqlLedgerStore:
    """
    PostgreSQL-backed ledger store.

    Write pattern for every balance change:
    1. Load the account fresh from the database (with its version)
    2. Apply the pure balance function
    3. Conditional UPDATE on (tenant_id, version) and INSERT of the entries
    4. Read back and verify inside the transaction
    5. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger store with database session."""
        self.session = session

    # ========================================================================
    # Reads
    # ========================================================================

    async def find_account(self, tenant_id: str) -> TenantAccountData | None:
        row = await self._load_account_row(tenant_id)
        return account_to_domain(row) if row is not None else None

    async def get_account(self, tenant_id: str) -> TenantAccountData:
        """
        Get account by tenant id.

        Raises:
            TenantNotFoundError: No account exists
        """
        account = await self.find_account(tenant_id)
        if account is None:
            raise TenantNotFoundError(tenant_id)
        return account

    async def find_account_by_customer(self, customer_id: str) -> TenantAccountData | None:
        stmt = (
            select(TenantAccount)
            .where(TenantAccount.external_customer_id == customer_id)
            .order_by(TenantAccount.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        return account_to_domain(row) if row is not None else None

    async def find_account_by_subscription(
        self, subscription_id: str
    ) -> TenantAccountData | None:
        stmt = (
            select(TenantAccount)
            .where(TenantAccount.external_subscription_id == subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return account_to_domain(row) if row is not None else None

    async def find_entry_by_reference(self, external_reference: str) -> LedgerEntryData | None:
        stmt = select(LedgerEntry).where(LedgerEntry.external_reference == external_reference)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return entry_to_domain(row) if row is not None else None

    async def list_entries(
        self, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        count_stmt = (
            select(func.count()).select_from(LedgerEntry).where(LedgerEntry.tenant_id == tenant_id)
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.tenant_id == tenant_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [entry_to_domain(row) for row in result.scalars().all()], total

    async def sum_entries_by_pool(self, tenant_id: str) -> PoolTotals:
        stmt = (
            select(LedgerEntry.pool, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.tenant_id == tenant_id, LedgerEntry.untracked.is_(False))
            .group_by(LedgerEntry.pool)
        )
        result = await self.session.execute(stmt)
        subscription = 0
        topoff = 0
        for pool, total in result.all():
            if CreditPool(pool) == CreditPool.SUBSCRIPTION:
                subscription = int(total)
            else:
                topoff = int(total)
        return PoolTotals(subscription=subscription, topoff=topoff)

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_account(
        self,
        tenant_id: str,
        plan_id: str,
        subscription_credits: int,
        topoff_credits: int,
        billing_cycle_start: datetime,
        billing_cycle_end: datetime,
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
    ) -> tuple[TenantAccountData, bool]:
        """
        Create a tenant account, or return the existing one.

        The provisioned balances become the reconciliation baseline; no ledger
        entries are written.

        Returns:
            (account, created) where created is False if the tenant already existed
        """
        existing = await self.find_account(tenant_id)
        if existing is not None:
            return existing, False

        now = utc_now()
        account = TenantAccount(
            tenant_id=tenant_id,
            plan_id=plan_id,
            subscription_credits=subscription_credits,
            topoff_credits=topoff_credits,
            initial_subscription_credits=subscription_credits,
            initial_topoff_credits=topoff_credits,
            credits_used_this_cycle=0,
            overage_credits=0,
            status=AccountStatus.ACTIVE.value,
            billing_cycle_start=billing_cycle_start,
            billing_cycle_end=billing_cycle_end,
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - account created by another request
            await self.session.rollback()
            raced = await self.find_account(tenant_id)
            if raced is None:
                raise WriteVerificationError(
                    f"Account creation for {tenant_id} failed due to race condition"
                ) from None
            return raced, False

        verified = await self.session.get(TenantAccount, tenant_id)
        if verified is None:
            raise WriteVerificationError(f"Account {tenant_id} not found after insert")

        await self.session.commit()
        return account_to_domain(verified), True

    async def link_gateway_ids(
        self,
        tenant_id: str,
        external_customer_id: str | None,
        external_subscription_id: str | None,
    ) -> TenantAccountData:
        """Attach gateway ids without touching balances or status."""

        def _link(account: TenantAccountData) -> BalanceUpdate:
            return BalanceUpdate(
                subscription_credits=account.subscription_credits,
                topoff_credits=account.topoff_credits,
                status=account.status,
                external_customer_id=external_customer_id,
                external_subscription_id=external_subscription_id,
            )

        result = await self.append_entry_and_update_balance(tenant_id, None, _link)
        return result.account

    async def record_untracked_usage(
        self,
        tenant_id: str,
        action: str,
        credits_requested: int,
        description: str,
    ) -> LedgerEntryData:
        """Record a zero-amount usage entry for a tenant with no account."""
        entry = LedgerEntry(
            id=uuid4(),
            tenant_id=tenant_id,
            entry_type=EntryType.USAGE,
            pool=CreditPool.SUBSCRIPTION,
            amount=0,
            balance_after=0,
            subscription_balance_after=0,
            topoff_balance_after=0,
            description=description,
            external_reference=None,
            action=action,
            credits_requested=credits_requested,
            overage_credits=0,
            untracked=True,
            created_by=None,
            created_at=utc_now(),
        )
        self.session.add(entry)
        try:
            await self.session.commit()
        except DBAPIError as e:
            await self.session.rollback()
            raise DatabaseError(str(e)) from e
        return entry_to_domain(entry)

    async def append_entry_and_update_balance(
        self,
        tenant_id: str,
        template: EntryTemplate | None,
        balance_fn: BalanceFunction,
    ) -> AppendResult:
        """
        Apply balance_fn to the current account and persist the result atomically.

        Raises:
            TenantNotFoundError: No account exists
            DataIntegrityError: The update would make a pool negative or its
                postings do not explain the balance change
            DuplicateReferenceError: The template's external reference was already applied
            StorageConflictError: The account changed since it was read
            DatabaseError: The database failed
        """
        reference: str | None = None
        try:
            row = await self._load_account_row(tenant_id)
            if row is None:
                raise TenantNotFoundError(tenant_id)
            previous = account_to_domain(row)

            next_state = balance_fn(previous)
            validate_balance_update(previous, template, next_state)

            carries_reference = any(p.carries_reference for p in next_state.postings)
            if template is not None and carries_reference:
                reference = template.external_reference
            if reference is not None:
                if await self.find_entry_by_reference(reference) is not None:
                    raise DuplicateReferenceError(reference)

            now = utc_now()
            stmt = (
                update(TenantAccount)
                .where(
                    TenantAccount.tenant_id == tenant_id,
                    TenantAccount.version == previous.version,
                )
                .values(
                    subscription_credits=next_state.subscription_credits,
                    topoff_credits=next_state.topoff_credits,
                    status=next_state.status.value,
                    plan_id=_pick(next_state.plan_id, previous.plan_id),
                    credits_used_this_cycle=_pick(
                        next_state.credits_used_this_cycle, previous.credits_used_this_cycle
                    ),
                    overage_credits=_pick(next_state.overage_credits, previous.overage_credits),
                    billing_cycle_start=_pick(
                        next_state.billing_cycle_start, previous.billing_cycle_start
                    ),
                    billing_cycle_end=_pick(
                        next_state.billing_cycle_end, previous.billing_cycle_end
                    ),
                    external_customer_id=_pick(
                        next_state.external_customer_id, previous.external_customer_id
                    ),
                    external_subscription_id=_pick(
                        next_state.external_subscription_id, previous.external_subscription_id
                    ),
                    last_usage_at=now if next_state.record_usage else previous.last_usage_at,
                    version=previous.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                logger.info(
                    "storage_conflict",
                    tenant_id=tenant_id,
                    expected_version=previous.version,
                )
                raise StorageConflictError(tenant_id, previous.version)

            entries = self._build_entries(previous, template, next_state, reference, now)
            if entries:
                self.session.add_all(entries)
                await self.session.flush()

            verified = await self._verify_account(tenant_id, previous.version + 1, next_state)
            await self.session.commit()

        except IntegrityError as e:
            await self.session.rollback()
            if reference is not None and _is_reference_violation(e):
                raise DuplicateReferenceError(reference) from e
            raise DataIntegrityError(str(e.orig)) from e
        except DBAPIError as e:
            await self.session.rollback()
            raise DatabaseError(str(e)) from e
        except LedgerError:
            await self.session.rollback()
            raise

        return AppendResult(
            previous=previous,
            account=verified,
            entries=tuple(entry_to_domain(e) for e in entries),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load_account_row(self, tenant_id: str) -> TenantAccount | None:
        """Load account, bypassing the identity map so the version is current."""
        stmt = (
            select(TenantAccount)
            .where(TenantAccount.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _build_entries(
        self,
        previous: TenantAccountData,
        template: EntryTemplate | None,
        next_state: BalanceUpdate,
        reference: str | None,
        now: datetime,
    ) -> list[LedgerEntry]:
        if template is None:
            return []

        subscription = previous.subscription_credits
        topoff = previous.topoff_credits
        reference_used = False
        entries: list[LedgerEntry] = []

        for posting in next_state.postings:
            if posting.pool == CreditPool.SUBSCRIPTION:
                subscription += posting.amount
            else:
                topoff += posting.amount

            entry_reference = None
            if posting.carries_reference and not reference_used:
                entry_reference = reference
                reference_used = True

            entries.append(
                LedgerEntry(
                    id=uuid4(),
                    tenant_id=previous.tenant_id,
                    entry_type=posting.entry_type or template.entry_type,
                    pool=posting.pool,
                    amount=posting.amount,
                    balance_after=subscription + topoff,
                    subscription_balance_after=subscription,
                    topoff_balance_after=topoff,
                    description=posting.description or template.description,
                    external_reference=entry_reference,
                    action=template.action,
                    credits_requested=template.credits_requested,
                    overage_credits=posting.overage_credits,
                    untracked=False,
                    created_by=template.created_by,
                    created_at=now,
                )
            )
        return entries

    async def _verify_account(
        self, tenant_id: str, expected_version: int, next_state: BalanceUpdate
    ) -> TenantAccountData:
        row = await self._load_account_row(tenant_id)
        if row is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise WriteVerificationError(f"Account {tenant_id} disappeared after update")

        verified = account_to_domain(row)
        if (
            verified.version != expected_version
            or verified.subscription_credits != next_state.subscription_credits
            or verified.topoff_credits != next_state.topoff_credits
        ):
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Account {tenant_id} mismatch after update: expected version "
                f"{expected_version} with {next_state.subscription_credits}/"
                f"{next_state.topoff_credits}, got version {verified.version} with "
                f"{verified.subscription_credits}/{verified.topoff_credits}"
            )

        metrics.db_write_verifications_total.labels(success="True").inc()
        return verified


def _pick(value: T | None, fallback: T) -> T:
    return fallback if value is None else value

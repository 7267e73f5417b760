"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from credit_ledger.exceptions import DataIntegrityError
from credit_ledger.models.api import CreditPool, EntryType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class TenantAccount(Base):
    """
    ORM model for tenant_accounts table.

    One row per tenant holding both credit pools. The version column is the
    optimistic-concurrency token; every balance write bumps it.
    """

    __tablename__ = "tenant_accounts"

    # Primary Key - provisioning assigns tenant ids
    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Plan
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, default="starter")

    # Balances
    subscription_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    topoff_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Reconciliation baseline (balances at provisioning time)
    initial_subscription_credits: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    initial_topoff_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Usage tracking for the current billing cycle
    credits_used_this_cycle: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    overage_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_usage_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Billing cycle
    billing_cycle_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    billing_cycle_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Payment gateway references
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("subscription_credits >= 0", name="ck_subscription_credits_non_negative"),
        CheckConstraint("topoff_credits >= 0", name="ck_topoff_credits_non_negative"),
        CheckConstraint("credits_used_this_cycle >= 0", name="ck_cycle_usage_non_negative"),
        CheckConstraint("overage_credits >= 0", name="ck_overage_non_negative"),
        CheckConstraint(
            "status IN ('active', 'warning', 'exhausted', 'past_due', 'suspended', 'canceled')",
            name="ck_tenant_account_status",
        ),
        UniqueConstraint("external_subscription_id", name="uq_tenant_external_subscription"),
        Index(
            "idx_tenant_accounts_customer",
            "external_customer_id",
            postgresql_where=(external_customer_id.isnot(None)),
        ),
        Index("idx_tenant_accounts_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TenantAccount(tenant_id={self.tenant_id}, plan={self.plan_id}, "
            f"subscription={self.subscription_credits}, topoff={self.topoff_credits}, "
            f"version={self.version})>"
        )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Immutable, append-only ledger of every balance-affecting event.
    No foreign key to tenant_accounts: untracked usage is recorded for
    tenants that have no account yet.
    """

    __tablename__ = "ledger_entries"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    entry_type: Mapped[EntryType] = mapped_column(
        SQLEnum(
            EntryType,
            name="ledger_entry_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    pool: Mapped[CreditPool] = mapped_column(
        SQLEnum(
            CreditPool,
            name="credit_pool",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Signed amount and balance snapshots (denormalized for auditing)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subscription_balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    topoff_balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String, nullable=False)

    # Idempotency key (Stripe session / payment intent / invoice / event id)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Usage details
    action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    credits_requested: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    overage_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    untracked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Admin uid for manual adjustments
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("overage_credits >= 0", name="ck_entry_overage_non_negative"),
        CheckConstraint(
            "balance_after = subscription_balance_after + topoff_balance_after",
            name="ck_entry_balance_consistency",
        ),
        UniqueConstraint("external_reference", name="uq_ledger_external_reference"),
        Index("idx_ledger_entries_tenant_created", "tenant_id", "created_at"),
        Index("idx_ledger_entries_entry_type", "entry_type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, tenant_id={self.tenant_id}, "
            f"type={self.entry_type}, pool={self.pool}, amount={self.amount})>"
        )


@event.listens_for(LedgerEntry, "before_update")
def _refuse_entry_update(mapper, connection, target: LedgerEntry) -> None:  # type: ignore[no-untyped-def]
    raise DataIntegrityError(f"Ledger entry {target.id} is immutable")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_entry_delete(mapper, connection, target: LedgerEntry) -> None:  # type: ignore[no-untyped-def]
    raise DataIntegrityError(f"Ledger entry {target.id} cannot be deleted")

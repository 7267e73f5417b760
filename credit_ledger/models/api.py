"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class AccountStatus(str, Enum):
    """Tenant account status enumeration."""

    ACTIVE = "active"
    WARNING = "warning"
    EXHAUSTED = "exhausted"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


class EntryType(str, Enum):
    """Ledger entry type enumeration."""

    ALLOCATION = "allocation"
    USAGE = "usage"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    PLAN_CHANGE = "plan_change"


class CreditPool(str, Enum):
    """Balance pool a ledger entry applies to."""

    SUBSCRIPTION = "subscription"
    TOPOFF = "topoff"


class ActionKind(str, Enum):
    """Metered AI action kinds."""

    ARTICLE_GENERATION = "article_generation"
    IMAGE_GENERATION = "image_generation"
    FACT_CHECK = "fact_check"
    SEO_OPTIMIZATION = "seo_optimization"
    WEB_SEARCH = "web_search"


# ============================================================================
# Credit Check Models
# ============================================================================


class CreditCheckRequest(BaseModel):
    """POST /v1/credits/check request body."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    action: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(default=1, gt=0, le=10_000)


class CreditCheckResponse(BaseModel):
    """POST /v1/credits/check response."""

    allowed: bool
    credits_required: int
    credits_remaining: int
    message: str | None = None


# ============================================================================
# Deduction Models
# ============================================================================


class DeductRequest(BaseModel):
    """POST /v1/credits/deduct request body."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    action: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(default=1, gt=0, le=10_000)
    description: str = Field(..., min_length=1, max_length=500)
    article_id: str | None = Field(None, max_length=255)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        """Reject whitespace-only descriptions."""
        if not v.strip():
            raise ValueError("description cannot be blank")
        return v.strip()


class DeductResponse(BaseModel):
    """POST /v1/credits/deduct response."""

    success: bool
    credits_deducted: int
    credits_remaining: int
    subscription_credits: int = 0
    topoff_credits: int = 0
    status: AccountStatus | Literal["untracked"]
    is_overage: bool = False


# ============================================================================
# Balance Models
# ============================================================================


class PlanLimits(BaseModel):
    """Feature limits of the tenant's plan (-1 = unlimited)."""

    monthly_credits: int
    price_cents: int
    max_journalists: int
    max_articles_per_day: int


class BalanceBreakdown(BaseModel):
    """Credit balance split by pool."""

    subscription: int
    topoff: int
    total: int


class BalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    tenant_id: str
    balance: BalanceBreakdown
    plan: str
    plan_limits: PlanLimits
    status: AccountStatus
    days_until_renewal: int
    next_billing_date: str | None = None
    current_billing_start: str | None = None
    credits_used_this_cycle: int = 0


# ============================================================================
# Provisioning / Administration Models
# ============================================================================


class CreateAccountRequest(BaseModel):
    """POST /v1/credits/accounts request body (tenant provisioning)."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    plan_id: str = Field(default="starter", min_length=1, max_length=50)
    subscription_credits: int | None = Field(
        None, ge=0, description="Initial subscription credits (default: plan allocation)"
    )
    topoff_credits: int = Field(default=0, ge=0)
    external_customer_id: str | None = Field(None, max_length=255)
    external_subscription_id: str | None = Field(None, max_length=255)


class AccountResponse(BaseModel):
    """Tenant account representation."""

    tenant_id: str
    plan_id: str
    subscription_credits: int
    topoff_credits: int
    status: AccountStatus
    billing_cycle_start: str | None = None
    billing_cycle_end: str | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    created_at: str


class AdjustCreditsRequest(BaseModel):
    """POST /v1/credits/adjustments request body."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    pool: CreditPool = CreditPool.TOPOFF
    amount: int = Field(..., description="Signed credit delta")
    description: str = Field(..., min_length=1, max_length=500)
    reference: str | None = Field(None, max_length=255, description="Idempotency key")
    created_by: str | None = Field(None, max_length=255)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        """Adjustments must move the balance."""
        if v == 0:
            raise ValueError("amount cannot be zero")
        return v


class ChangePlanRequest(BaseModel):
    """POST /v1/credits/plan request body."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    plan_id: str = Field(..., min_length=1, max_length=50)
    created_by: str | None = Field(None, max_length=255)


class SetStatusRequest(BaseModel):
    """POST /v1/credits/status request body (administrative suspend/reinstate)."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    suspended: bool
    reason: str | None = Field(None, max_length=500)


class ConfirmPurchaseRequest(BaseModel):
    """POST /v1/credits/purchases/confirm request body."""

    tenant_id: str = Field(..., min_length=1, max_length=255)
    payment_intent_id: str = Field(..., min_length=1, max_length=255)
    pack_id: str = Field(..., min_length=1, max_length=50)


class PurchaseResponse(BaseModel):
    """Result of applying a credit purchase."""

    success: bool
    already_applied: bool
    credits_added: int
    topoff_credits: int
    total_credits: int


# ============================================================================
# Ledger / Reconciliation Models
# ============================================================================


class LedgerEntryItem(BaseModel):
    """Single ledger entry in a history listing."""

    entry_id: str
    entry_type: EntryType
    pool: CreditPool
    amount: int
    balance_after: int
    description: str
    external_reference: str | None = None
    action: str | None = None
    overage_credits: int = 0
    untracked: bool = False
    created_by: str | None = None
    created_at: str


class LedgerListResponse(BaseModel):
    """GET /v1/credits/ledger response."""

    tenant_id: str
    entries: list[LedgerEntryItem]
    total_count: int
    has_more: bool


class PoolReconciliation(BaseModel):
    """Ledger-versus-balance comparison for one pool."""

    pool: CreditPool
    initial_credits: int
    ledger_sum: int
    current_balance: int
    drift: int


class ReconciliationResponse(BaseModel):
    """GET /v1/credits/reconcile response."""

    tenant_id: str
    balanced: bool
    pools: list[PoolReconciliation]


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookResponse(BaseModel):
    """POST /v1/billing/webhooks/stripe response."""

    received: bool = True
    status: str
    event_id: str | None = None

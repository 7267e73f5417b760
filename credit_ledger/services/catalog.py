"""
Plan catalog, cost table and credit-pack catalog.

Static configuration: changing prices, allocations or action costs requires a
deploy. Plan and pack definitions must match the Stripe products they bill.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from credit_ledger.exceptions import (
    UnknownActionError,
    UnknownCreditPackError,
    UnknownPlanError,
)
from credit_ledger.models.api import ActionKind, PlanLimits

UNLIMITED = -1

DEFAULT_PLAN_ID = "starter"


@dataclass(frozen=True)
class PlanDefinition:
    """Subscription plan: monthly credit allocation, price and feature limits."""

    id: str
    name: str
    monthly_credits: int
    price_cents: int
    max_journalists: int
    max_articles_per_day: int

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.id:
            raise ValueError("Plan ID required")
        if self.monthly_credits <= 0:
            raise ValueError(f"Monthly credits must be positive: {self.monthly_credits}")
        if self.price_cents < 0:
            raise ValueError(f"Price cannot be negative: {self.price_cents}")
        for limit in (self.max_journalists, self.max_articles_per_day):
            if limit < 0 and limit != UNLIMITED:
                raise ValueError(f"Limits must be non-negative or {UNLIMITED}: {limit}")

    def limits(self) -> PlanLimits:
        """Feature limits as an API model."""
        return PlanLimits(
            monthly_credits=self.monthly_credits,
            price_cents=self.price_cents,
            max_journalists=self.max_journalists,
            max_articles_per_day=self.max_articles_per_day,
        )


@dataclass(frozen=True)
class CreditPack:
    """One-time top-off credit pack."""

    id: str
    credits: int
    price_cents: int
    name: str

    def __post_init__(self) -> None:
        """Validate pack configuration."""
        if not self.id:
            raise ValueError("Pack ID required")
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if self.price_cents <= 0:
            raise ValueError(f"Price must be positive: {self.price_cents}")


PLAN_CATALOG: Mapping[str, PlanDefinition] = MappingProxyType(
    {
        "starter": PlanDefinition(
            id="starter",
            name="Starter",
            monthly_credits=250,
            price_cents=9900,
            max_journalists=2,
            max_articles_per_day=10,
        ),
        "growth": PlanDefinition(
            id="growth",
            name="Growth",
            monthly_credits=575,
            price_cents=19900,
            max_journalists=3,
            max_articles_per_day=25,
        ),
        "professional": PlanDefinition(
            id="professional",
            name="Professional",
            monthly_credits=1000,
            price_cents=29900,
            max_journalists=5,
            max_articles_per_day=50,
        ),
        "enterprise": PlanDefinition(
            id="enterprise",
            name="Enterprise",
            monthly_credits=10000,
            price_cents=49900,
            max_journalists=UNLIMITED,
            max_articles_per_day=UNLIMITED,
        ),
    }
)

# Credits charged per unit of each metered action
COST_TABLE: Mapping[ActionKind, int] = MappingProxyType(
    {
        ActionKind.ARTICLE_GENERATION: 10,
        ActionKind.IMAGE_GENERATION: 5,
        ActionKind.FACT_CHECK: 2,
        ActionKind.SEO_OPTIMIZATION: 3,
        ActionKind.WEB_SEARCH: 1,
    }
)

CREDIT_PACKS: Mapping[str, CreditPack] = MappingProxyType(
    {
        "credits_50": CreditPack(id="credits_50", credits=50, price_cents=2900, name="50 Credits"),
        "credits_100": CreditPack(
            id="credits_100", credits=100, price_cents=4900, name="100 Credits"
        ),
        "credits_250": CreditPack(
            id="credits_250", credits=250, price_cents=9900, name="250 Credits"
        ),
    }
)


def get_plan(plan_id: str) -> PlanDefinition:
    """
    Get plan definition by ID.

    Raises:
        UnknownPlanError: If the plan is not in the catalog
    """
    plan = PLAN_CATALOG.get(plan_id)
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


def get_plan_or_default(plan_id: str | None) -> PlanDefinition:
    """Get plan definition, falling back to the starter plan for unknown ids."""
    return PLAN_CATALOG.get(plan_id or DEFAULT_PLAN_ID) or PLAN_CATALOG[DEFAULT_PLAN_ID]


def parse_action(action: str) -> ActionKind:
    """
    Resolve an action name to its ActionKind.

    Raises:
        UnknownActionError: If the action is not metered
    """
    try:
        return ActionKind(action)
    except ValueError:
        raise UnknownActionError(action) from None


def cost_of(action: str | ActionKind, quantity: int = 1) -> int:
    """
    Credits required for `quantity` units of an action.

    Raises:
        UnknownActionError: If the action is not in the cost table
        ValueError: If quantity is not positive
    """
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive: {quantity}")
    kind = action if isinstance(action, ActionKind) else parse_action(action)
    return COST_TABLE[kind] * quantity


def get_credit_pack(pack_id: str) -> CreditPack:
    """
    Get credit pack by ID.

    Raises:
        UnknownCreditPackError: If the pack is not in the catalog
    """
    pack = CREDIT_PACKS.get(pack_id)
    if pack is None:
        raise UnknownCreditPackError(pack_id)
    return pack

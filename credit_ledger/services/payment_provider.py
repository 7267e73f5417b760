"""
Payment Provider Protocol - Provider-agnostic interface and typed webhook events.

NO DICTIONARIES - Gateway payloads are parsed into the event variants below
before the ledger sees them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union


@dataclass(frozen=True)
class CheckoutTopUpCompleted:
    """A checkout session for a one-time top-off completed."""

    event_id: str
    event_type: str
    session_id: str
    tenant_id: str
    credits: int
    amount_paid_cents: int


@dataclass(frozen=True)
class PaymentIntentTopUpSucceeded:
    """A payment intent for a credit pack succeeded."""

    event_id: str
    event_type: str
    payment_intent_id: str
    tenant_id: str
    pack_id: str
    amount_received_cents: int


@dataclass(frozen=True)
class InvoicePaid:
    """A subscription invoice was paid (renewal)."""

    event_id: str
    event_type: str
    invoice_id: str
    customer_id: str | None
    subscription_id: str | None
    period_ends: tuple[datetime, ...]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    """A subscription invoice payment failed."""

    event_id: str
    event_type: str
    invoice_id: str
    customer_id: str | None
    subscription_id: str | None


@dataclass(frozen=True)
class SubscriptionUpdated:
    """Gateway-side subscription state changed."""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str | None
    gateway_status: str
    current_period_end: datetime | None
    tenant_id: str | None
    plan_id: str | None


@dataclass(frozen=True)
class SubscriptionDeleted:
    """The subscription was canceled at the gateway."""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    """A verified event the ledger does not act on."""

    event_id: str
    event_type: str
    reason: str


WebhookEvent = Union[
    CheckoutTopUpCompleted,
    PaymentIntentTopUpSucceeded,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    SubscriptionDeleted,
    UnhandledEvent,
]


@dataclass(frozen=True)
class PaymentStatus:
    """Current state of a one-time payment at the gateway."""

    payment_id: str
    status: str
    amount_minor: int
    currency: str
    metadata_tenant_id: str | None
    metadata_pack_id: str | None

    @property
    def succeeded(self) -> bool:
        """True when the gateway has captured the payment."""
        return self.status == "succeeded"


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The ledger only consumes verified events and payment lookups; checkout and
    subscription management stay with the gateway.
    """

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            SignatureVerificationError: If the signature or payload is invalid
        """
        ...

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """
        Look up a one-time payment.

        Raises:
            PaymentProviderError: If the gateway call fails
        """
        ...

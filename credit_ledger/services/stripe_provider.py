"""
Stripe Payment Provider Implementation.

Verifies webhook signatures with the Stripe SDK and parses the verified JSON
into typed events. Only the fields the ledger needs are read.
"""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from credit_ledger.exceptions import PaymentProviderError, SignatureVerificationError
from credit_ledger.services.payment_provider import (
    CheckoutTopUpCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentIntentTopUpSucceeded,
    PaymentStatus,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookEvent,
)

logger = get_logger(__name__)

TOPOFF_METADATA_TYPE = "credit_topoff"

INVOICE_PAID_EVENTS = frozenset({"invoice.payment_succeeded", "invoice.paid"})

# Delayed payment methods complete the session unpaid and settle later.
CHECKOUT_PAID_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, Mapping):
        return _text(value.get("id"))
    return _text(value)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _positive_int(value: Any) -> int | None:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    # Newer API versions moved the subscription under parent.subscription_details
    direct = _object_id(invoice.get("subscription"))
    if direct:
        return direct
    details = _mapping(_mapping(invoice.get("parent")).get("subscription_details"))
    return _object_id(details.get("subscription"))


def _invoice_period_ends(invoice: Mapping[str, Any]) -> tuple[datetime, ...]:
    candidates: list[datetime] = []
    period_end = _timestamp(invoice.get("period_end"))
    if period_end:
        candidates.append(period_end)
    for line in _mapping(invoice.get("lines")).get("data") or []:
        line_end = _timestamp(_mapping(_mapping(line).get("period")).get("end"))
        if line_end:
            candidates.append(line_end)
    return tuple(candidates)


def _subscription_period_end(subscription: Mapping[str, Any]) -> datetime | None:
    # Newer API versions report the period per subscription item
    top_level = _timestamp(subscription.get("current_period_end"))
    if top_level:
        return top_level
    ends = [
        _timestamp(_mapping(item).get("current_period_end"))
        for item in _mapping(subscription.get("items")).get("data") or []
    ]
    known = [end for end in ends if end is not None]
    return max(known) if known else None


def parse_event(event: Mapping[str, Any]) -> WebhookEvent:
    """
    Convert a verified Stripe event into a typed ledger event.

    Raises:
        SignatureVerificationError: If the event envelope is malformed
    """
    event_id = _text(event.get("id"))
    event_type = _text(event.get("type"))
    data_object = _mapping(_mapping(event.get("data")).get("object"))
    if event_id is None or event_type is None:
        raise SignatureVerificationError("Webhook event is missing id or type")

    metadata = _mapping(data_object.get("metadata"))
    object_id = _text(data_object.get("id"))

    if event_type in CHECKOUT_PAID_EVENTS:
        if metadata.get("type") != TOPOFF_METADATA_TYPE:
            return UnhandledEvent(event_id, event_type, "not_a_topoff_session")
        tenant_id = _text(metadata.get("tenantId"))
        credits = _positive_int(metadata.get("credits"))
        if object_id is None or tenant_id is None or credits is None:
            return UnhandledEvent(event_id, event_type, "incomplete_topoff_metadata")
        if data_object.get("payment_status") not in (None, "paid", "no_payment_required"):
            return UnhandledEvent(event_id, event_type, "session_not_paid")
        return CheckoutTopUpCompleted(
            event_id=event_id,
            event_type=event_type,
            session_id=object_id,
            tenant_id=tenant_id,
            credits=credits,
            amount_paid_cents=int(data_object.get("amount_total") or 0),
        )

    if event_type == "payment_intent.succeeded":
        if metadata.get("type") != TOPOFF_METADATA_TYPE:
            return UnhandledEvent(event_id, event_type, "not_a_topoff_payment")
        tenant_id = _text(metadata.get("tenantId"))
        pack_id = _text(metadata.get("packId"))
        if object_id is None or tenant_id is None or pack_id is None:
            return UnhandledEvent(event_id, event_type, "incomplete_topoff_metadata")
        return PaymentIntentTopUpSucceeded(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=object_id,
            tenant_id=tenant_id,
            pack_id=pack_id,
            amount_received_cents=int(
                data_object.get("amount_received") or data_object.get("amount") or 0
            ),
        )

    if event_type in INVOICE_PAID_EVENTS or event_type == "invoice.payment_failed":
        if object_id is None:
            return UnhandledEvent(event_id, event_type, "missing_invoice_id")
        customer_id = _object_id(data_object.get("customer"))
        subscription_id = _invoice_subscription_id(data_object)
        if subscription_id is None:
            return UnhandledEvent(event_id, event_type, "not_a_subscription_invoice")
        if event_type == "invoice.payment_failed":
            return InvoicePaymentFailed(
                event_id=event_id,
                event_type=event_type,
                invoice_id=object_id,
                customer_id=customer_id,
                subscription_id=subscription_id,
            )
        return InvoicePaid(
            event_id=event_id,
            event_type=event_type,
            invoice_id=object_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            period_ends=_invoice_period_ends(data_object),
        )

    if event_type == "customer.subscription.updated":
        status = _text(data_object.get("status"))
        if object_id is None or status is None:
            return UnhandledEvent(event_id, event_type, "incomplete_subscription")
        return SubscriptionUpdated(
            event_id=event_id,
            event_type=event_type,
            subscription_id=object_id,
            customer_id=_object_id(data_object.get("customer")),
            gateway_status=status,
            current_period_end=_subscription_period_end(data_object),
            tenant_id=_text(metadata.get("tenantId")),
            plan_id=_text(metadata.get("planId")),
        )

    if event_type == "customer.subscription.deleted":
        if object_id is None:
            return UnhandledEvent(event_id, event_type, "incomplete_subscription")
        return SubscriptionDeleted(
            event_id=event_id,
            event_type=event_type,
            subscription_id=object_id,
            customer_id=_object_id(data_object.get("customer")),
        )

    return UnhandledEvent(event_id, event_type, "unsupported_event_type")


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            tolerance_seconds: Maximum accepted age of a signed delivery
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        stripe.api_key = api_key

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a Stripe webhook delivery.

        No ledger state is touched before the signature checks out.

        Raises:
            SignatureVerificationError: If the signature, timestamp or JSON is invalid
        """
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            payload_text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload_text, signature, self.webhook_secret, self.tolerance_seconds
            )
        except UnicodeDecodeError as exc:
            logger.warning("stripe_webhook_payload_not_utf8")
            raise SignatureVerificationError("Webhook payload is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise SignatureVerificationError("Invalid Stripe webhook signature") from exc

        try:
            event = json.loads(payload_text)
        except json.JSONDecodeError as exc:
            logger.warning("stripe_webhook_parsing_failed", error=str(exc))
            raise SignatureVerificationError("Webhook payload is not valid JSON") from exc

        if not isinstance(event, Mapping):
            raise SignatureVerificationError("Webhook payload is not a JSON object")

        parsed = parse_event(event)
        logger.info(
            "stripe_webhook_verified",
            event_id=parsed.event_id,
            event_type=parsed.event_type,
        )
        return parsed

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """
        Get current status of a payment intent from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("getting_stripe_payment_status", payment_intent_id=payment_id)

            payment_intent = stripe.PaymentIntent.retrieve(payment_id)
            metadata = payment_intent.get("metadata") or {}

            logger.info(
                "stripe_payment_status_retrieved",
                payment_intent_id=payment_id,
                status=payment_intent.status,
            )

            return PaymentStatus(
                payment_id=payment_intent.id,
                status=payment_intent.status,
                amount_minor=payment_intent.get("amount_received") or payment_intent.amount,
                currency=(payment_intent.currency or "").upper(),
                metadata_tenant_id=metadata.get("tenantId"),
                metadata_pack_id=metadata.get("packId"),
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_status_failed",
                payment_intent_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get payment status: {exc}") from exc

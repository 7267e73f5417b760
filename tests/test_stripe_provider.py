"""
Tests for Stripe payment provider.

Signatures are built with the real signing scheme so the SDK's own verifier runs.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import stripe
from ledger_fakes import WEBHOOK_SECRET, sign_stripe_payload, stripe_event

from credit_ledger.exceptions import PaymentProviderError, SignatureVerificationError
from credit_ledger.services.payment_provider import (
    CheckoutTopUpCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentIntentTopUpSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)
from credit_ledger.services.stripe_provider import StripeProvider, parse_event


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_fake_key", webhook_secret=WEBHOOK_SECRET)


def envelope(event_type: str, data_object: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


class TestVerifyWebhook:
    """Tests for signature verification."""

    def test_valid_signature(self, provider):
        payload = stripe_event(
            "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}
        )

        event = provider.verify_webhook(payload, sign_stripe_payload(payload))

        assert isinstance(event, SubscriptionDeleted)
        assert event.subscription_id == "sub_1"

    def test_wrong_secret(self, provider):
        payload = stripe_event("customer.subscription.deleted", {"id": "sub_1"})
        signature = sign_stripe_payload(payload, secret="whsec_other")

        with pytest.raises(SignatureVerificationError, match="Invalid Stripe webhook signature"):
            provider.verify_webhook(payload, signature)

    def test_tampered_payload(self, provider):
        payload = stripe_event("customer.subscription.deleted", {"id": "sub_1"})
        signature = sign_stripe_payload(payload)
        tampered = payload.replace(b"sub_1", b"sub_2")

        with pytest.raises(SignatureVerificationError):
            provider.verify_webhook(tampered, signature)

    def test_stale_timestamp(self, provider):
        payload = stripe_event("customer.subscription.deleted", {"id": "sub_1"})
        signature = sign_stripe_payload(payload, timestamp=1_000_000)

        with pytest.raises(SignatureVerificationError):
            provider.verify_webhook(payload, signature)

    def test_missing_signature(self, provider):
        with pytest.raises(SignatureVerificationError, match="Missing"):
            provider.verify_webhook(b"{}", "")

    def test_signed_non_json_payload(self, provider):
        payload = b"not json at all"

        with pytest.raises(SignatureVerificationError, match="not valid JSON"):
            provider.verify_webhook(payload, sign_stripe_payload(payload))

    def test_signed_non_object_payload(self, provider):
        payload = json.dumps([1, 2, 3]).encode()

        with pytest.raises(SignatureVerificationError, match="not a JSON object"):
            provider.verify_webhook(payload, sign_stripe_payload(payload))


class TestParseEvent:
    """Tests for event parsing."""

    def test_checkout_topup(self):
        event = parse_event(
            envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "payment_status": "paid",
                    "amount_total": 4900,
                    "metadata": {"type": "credit_topoff", "tenantId": "t-1", "credits": "100"},
                },
            )
        )

        assert event == CheckoutTopUpCompleted(
            event_id="evt_1",
            event_type="checkout.session.completed",
            session_id="cs_1",
            tenant_id="t-1",
            credits=100,
            amount_paid_cents=4900,
        )

    def test_delayed_checkout_settles_on_async_success(self):
        session = {
            "id": "cs_delayed",
            "amount_total": 4900,
            "metadata": {"type": "credit_topoff", "tenantId": "t-1", "credits": "100"},
        }

        completed = parse_event(
            envelope("checkout.session.completed", {**session, "payment_status": "unpaid"})
        )
        settled = parse_event(
            envelope(
                "checkout.session.async_payment_succeeded",
                {**session, "payment_status": "paid"},
            )
        )

        assert isinstance(completed, UnhandledEvent)
        assert completed.reason == "session_not_paid"
        assert settled == CheckoutTopUpCompleted(
            event_id="evt_1",
            event_type="checkout.session.async_payment_succeeded",
            session_id="cs_delayed",
            tenant_id="t-1",
            credits=100,
            amount_paid_cents=4900,
        )

    @pytest.mark.parametrize(
        ("data_object", "reason"),
        [
            ({"id": "cs_1", "metadata": {}}, "not_a_topoff_session"),
            (
                {"id": "cs_1", "metadata": {"type": "credit_topoff", "credits": "100"}},
                "incomplete_topoff_metadata",
            ),
            (
                {
                    "id": "cs_1",
                    "metadata": {"type": "credit_topoff", "tenantId": "t-1", "credits": "-4"},
                },
                "incomplete_topoff_metadata",
            ),
            (
                {
                    "id": "cs_1",
                    "payment_status": "unpaid",
                    "metadata": {"type": "credit_topoff", "tenantId": "t-1", "credits": "10"},
                },
                "session_not_paid",
            ),
        ],
    )
    def test_checkout_not_applicable(self, data_object, reason):
        event = parse_event(envelope("checkout.session.completed", data_object))

        assert isinstance(event, UnhandledEvent)
        assert event.reason == reason

    def test_payment_intent_topup(self):
        event = parse_event(
            envelope(
                "payment_intent.succeeded",
                {
                    "id": "pi_1",
                    "amount_received": 9900,
                    "metadata": {
                        "type": "credit_topoff",
                        "tenantId": "t-1",
                        "packId": "credits_250",
                    },
                },
            )
        )

        assert isinstance(event, PaymentIntentTopUpSucceeded)
        assert event.pack_id == "credits_250"
        assert event.amount_received_cents == 9900

    def test_invoice_paid_collects_period_ends(self):
        event = parse_event(
            envelope(
                "invoice.paid",
                {
                    "id": "in_1",
                    "customer": "cus_1",
                    "subscription": {"id": "sub_1"},
                    "period_end": 1_790_000_000,
                    "lines": {"data": [{"period": {"end": 1_792_000_000}}]},
                },
            )
        )

        assert isinstance(event, InvoicePaid)
        assert event.subscription_id == "sub_1"
        assert [int(end.timestamp()) for end in event.period_ends] == [
            1_790_000_000,
            1_792_000_000,
        ]

    def test_invoice_subscription_under_parent(self):
        event = parse_event(
            envelope(
                "invoice.payment_failed",
                {
                    "id": "in_2",
                    "customer": "cus_1",
                    "parent": {"subscription_details": {"subscription": "sub_9"}},
                },
            )
        )

        assert isinstance(event, InvoicePaymentFailed)
        assert event.subscription_id == "sub_9"

    def test_one_off_invoice_ignored(self):
        event = parse_event(envelope("invoice.payment_succeeded", {"id": "in_3"}))

        assert isinstance(event, UnhandledEvent)
        assert event.reason == "not_a_subscription_invoice"

    def test_subscription_updated_reads_item_period(self):
        event = parse_event(
            envelope(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "past_due",
                    "items": {
                        "data": [
                            {"current_period_end": 1_790_000_000},
                            {"current_period_end": 1_795_000_000},
                        ]
                    },
                    "metadata": {"tenantId": "t-1", "planId": "growth"},
                },
            )
        )

        assert isinstance(event, SubscriptionUpdated)
        assert event.gateway_status == "past_due"
        assert int(event.current_period_end.timestamp()) == 1_795_000_000
        assert event.tenant_id == "t-1"
        assert event.plan_id == "growth"

    def test_unsupported_event(self):
        event = parse_event(envelope("customer.created", {"id": "cus_1"}))

        assert isinstance(event, UnhandledEvent)
        assert event.reason == "unsupported_event_type"

    def test_malformed_envelope(self):
        with pytest.raises(SignatureVerificationError):
            parse_event({"type": "invoice.paid"})


class TestGetPaymentStatus:
    """Tests for payment intent lookup."""

    async def test_success(self, provider):
        intent = MagicMock()
        intent.id = "pi_1"
        intent.status = "succeeded"
        intent.amount = 4900
        intent.currency = "usd"
        intent.get.side_effect = {
            "metadata": {"tenantId": "t-1", "packId": "credits_100"},
            "amount_received": 4900,
        }.get

        with patch("stripe.PaymentIntent.retrieve", return_value=intent):
            status = await provider.get_payment_status("pi_1")

        assert status.succeeded is True
        assert status.amount_minor == 4900
        assert status.currency == "USD"
        assert status.metadata_tenant_id == "t-1"
        assert status.metadata_pack_id == "credits_100"

    async def test_stripe_error(self, provider):
        with patch(
            "stripe.PaymentIntent.retrieve",
            side_effect=stripe.InvalidRequestError("No such payment_intent", "id"),
        ):
            with pytest.raises(PaymentProviderError, match="No such payment_intent"):
                await provider.get_payment_status("pi_missing")

"""
Payment Webhook Ingestor - Applies payment gateway events to the ledger.

Deliveries are at-least-once and may arrive out of order. Every balance-changing
event carries a unique external reference (session, payment intent, invoice or
event id); the ledger's unique constraint on that reference makes replays no-ops.
Status-only events are naturally idempotent and resolve by last write wins.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from credit_ledger.exceptions import (
    DuplicateReferenceError,
    TenantNotFoundError,
    ValidationError,
)
from credit_ledger.models.api import AccountStatus, CreditPool, EntryType
from credit_ledger.models.domain import (
    BalanceUpdate,
    EntryTemplate,
    Posting,
    PurchaseEvent,
    TenantAccountData,
)
from credit_ledger.observability.logging import get_logger, log_context
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import (
    CREDIT_PACKS,
    PLAN_CATALOG,
    get_credit_pack,
    get_plan_or_default,
)
from credit_ledger.services.deduction import STICKY_STATUSES, balance_status
from credit_ledger.services.ledger_store import (
    BalanceFunction,
    LedgerRepository,
    RetryPolicy,
    with_storage_retry,
)
from credit_ledger.services.payment_provider import (
    CheckoutTopUpCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentIntentTopUpSucceeded,
    PaymentProvider,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookEvent,
)

logger = get_logger(__name__)

# Gateway subscription statuses grouped by the ledger status they map to
ACTIVE_GATEWAY_STATUSES = frozenset({"active", "trialing"})
PAST_DUE_GATEWAY_STATUSES = frozenset({"past_due", "unpaid", "incomplete"})
CANCELED_GATEWAY_STATUSES = frozenset({"canceled", "incomplete_expired"})
PAUSED_GATEWAY_STATUSES = frozenset({"paused"})


class WebhookOutcome(str, Enum):
    """How a verified delivery was handled."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class IngestResult:
    """Result of applying one event (or purchase) to the ledger."""

    outcome: WebhookOutcome
    event_id: str
    event_type: str
    tenant_id: str | None = None
    account: TenantAccountData | None = None
    previous_status: AccountStatus | None = None
    reason: str | None = None


def next_cycle_end(
    candidates: tuple[datetime, ...], now: datetime, default_cycle_days: int
) -> datetime:
    """First candidate period end in the future, else now plus the default cycle."""
    for candidate in candidates:
        if candidate > now:
            return candidate
    return now + timedelta(days=default_cycle_days)


def map_gateway_status(
    gateway_status: str,
    account: TenantAccountData,
    subscription_credits: int,
    topoff_credits: int,
    soft_limit_ratio: float,
) -> AccountStatus:
    """
    Mirror a gateway subscription status onto the ledger status.

    Administrative suspension survives everything except cancellation.
    """
    if gateway_status in CANCELED_GATEWAY_STATUSES:
        return AccountStatus.CANCELED
    if account.status == AccountStatus.SUSPENDED:
        return AccountStatus.SUSPENDED
    if gateway_status in PAUSED_GATEWAY_STATUSES:
        return AccountStatus.SUSPENDED
    if gateway_status in PAST_DUE_GATEWAY_STATUSES:
        return AccountStatus.PAST_DUE
    if gateway_status in ACTIVE_GATEWAY_STATUSES:
        return balance_status(
            subscription_credits + topoff_credits,
            account.credits_used_this_cycle,
            get_plan_or_default(account.plan_id),
            soft_limit_ratio,
        )
    return account.status


class WebhookIngestor:
    """Verifies gateway deliveries and applies them through the ledger store."""

    def __init__(
        self,
        store: LedgerRepository,
        provider: PaymentProvider,
        retry_policy: RetryPolicy,
        soft_limit_ratio: float,
        default_cycle_days: int,
    ) -> None:
        """Initialize ingestor with its store, verified provider and ledger policy."""
        self.store = store
        self.provider = provider
        self.retry_policy = retry_policy
        self.soft_limit_ratio = soft_limit_ratio
        self.default_cycle_days = default_cycle_days

    async def handle_delivery(self, payload: bytes, signature: str) -> IngestResult:
        """
        Verify a raw delivery, then apply it.

        Raises:
            SignatureVerificationError: Signature or payload invalid (nothing applied)
            StorageConflictError, DatabaseError: Storage kept failing; the gateway
                should redeliver
        """
        event = self.provider.verify_webhook(payload, signature)
        return await self.ingest(event)

    async def ingest(self, event: WebhookEvent) -> IngestResult:
        """Apply a verified event."""
        with log_context(event_id=event.event_id, event_type=event.event_type):
            with trace_operation(
                "ledger_webhook", event_id=event.event_id, event_type=event.event_type
            ) as span:
                result = await self._dispatch(event)
                span.set_attribute("outcome", result.outcome.value)

            metrics.record_webhook(event.event_type, result.outcome.value)
            logger.info(
                "webhook_handled",
                outcome=result.outcome.value,
                tenant_id=result.tenant_id,
                reason=result.reason,
            )
        return result

    async def _dispatch(self, event: WebhookEvent) -> IngestResult:
        if isinstance(event, CheckoutTopUpCompleted):
            return await self._on_checkout_topup(event)
        if isinstance(event, PaymentIntentTopUpSucceeded):
            return await self._on_payment_intent_topup(event)
        if isinstance(event, InvoicePaid):
            return await self._on_invoice_paid(event)
        if isinstance(event, InvoicePaymentFailed):
            return await self._on_invoice_failed(event)
        if isinstance(event, SubscriptionUpdated):
            return await self._on_subscription_updated(event)
        if isinstance(event, SubscriptionDeleted):
            return await self._on_subscription_deleted(event)
        return self._ignored(event, event.reason if isinstance(event, UnhandledEvent) else None)

    # ========================================================================
    # Purchases
    # ========================================================================

    async def apply_purchase(
        self,
        purchase: PurchaseEvent,
        description: str,
        event_id: str | None = None,
        event_type: str = "purchase",
    ) -> IngestResult:
        """
        Credit a one-time purchase to the top-off pool exactly once.

        Shared by webhook deliveries and client-side purchase confirmation; both
        key on the same external reference.
        """
        event_id = event_id or purchase.external_reference
        if await self.store.find_entry_by_reference(purchase.external_reference) is not None:
            return IngestResult(
                outcome=WebhookOutcome.DUPLICATE,
                event_id=event_id,
                event_type=event_type,
                tenant_id=purchase.tenant_id,
            )

        template = EntryTemplate(
            entry_type=EntryType.PURCHASE,
            description=description,
            external_reference=purchase.external_reference,
        )

        def _top_up(account: TenantAccountData) -> BalanceUpdate:
            topoff = account.topoff_credits + purchase.credits_granted
            status = account.status
            if status not in STICKY_STATUSES:
                status = balance_status(
                    account.subscription_credits + topoff,
                    account.credits_used_this_cycle,
                    get_plan_or_default(account.plan_id),
                    self.soft_limit_ratio,
                )
            return BalanceUpdate(
                subscription_credits=account.subscription_credits,
                topoff_credits=topoff,
                status=status,
                postings=(Posting(pool=CreditPool.TOPOFF, amount=purchase.credits_granted),),
            )

        result = await self._apply(
            purchase.tenant_id, template, _top_up, event_id, event_type, "purchase"
        )
        if result.outcome == WebhookOutcome.PROCESSED:
            metrics.record_credit_addition(
                EntryType.PURCHASE.value, CreditPool.TOPOFF.value, purchase.credits_granted
            )
            logger.info(
                "credits_purchased",
                tenant_id=purchase.tenant_id,
                credits=purchase.credits_granted,
                amount_paid_cents=purchase.amount_paid_cents,
                external_reference=purchase.external_reference,
            )
        return result

    async def confirm_payment_intent(
        self, tenant_id: str, payment_intent_id: str, pack_id: str
    ) -> IngestResult:
        """
        Apply a credit pack purchase confirmed by the client.

        The payment intent is looked up at the gateway; the credit is idempotent
        against the payment_intent.succeeded webhook for the same intent.

        Raises:
            UnknownCreditPackError: Pack is not in the catalog
            ValidationError: Payment not succeeded, wrong amount or wrong tenant
            PaymentProviderError: Gateway lookup failed
        """
        pack = get_credit_pack(pack_id)
        payment = await self.provider.get_payment_status(payment_intent_id)

        if not payment.succeeded:
            raise ValidationError(f"Payment {payment_intent_id} has status {payment.status}")
        if payment.amount_minor != pack.price_cents:
            logger.error(
                "purchase_confirmation_amount_mismatch",
                tenant_id=tenant_id,
                payment_intent_id=payment_intent_id,
                expected_cents=pack.price_cents,
                received_cents=payment.amount_minor,
            )
            raise ValidationError(
                f"Payment amount {payment.amount_minor} does not match pack price "
                f"{pack.price_cents}"
            )
        if payment.metadata_tenant_id and payment.metadata_tenant_id != tenant_id:
            raise ValidationError(f"Payment {payment_intent_id} belongs to another tenant")

        purchase = PurchaseEvent(
            external_reference=payment_intent_id,
            tenant_id=tenant_id,
            credits_granted=pack.credits,
            amount_paid_cents=payment.amount_minor,
        )
        return await self.apply_purchase(
            purchase,
            f"Credit pack purchase: {pack.name}",
            event_type="purchase_confirmation",
        )

    async def _on_checkout_topup(self, event: CheckoutTopUpCompleted) -> IngestResult:
        purchase = PurchaseEvent(
            external_reference=event.session_id,
            tenant_id=event.tenant_id,
            credits_granted=event.credits,
            amount_paid_cents=event.amount_paid_cents,
        )
        return await self.apply_purchase(
            purchase,
            f"Credit top-off purchase: {event.credits} credits",
            event.event_id,
            event.event_type,
        )

    async def _on_payment_intent_topup(self, event: PaymentIntentTopUpSucceeded) -> IngestResult:
        pack = CREDIT_PACKS.get(event.pack_id)
        if pack is None:
            logger.warning("webhook_unknown_credit_pack", pack_id=event.pack_id)
            return self._ignored(event, "unknown_pack", event.tenant_id)
        if event.amount_received_cents != pack.price_cents:
            logger.error(
                "webhook_purchase_amount_mismatch",
                tenant_id=event.tenant_id,
                pack_id=pack.id,
                expected_cents=pack.price_cents,
                received_cents=event.amount_received_cents,
            )
            return self._ignored(event, "amount_mismatch", event.tenant_id)

        purchase = PurchaseEvent(
            external_reference=event.payment_intent_id,
            tenant_id=event.tenant_id,
            credits_granted=pack.credits,
            amount_paid_cents=event.amount_received_cents,
        )
        return await self.apply_purchase(
            purchase,
            f"Credit pack purchase: {pack.name}",
            event.event_id,
            event.event_type,
        )

    # ========================================================================
    # Subscription lifecycle
    # ========================================================================

    async def _on_invoice_paid(self, event: InvoicePaid) -> IngestResult:
        account = await self._find_subscriber(event.subscription_id, event.customer_id)
        if account is None:
            return self._ignored(event, "unknown_tenant")

        if await self.store.find_entry_by_reference(event.invoice_id) is not None:
            return IngestResult(
                outcome=WebhookOutcome.DUPLICATE,
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=account.tenant_id,
            )

        plan = get_plan_or_default(account.plan_id)
        now = datetime.now(UTC)
        cycle_end = next_cycle_end(event.period_ends, now, self.default_cycle_days)
        template = EntryTemplate(
            entry_type=EntryType.ALLOCATION,
            description=f"Monthly allocation: {plan.name} plan ({plan.monthly_credits} credits)",
            external_reference=event.invoice_id,
        )

        def _renew(current: TenantAccountData) -> BalanceUpdate:
            postings: list[Posting] = []
            if current.subscription_credits > 0:
                postings.append(
                    Posting(
                        pool=CreditPool.SUBSCRIPTION,
                        amount=-current.subscription_credits,
                        entry_type=EntryType.ADJUSTMENT,
                        description="Unused subscription credits forfeited at renewal",
                        carries_reference=False,
                    )
                )
            postings.append(Posting(pool=CreditPool.SUBSCRIPTION, amount=plan.monthly_credits))
            status = (
                AccountStatus.SUSPENDED
                if current.status == AccountStatus.SUSPENDED
                else AccountStatus.ACTIVE
            )
            return BalanceUpdate(
                subscription_credits=plan.monthly_credits,
                topoff_credits=current.topoff_credits,
                status=status,
                postings=tuple(postings),
                credits_used_this_cycle=0,
                billing_cycle_start=now,
                billing_cycle_end=cycle_end,
                external_customer_id=current.external_customer_id or event.customer_id,
                external_subscription_id=(
                    current.external_subscription_id or event.subscription_id
                ),
            )

        result = await self._apply(
            account.tenant_id, template, _renew, event.event_id, event.event_type, "renewal"
        )
        if result.outcome == WebhookOutcome.PROCESSED:
            metrics.record_credit_addition(
                EntryType.ALLOCATION.value, CreditPool.SUBSCRIPTION.value, plan.monthly_credits
            )
            logger.info(
                "subscription_renewed",
                tenant_id=account.tenant_id,
                plan_id=plan.id,
                forfeited_credits=account.subscription_credits,
                monthly_credits=plan.monthly_credits,
                billing_cycle_end=cycle_end.isoformat(),
            )
        return result

    async def _on_invoice_failed(self, event: InvoicePaymentFailed) -> IngestResult:
        account = await self._find_subscriber(event.subscription_id, event.customer_id)
        if account is None:
            return self._ignored(event, "unknown_tenant")

        def _past_due(current: TenantAccountData) -> BalanceUpdate:
            if current.status in (AccountStatus.SUSPENDED, AccountStatus.CANCELED):
                return BalanceUpdate.keep_balances(current)
            return BalanceUpdate.keep_balances(current, AccountStatus.PAST_DUE)

        logger.warning("invoice_payment_failed", tenant_id=account.tenant_id)
        return await self._apply(
            account.tenant_id, None, _past_due, event.event_id, event.event_type, "invoice_failed"
        )

    async def _on_subscription_updated(self, event: SubscriptionUpdated) -> IngestResult:
        account = await self.store.find_account_by_subscription(event.subscription_id)
        if account is None and event.tenant_id:
            account = await self.store.find_account(event.tenant_id)
        if account is None and event.customer_id:
            account = await self.store.find_account_by_customer(event.customer_id)
        if account is None:
            return self._ignored(event, "unknown_tenant")

        new_plan = None
        if event.plan_id and event.plan_id != account.plan_id:
            new_plan = PLAN_CATALOG.get(event.plan_id)
            if new_plan is None:
                logger.warning("webhook_unknown_plan", plan_id=event.plan_id)

        template = None
        if new_plan is not None:
            template = EntryTemplate(
                entry_type=EntryType.PLAN_CHANGE,
                description=f"Plan changed to {new_plan.name}",
                external_reference=event.event_id,
            )

        def _mirror(current: TenantAccountData) -> BalanceUpdate:
            subscription = current.subscription_credits
            postings: tuple[Posting, ...] = ()
            plan_id = None
            if new_plan is not None and new_plan.id != current.plan_id:
                postings = (
                    Posting(
                        pool=CreditPool.SUBSCRIPTION,
                        amount=new_plan.monthly_credits - current.subscription_credits,
                    ),
                )
                subscription = new_plan.monthly_credits
                plan_id = new_plan.id
            status = map_gateway_status(
                event.gateway_status,
                current,
                subscription,
                current.topoff_credits,
                self.soft_limit_ratio,
            )
            return BalanceUpdate(
                subscription_credits=subscription,
                topoff_credits=current.topoff_credits,
                status=status,
                postings=postings,
                plan_id=plan_id,
                billing_cycle_end=event.current_period_end,
                external_customer_id=event.customer_id,
                external_subscription_id=event.subscription_id,
            )

        return await self._apply(
            account.tenant_id,
            template,
            _mirror,
            event.event_id,
            event.event_type,
            "subscription_updated",
        )

    async def _on_subscription_deleted(self, event: SubscriptionDeleted) -> IngestResult:
        account = await self._find_subscriber(event.subscription_id, event.customer_id)
        if account is None:
            return self._ignored(event, "unknown_tenant")

        def _cancel(current: TenantAccountData) -> BalanceUpdate:
            return BalanceUpdate.keep_balances(current, AccountStatus.CANCELED)

        return await self._apply(
            account.tenant_id, None, _cancel, event.event_id, event.event_type, "subscription_deleted"
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_subscriber(
        self, subscription_id: str | None, customer_id: str | None
    ) -> TenantAccountData | None:
        account = None
        if subscription_id:
            account = await self.store.find_account_by_subscription(subscription_id)
        if account is None and customer_id:
            account = await self.store.find_account_by_customer(customer_id)
        return account

    async def _apply(
        self,
        tenant_id: str,
        template: EntryTemplate | None,
        balance_fn: BalanceFunction,
        event_id: str,
        event_type: str,
        operation: str,
    ) -> IngestResult:
        try:
            result = await with_storage_retry(
                operation,
                lambda: self.store.append_entry_and_update_balance(
                    tenant_id, template, balance_fn
                ),
                self.retry_policy,
            )
        except DuplicateReferenceError as e:
            logger.info(
                "webhook_duplicate_reference",
                tenant_id=tenant_id,
                external_reference=e.external_reference,
            )
            return IngestResult(
                outcome=WebhookOutcome.DUPLICATE,
                event_id=event_id,
                event_type=event_type,
                tenant_id=tenant_id,
            )
        except TenantNotFoundError:
            logger.warning("webhook_tenant_not_found", tenant_id=tenant_id)
            return IngestResult(
                outcome=WebhookOutcome.IGNORED,
                event_id=event_id,
                event_type=event_type,
                tenant_id=tenant_id,
                reason="unknown_tenant",
            )

        return IngestResult(
            outcome=WebhookOutcome.PROCESSED,
            event_id=event_id,
            event_type=event_type,
            tenant_id=tenant_id,
            account=result.account,
            previous_status=result.previous.status,
        )

    def _ignored(
        self, event: WebhookEvent, reason: str | None, tenant_id: str | None = None
    ) -> IngestResult:
        if reason == "unknown_tenant":
            logger.warning("webhook_tenant_not_found")
        return IngestResult(
            outcome=WebhookOutcome.IGNORED,
            event_id=event.event_id,
            event_type=event.event_type,
            tenant_id=tenant_id,
            reason=reason,
        )

"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.db.session import get_read_db, get_write_db
from credit_ledger.exceptions import AuthenticationError
from credit_ledger.services.account_admin import AccountAdminService
from credit_ledger.services.balance_gate import BalanceGate
from credit_ledger.services.deduction import DeductionEngine
from credit_ledger.services.ledger_store import RetryPolicy, SqlLedgerStore
from credit_ledger.services.notifications import LogNotifier, Notifier
from credit_ledger.services.payment_provider import PaymentProvider
from credit_ledger.services.stripe_provider import StripeProvider
from credit_ledger.services.webhook_ingestor import WebhookIngestor

logger = get_logger(__name__)

# ============================================================================
# Platform Secret Authentication (tenant sites -> ledger)
# ============================================================================


def check_platform_secret(provided: str | None) -> None:
    """
    Compare a presented platform secret against the configured one.

    Raises:
        AuthenticationError: Secret missing or wrong
    """
    if not provided:
        raise AuthenticationError("X-Platform-Secret header required")
    if not hmac.compare_digest(provided.encode("utf-8"), settings.platform_secret.encode("utf-8")):
        raise AuthenticationError("Invalid platform secret")


async def verify_platform_secret(
    x_platform_secret: str | None = Header(None, description="Shared platform secret"),
) -> None:
    """
    FastAPI dependency guarding the /v1/credits routes.

    Usage:
        @router.post("/v1/credits/check", dependencies=[Depends(verify_platform_secret)])
    """
    try:
        check_platform_secret(x_platform_secret)
    except AuthenticationError as exc:
        logger.warning("platform_secret_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


# ============================================================================
# Service Wiring
# ============================================================================


def get_retry_policy() -> RetryPolicy:
    """Storage retry policy from settings."""
    return RetryPolicy.from_settings()


def get_payment_provider() -> PaymentProvider:
    """
    Stripe provider built from settings.

    Raises:
        HTTPException 503 if the webhook secret is not configured
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )


def get_notifier() -> Notifier:
    """Notifier for deferred status notifications."""
    return LogNotifier()


def get_ledger_store(db: AsyncSession = Depends(get_write_db)) -> SqlLedgerStore:
    """Ledger store on the primary database."""
    return SqlLedgerStore(db)


def get_read_ledger_store(db: AsyncSession = Depends(get_read_db)) -> SqlLedgerStore:
    """Ledger store on the read replica (history listings only)."""
    return SqlLedgerStore(db)


def get_balance_gate(store: SqlLedgerStore = Depends(get_ledger_store)) -> BalanceGate:
    """Balance gate reading from the primary so checks see the latest deduction."""
    return BalanceGate(store)


def get_deduction_engine(
    store: SqlLedgerStore = Depends(get_ledger_store),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> DeductionEngine:
    """Deduction engine with configured ledger policy."""
    return DeductionEngine(store, retry_policy, settings.soft_limit_ratio)


def get_webhook_ingestor(
    store: SqlLedgerStore = Depends(get_ledger_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> WebhookIngestor:
    """Webhook ingestor with the gateway secret injected."""
    return WebhookIngestor(
        store,
        provider,
        retry_policy,
        settings.soft_limit_ratio,
        settings.default_cycle_days,
    )


def get_account_admin(
    store: SqlLedgerStore = Depends(get_ledger_store),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> AccountAdminService:
    """Account administration on the primary database."""
    return AccountAdminService(
        store, retry_policy, settings.soft_limit_ratio, settings.default_cycle_days
    )


def get_history_admin(
    store: SqlLedgerStore = Depends(get_read_ledger_store),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> AccountAdminService:
    """Account administration for read-only history listings."""
    return AccountAdminService(
        store, retry_policy, settings.soft_limit_ratio, settings.default_cycle_days
    )

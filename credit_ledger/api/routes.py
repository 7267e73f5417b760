"""
API Routes - FastAPI endpoints for credit ledger operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from structlog import get_logger

from credit_ledger.api.dependencies import (
    get_account_admin,
    get_balance_gate,
    get_deduction_engine,
    get_history_admin,
    get_notifier,
    get_webhook_ingestor,
    verify_platform_secret,
)
from credit_ledger.exceptions import (
    DatabaseError,
    DataIntegrityError,
    InsufficientCreditsError,
    PaymentProviderError,
    SignatureVerificationError,
    StorageConflictError,
    TenantNotFoundError,
    ValidationError,
    WriteVerificationError,
)
from credit_ledger.models.api import (
    AccountResponse,
    AdjustCreditsRequest,
    BalanceResponse,
    ChangePlanRequest,
    ConfirmPurchaseRequest,
    CreateAccountRequest,
    CreditCheckRequest,
    CreditCheckResponse,
    DeductRequest,
    DeductResponse,
    LedgerListResponse,
    PurchaseResponse,
    ReconciliationResponse,
    SetStatusRequest,
    WebhookResponse,
)
from credit_ledger.models.domain import TenantAccountData, UsageRequest
from credit_ledger.services.account_admin import AccountAdminService
from credit_ledger.services.balance_gate import BalanceGate
from credit_ledger.services.catalog import get_credit_pack
from credit_ledger.services.deduction import DeductionEngine
from credit_ledger.services.notifications import Notifier, schedule_status_notification
from credit_ledger.services.webhook_ingestor import WebhookIngestor, WebhookOutcome

logger = get_logger(__name__)

router = APIRouter()


def _account_response(account: TenantAccountData) -> AccountResponse:
    return AccountResponse(
        tenant_id=account.tenant_id,
        plan_id=account.plan_id,
        subscription_credits=account.subscription_credits,
        topoff_credits=account.topoff_credits,
        status=account.status,
        billing_cycle_start=(
            account.billing_cycle_start.isoformat() if account.billing_cycle_start else None
        ),
        billing_cycle_end=(
            account.billing_cycle_end.isoformat() if account.billing_cycle_end else None
        ),
        external_customer_id=account.external_customer_id,
        external_subscription_id=account.external_subscription_id,
        created_at=account.created_at.isoformat(),
    )


def _storage_http_error(exc: Exception) -> HTTPException:
    """Map storage failures that survived retries onto HTTP errors."""
    if isinstance(exc, DatabaseError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger storage unavailable, please retry",
        )
    if isinstance(exc, StorageConflictError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Concurrent modification, please retry",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database integrity error",
    )


def _tenant_not_found(exc: TenantNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Tenant account not found: {exc.tenant_id}",
    )


# ============================================================================
# Metering (tenant sites)
# ============================================================================


@router.post(
    "/v1/credits/check",
    response_model=CreditCheckResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def check_credits(
    request: CreditCheckRequest,
    gate: BalanceGate = Depends(get_balance_gate),
) -> CreditCheckResponse:
    """
    Decide whether a tenant may start an AI action.

    Tenants without an account and storage failures are allowed (fail open).
    """
    try:
        return await gate.check(request.tenant_id, request.action, request.quantity)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc


@router.post(
    "/v1/credits/deduct",
    response_model=DeductResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def deduct_credits(
    request: DeductRequest,
    background_tasks: BackgroundTasks,
    engine: DeductionEngine = Depends(get_deduction_engine),
    notifier: Notifier = Depends(get_notifier),
) -> DeductResponse:
    """
    Record consumption for a completed AI action.

    Never refuses for lack of credits; shortfalls are recorded as overage.
    """
    try:
        usage = UsageRequest(
            tenant_id=request.tenant_id, action=request.action, quantity=request.quantity
        )
        result = await engine.deduct(usage, request.description, request.article_id)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except (
        StorageConflictError,
        DatabaseError,
        DataIntegrityError,
        WriteVerificationError,
    ) as exc:
        raise _storage_http_error(exc) from exc

    schedule_status_notification(
        background_tasks,
        notifier,
        request.tenant_id,
        result.previous_status,
        result.status,
        reason=f"usage:{request.action}",
    )

    return DeductResponse(
        success=result.success,
        credits_deducted=result.credits_deducted,
        credits_remaining=result.credits_remaining,
        subscription_credits=result.subscription_credits,
        topoff_credits=result.topoff_credits,
        status=result.status if result.status is not None else "untracked",
        is_overage=result.is_overage,
    )


@router.get(
    "/v1/credits/balance",
    response_model=BalanceResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def get_balance(
    tenant_id: str = Query(..., min_length=1, max_length=255),
    gate: BalanceGate = Depends(get_balance_gate),
) -> BalanceResponse:
    """Get a tenant's balance breakdown, plan limits and renewal date."""
    try:
        return await gate.get_balance(tenant_id)
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc


# ============================================================================
# Administration
# ============================================================================


@router.post(
    "/v1/credits/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_platform_secret)],
)
async def provision_account(
    request: CreateAccountRequest,
    response: Response,
    admin: AccountAdminService = Depends(get_account_admin),
) -> AccountResponse:
    """
    Provision a tenant's ledger account.

    Idempotent: an existing account is returned with 200 instead of 201.
    """
    try:
        account, created = await admin.provision_account(
            tenant_id=request.tenant_id,
            plan_id=request.plan_id,
            subscription_credits=request.subscription_credits,
            topoff_credits=request.topoff_credits,
            external_customer_id=request.external_customer_id,
            external_subscription_id=request.external_subscription_id,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        raise _storage_http_error(exc) from exc

    if not created:
        response.status_code = status.HTTP_200_OK
    return _account_response(account)


@router.get(
    "/v1/credits/ledger",
    response_model=LedgerListResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def list_ledger_entries(
    tenant_id: str = Query(..., min_length=1, max_length=255),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: AccountAdminService = Depends(get_history_admin),
) -> LedgerListResponse:
    """
    Page through a tenant's ledger entries, newest first.

    Read-only - served from the read replica when one is configured.
    """
    return await admin.list_entries(tenant_id, limit=limit, offset=offset)


@router.get(
    "/v1/credits/reconcile",
    response_model=ReconciliationResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def reconcile_account(
    tenant_id: str = Query(..., min_length=1, max_length=255),
    admin: AccountAdminService = Depends(get_account_admin),
) -> ReconciliationResponse:
    """Compare the tenant's balances with the sum of its ledger entries."""
    try:
        return await admin.reconcile(tenant_id)
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc


@router.post(
    "/v1/credits/adjustments",
    response_model=AccountResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def adjust_credits(
    request: AdjustCreditsRequest,
    background_tasks: BackgroundTasks,
    admin: AccountAdminService = Depends(get_account_admin),
    notifier: Notifier = Depends(get_notifier),
) -> AccountResponse:
    """
    Apply a signed manual correction to one pool.

    Replaying the same reference is a no-op that returns the current account.
    """
    try:
        before = await admin.store.get_account(request.tenant_id)
        result = await admin.adjust_credits(
            tenant_id=request.tenant_id,
            pool=request.pool,
            amount=request.amount,
            description=request.description,
            reference=request.reference,
            created_by=request.created_by,
        )
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        raise _storage_http_error(exc) from exc

    if result.applied:
        schedule_status_notification(
            background_tasks,
            notifier,
            request.tenant_id,
            before.status,
            result.account.status,
            reason="adjustment",
        )
    return _account_response(result.account)


@router.post(
    "/v1/credits/plan",
    response_model=AccountResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def change_plan(
    request: ChangePlanRequest,
    admin: AccountAdminService = Depends(get_account_admin),
) -> AccountResponse:
    """Move a tenant to another plan; the subscription pool becomes the new allocation."""
    try:
        result = await admin.change_plan(request.tenant_id, request.plan_id, request.created_by)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        raise _storage_http_error(exc) from exc

    return _account_response(result.account)


@router.post(
    "/v1/credits/status",
    response_model=AccountResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def set_account_status(
    request: SetStatusRequest,
    admin: AccountAdminService = Depends(get_account_admin),
) -> AccountResponse:
    """Administratively suspend or reinstate a tenant."""
    try:
        result = await admin.set_status(request.tenant_id, request.suspended, request.reason)
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        raise _storage_http_error(exc) from exc

    return _account_response(result.account)


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/v1/credits/purchases/confirm",
    response_model=PurchaseResponse,
    dependencies=[Depends(verify_platform_secret)],
)
async def confirm_purchase(
    request: ConfirmPurchaseRequest,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> PurchaseResponse:
    """
    Credit a pack purchase the client has just completed.

    The payment intent is checked at Stripe; crediting is idempotent against
    the webhook for the same payment intent.
    """
    try:
        pack = get_credit_pack(request.pack_id)
        result = await ingestor.confirm_payment_intent(
            request.tenant_id, request.payment_intent_id, request.pack_id
        )
        if result.outcome == WebhookOutcome.IGNORED:
            raise TenantNotFoundError(request.tenant_id)
        account = result.account or await ingestor.store.get_account(request.tenant_id)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except TenantNotFoundError as exc:
        raise _tenant_not_found(exc) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        raise _storage_http_error(exc) from exc

    applied = result.outcome == WebhookOutcome.PROCESSED
    return PurchaseResponse(
        success=True,
        already_applied=not applied,
        credits_added=pack.credits if applied else 0,
        topoff_credits=account.topoff_credits,
        total_credits=account.total_credits,
    )


@router.post("/v1/billing/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    Authenticated by the Stripe-Signature header, not the platform secret.
    Storage failures return 5xx so Stripe redelivers; duplicates return 200.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        result = await ingestor.handle_delivery(payload, signature)
    except SignatureVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except (StorageConflictError, DatabaseError, DataIntegrityError, WriteVerificationError) as exc:
        logger.error("stripe_webhook_storage_failed", error=str(exc), error_type=type(exc).__name__)
        raise _storage_http_error(exc) from exc

    if result.outcome == WebhookOutcome.PROCESSED and result.account and result.tenant_id:
        schedule_status_notification(
            background_tasks,
            notifier,
            result.tenant_id,
            result.previous_status,
            result.account.status,
            reason=result.event_type,
        )

    return WebhookResponse(status=result.outcome.value, event_id=result.event_id)

"""
API Routes - FastAPI endpoints for token accounts, usage and purchases.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.api.dependencies import (
    get_current_user,
    get_optional_payment_provider,
    get_payment_provider,
    get_webhook_provider,
    http_error_for,
)
from token_ledger.db.models import User
from token_ledger.db.session import get_read_db, get_write_db
from token_ledger.exceptions import BillingError, WebhookVerificationError
from token_ledger.models.api import (
    AccountResponse,
    AutoRechargeUpdateRequest,
    BalanceCheckResponse,
    CheckoutRequest,
    CheckoutResponse,
    HealthResponse,
    InitializeAccountRequest,
    InitializeAccountResponse,
    OperationType,
    PackageListResponse,
    PackageResponse,
    RecordUsageRequest,
    RecordUsageResponse,
    TransactionItem,
    TransactionListResponse,
    UsageItem,
    UsageListResponse,
)
from token_ledger.models.domain import (
    AccountData,
    CostDescriptor,
    OperationDescriptor,
    UsageContext,
)
from token_ledger.observability.logging import get_logger
from token_ledger.services.ledger import LedgerService
from token_ledger.services.payment_gateway import PaymentGatewayService
from token_ledger.services.payment_provider import PaymentProvider
from token_ledger.services.pricing import PricingService
from token_ledger.services.usage_meter import UsageMeterService

logger = get_logger(__name__)

router = APIRouter()


def _account_response(account: AccountData) -> AccountResponse:
    return AccountResponse(
        account_id=account.account_id,
        user_id=account.user_id,
        workspace_id=account.workspace_id,
        balance=account.balance,
        currency=account.currency,
        status=account.status,
        lifetime_tokens_purchased=account.lifetime_tokens_purchased,
        lifetime_tokens_used=account.lifetime_tokens_used,
        lifetime_actual_tokens_used=account.lifetime_actual_tokens_used,
        lifetime_spent_cents=account.lifetime_spent_cents,
        auto_recharge_enabled=account.auto_recharge_enabled,
        auto_recharge_threshold=account.auto_recharge_threshold,
        auto_recharge_amount=account.auto_recharge_amount,
        has_payment_method=account.default_payment_method_id is not None,
        last_purchase_at=account.last_purchase_at.isoformat() if account.last_purchase_at else None,
        created_at=account.created_at.isoformat(),
        updated_at=account.updated_at.isoformat(),
    )


# =============================================================================
# Accounts
# =============================================================================


@router.post("/v1/billing/account/initialize", response_model=InitializeAccountResponse)
async def initialize_account(
    request: InitializeAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> InitializeAccountResponse:
    """
    Create the caller's token account with the welcome bonus.

    Idempotent: an existing account is returned unchanged.
    """
    try:
        account = await LedgerService(db).initialize_account(user.id, request.workspace_id)
    except BillingError as exc:
        raise http_error_for(exc, "initialize_account") from exc

    return InitializeAccountResponse(
        account_id=account.account_id,
        balance=account.balance,
        status=account.status,
    )


@router.get("/v1/billing/account", response_model=AccountResponse)
async def get_account(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> AccountResponse:
    """Get the caller's account."""
    try:
        account = await LedgerService(db).get_account(user.id)
    except BillingError as exc:
        raise http_error_for(exc, "get_account") from exc
    return _account_response(account)


@router.get("/v1/billing/balance/check", response_model=BalanceCheckResponse)
async def check_balance(
    required: int = Query(..., ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> BalanceCheckResponse:
    """Read-only: can the caller afford `required` tokens right now?"""
    try:
        check = await LedgerService(db).check_balance(user.id, required)
    except BillingError as exc:
        raise http_error_for(exc, "check_balance") from exc

    return BalanceCheckResponse(
        sufficient=check.sufficient,
        balance=check.balance,
        required=check.required,
        status=check.status,
    )


@router.get("/v1/billing/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> TransactionListResponse:
    """Caller's ledger history, newest first."""
    transactions = await LedgerService(db).list_transactions(user.id, limit=limit)
    items = [
        TransactionItem(
            transaction_id=txn.transaction_id,
            sequence=txn.sequence,
            transaction_type=txn.transaction_type,
            amount=txn.amount,
            balance_before=txn.balance_before,
            balance_after=txn.balance_after,
            amount_cents=txn.amount_cents,
            usage_id=txn.usage_id,
            external_payment_ref=txn.external_payment_ref,
            admin_user_id=txn.admin_user_id,
            description=txn.description,
            created_at=txn.created_at.isoformat(),
        )
        for txn in transactions
    ]
    return TransactionListResponse(transactions=items, count=len(items))


@router.put("/v1/billing/auto-recharge", response_model=AccountResponse)
async def update_auto_recharge(
    request: AutoRechargeUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """Enable, disable or reconfigure auto-recharge for the caller."""
    try:
        account = await LedgerService(db).update_auto_recharge(
            user.id,
            enabled=request.enabled,
            threshold=request.threshold,
            amount=request.amount,
        )
    except BillingError as exc:
        raise http_error_for(exc, "update_auto_recharge") from exc
    return _account_response(account)


# =============================================================================
# Usage
# =============================================================================


@router.post(
    "/v1/billing/usage",
    response_model=RecordUsageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_usage(
    request: RecordUsageRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider | None = Depends(get_optional_payment_provider),
) -> RecordUsageResponse:
    """
    Record one AI operation (trusted service call).

    Auth: shared billing secret in the request body. A wrong secret is 403
    and writes nothing.
    """
    try:
        context = UsageContext(
            user_id=request.user_id,
            workspace_id=request.workspace_id,
            project_id=request.project_id,
            content_piece_id=request.content_piece_id,
        )
        operation = OperationDescriptor(
            operation_type=request.operation_type,
            provider=request.provider,
            model=request.model,
            success=request.success,
            input_tokens=request.input_tokens,
            output_tokens=request.output_tokens,
            total_tokens=request.total_tokens,
            image_count=request.image_count,
            image_size=request.image_size,
            request_metadata=request.request_metadata,
            error_message=request.error_message,
        )
        cost = CostDescriptor(
            billable_tokens=request.billable_tokens,
            charge_type=request.charge_type,
            multiplier=request.multiplier,
            fixed_cost=request.fixed_cost,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    ledger = LedgerService(db)
    gateway = PaymentGatewayService(db, provider, ledger) if provider is not None else None
    meter = UsageMeterService(db, ledger=ledger, gateway=gateway)

    try:
        receipt = await meter.record_usage(request.secret, context, operation, cost)
    except BillingError as exc:
        raise http_error_for(exc, "record_usage") from exc

    return RecordUsageResponse(
        usage_id=receipt.usage_id,
        billed=receipt.billed,
        new_balance=receipt.new_balance,
    )


@router.get("/v1/billing/usage", response_model=UsageListResponse)
async def list_usage(
    limit: int = Query(50, ge=1, le=500),
    operation_type: OperationType | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> UsageListResponse:
    """Caller's usage history, newest first."""
    records = await UsageMeterService(db).list_usage(
        user.id, limit=limit, operation_type=operation_type
    )
    items = [
        UsageItem(
            usage_id=usage.usage_id,
            workspace_id=usage.workspace_id,
            project_id=usage.project_id,
            content_piece_id=usage.content_piece_id,
            operation_type=usage.operation_type,
            provider=usage.provider,
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            image_count=usage.image_count,
            image_size=usage.image_size,
            billable_tokens=usage.billable_tokens,
            actual_tokens=usage.actual_tokens,
            charge_type=usage.charge_type,
            multiplier=usage.multiplier,
            success=usage.success,
            error_message=usage.error_message,
            created_at=usage.created_at.isoformat(),
        )
        for usage in records
    ]
    return UsageListResponse(usage=items, count=len(items))


# =============================================================================
# Packages and purchases
# =============================================================================


@router.get("/v1/billing/packages", response_model=PackageListResponse)
async def list_packages(db: AsyncSession = Depends(get_read_db)) -> PackageListResponse:
    """Active token packages in display order."""
    packages = await PricingService(db).list_active_packages()
    return PackageListResponse(
        packages=[
            PackageResponse(
                package_id=package.package_id,
                package_name=package.package_name,
                token_amount=package.token_amount,
                price_cents=package.price_cents,
                description=package.description,
                is_popular=package.is_popular,
                sort_order=package.sort_order,
                active=package.active,
            )
            for package in packages
        ]
    )


@router.post("/v1/billing/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """Start a hosted checkout for one package."""
    gateway = PaymentGatewayService(db, provider)
    try:
        checkout = await gateway.create_checkout(
            user.id, request.package_id, request.success_url, request.cancel_url
        )
    except BillingError as exc:
        raise http_error_for(exc, "create_checkout") from exc

    # create_checkout guarantees a URL
    return CheckoutResponse(session_id=checkout.session_id, url=checkout.url or "")


@router.post("/v1/billing/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_webhook_provider),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Bad signatures are 400 with nothing changed. Ledger failures are 500 so
    Stripe redelivers; redeliveries of applied events are acknowledged.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    gateway = PaymentGatewayService(db, provider)
    try:
        outcome = await gateway.handle_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc
    except BillingError as exc:
        logger.error("stripe_webhook_processing_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return {"status": outcome.result, "event_id": outcome.event_id}


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )

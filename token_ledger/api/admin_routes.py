"""
Admin API Routes - Balance adjustments, analytics, catalog and settings.

Auth: bearer token. Roles are checked against the caller's stored record by
the services, never against token claims.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.api.dependencies import get_current_user, http_error_for
from token_ledger.db.models import User
from token_ledger.db.session import get_write_db
from token_ledger.exceptions import BillingError
from token_ledger.models.api import (
    AccountStatus,
    AdminAccountItem,
    AdminAccountListResponse,
    AdminTokenAdjustmentRequest,
    AdminTokenAdjustmentResponse,
    CreatePackageRequest,
    LedgerAuditResponse,
    ModelUsageStatsItem,
    OperationStatsItem,
    PackageListResponse,
    PackageResponse,
    SystemSettingsResponse,
    TokenStatsResponse,
    UpdatePackageRequest,
    UpdateSystemSettingsRequest,
)
from token_ledger.models.domain import PackageData, SystemSettingsData
from token_ledger.services.admin import AdminService
from token_ledger.services.pricing import PricingService
from token_ledger.services.system_settings import SystemSettingsService

router = APIRouter(prefix="/admin", tags=["admin"])


def _package_response(package: PackageData) -> PackageResponse:
    return PackageResponse(
        package_id=package.package_id,
        package_name=package.package_name,
        token_amount=package.token_amount,
        price_cents=package.price_cents,
        description=package.description,
        is_popular=package.is_popular,
        sort_order=package.sort_order,
        active=package.active,
    )


def _settings_response(data: SystemSettingsData) -> SystemSettingsResponse:
    return SystemSettingsResponse(
        default_token_multiplier=data.default_token_multiplier,
        image_generation_cost_dalle3=data.image_generation_cost_dalle3,
        image_generation_cost_dalle2=data.image_generation_cost_dalle2,
        image_generation_cost_google=data.image_generation_cost_google,
        tokens_per_usd=data.tokens_per_usd,
        min_purchase_amount_cents=data.min_purchase_amount_cents,
        new_user_bonus_tokens=data.new_user_bonus_tokens,
        low_balance_threshold=data.low_balance_threshold,
        critical_balance_threshold=data.critical_balance_threshold,
        updated_at=data.updated_at.isoformat() if data.updated_at else None,
    )


# ============================================================================
# Token adjustments (superadmin)
# ============================================================================


@router.post("/tokens/grant", response_model=AdminTokenAdjustmentResponse)
async def grant_tokens(
    request: AdminTokenAdjustmentRequest,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AdminTokenAdjustmentResponse:
    """Grant tokens to a user. Creates an empty account if needed."""
    try:
        new_balance, account_status = await AdminService(db).grant_tokens(
            admin.id, request.user_id, request.amount, request.reason
        )
    except BillingError as exc:
        raise http_error_for(exc, "admin_grant") from exc

    return AdminTokenAdjustmentResponse(
        user_id=request.user_id, new_balance=new_balance, status=account_status
    )


@router.post("/tokens/deduct", response_model=AdminTokenAdjustmentResponse)
async def deduct_tokens(
    request: AdminTokenAdjustmentRequest,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AdminTokenAdjustmentResponse:
    """Deduct tokens from a user's existing account. May go negative."""
    try:
        new_balance, account_status = await AdminService(db).deduct_tokens(
            admin.id, request.user_id, request.amount, request.reason
        )
    except BillingError as exc:
        raise http_error_for(exc, "admin_deduct") from exc

    return AdminTokenAdjustmentResponse(
        user_id=request.user_id, new_balance=new_balance, status=account_status
    )


# ============================================================================
# Analytics (admin)
# ============================================================================


@router.get("/stats", response_model=TokenStatsResponse)
async def get_token_stats(
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> TokenStatsResponse:
    """Platform token economics."""
    try:
        stats = await AdminService(db).get_token_stats(admin.id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_stats") from exc

    return TokenStatsResponse(
        total_accounts=stats.total_accounts,
        active_accounts=stats.active_accounts,
        suspended_accounts=stats.suspended_accounts,
        total_balance=stats.total_balance,
        average_balance=stats.average_balance,
        lifetime_tokens_purchased=stats.lifetime_tokens_purchased,
        lifetime_tokens_used=stats.lifetime_tokens_used,
        lifetime_actual_tokens_used=stats.lifetime_actual_tokens_used,
        revenue_cents=stats.revenue_cents,
        profit_margin_percent=stats.profit_margin_percent,
    )


@router.get("/stats/models", response_model=list[ModelUsageStatsItem])
async def get_model_usage_stats(
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> list[ModelUsageStatsItem]:
    """Usage per provider/model."""
    try:
        rows = await AdminService(db).get_model_usage_stats(admin.id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_model_stats") from exc

    return [
        ModelUsageStatsItem(
            provider=row.provider,
            model=row.model,
            operation_count=row.operation_count,
            billable_tokens=row.billable_tokens,
            actual_tokens=row.actual_tokens,
        )
        for row in rows
    ]


@router.get("/stats/operations", response_model=list[OperationStatsItem])
async def get_operation_stats(
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> list[OperationStatsItem]:
    """Usage per operation type."""
    try:
        rows = await AdminService(db).get_operation_stats(admin.id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_operation_stats") from exc

    return [
        OperationStatsItem(
            operation_type=row.operation_type,
            operation_count=row.operation_count,
            success_count=row.success_count,
            billable_tokens=row.billable_tokens,
        )
        for row in rows
    ]


@router.get("/accounts", response_model=AdminAccountListResponse)
async def list_accounts(
    limit: int = Query(100, ge=1, le=1000),
    account_status: AccountStatus | None = Query(None, alias="status"),
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AdminAccountListResponse:
    """Accounts with owner email, newest first."""
    try:
        rows = await AdminService(db).list_accounts(admin.id, limit=limit, status=account_status)
    except BillingError as exc:
        raise http_error_for(exc, "admin_list_accounts") from exc

    items = [
        AdminAccountItem(
            account_id=row.account_id,
            user_id=row.user_id,
            email=row.email,
            balance=row.balance,
            status=row.status,
            lifetime_tokens_purchased=row.lifetime_tokens_purchased,
            lifetime_tokens_used=row.lifetime_tokens_used,
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]
    return AdminAccountListResponse(accounts=items, count=len(items))


@router.get("/accounts/{user_id}/audit", response_model=LedgerAuditResponse)
async def audit_account(
    user_id: UUID,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> LedgerAuditResponse:
    """Replay one account's ledger chain against its balance."""
    try:
        audit = await AdminService(db).audit_account(admin.id, user_id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_audit") from exc

    return LedgerAuditResponse(
        user_id=audit.user_id,
        balance=audit.balance,
        transaction_sum=audit.transaction_sum,
        transaction_count=audit.transaction_count,
        consistent=audit.consistent,
        first_broken_sequence=audit.first_broken_sequence,
    )


# ============================================================================
# Package catalog (admin)
# ============================================================================


@router.post("/packages", response_model=PackageResponse, status_code=201)
async def create_package(
    request: CreatePackageRequest,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> PackageResponse:
    """Add a token package."""
    try:
        package = await PricingService(db).create_package(admin.id, request)
    except BillingError as exc:
        raise http_error_for(exc, "admin_create_package") from exc
    return _package_response(package)


@router.patch("/packages/{package_id}", response_model=PackageResponse)
async def update_package(
    package_id: UUID,
    request: UpdatePackageRequest,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> PackageResponse:
    """Partially update a token package."""
    try:
        package = await PricingService(db).update_package(admin.id, package_id, request)
    except BillingError as exc:
        raise http_error_for(exc, "admin_update_package") from exc
    return _package_response(package)


@router.post("/packages/seed", response_model=PackageListResponse)
async def seed_packages(
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> PackageListResponse:
    """Insert the default catalog when empty."""
    try:
        packages = await PricingService(db).seed_default_packages(admin.id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_seed_packages") from exc
    return PackageListResponse(packages=[_package_response(package) for package in packages])


# ============================================================================
# System settings (admin)
# ============================================================================


@router.get("/settings", response_model=SystemSettingsResponse)
async def get_system_settings(
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> SystemSettingsResponse:
    """Current system settings, initializing defaults on first read."""
    try:
        data = await SystemSettingsService(db).initialize_defaults(admin.id)
    except BillingError as exc:
        raise http_error_for(exc, "admin_get_settings") from exc
    return _settings_response(data)


@router.put("/settings", response_model=SystemSettingsResponse)
async def update_system_settings(
    request: UpdateSystemSettingsRequest,
    admin: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> SystemSettingsResponse:
    """Partially update system settings."""
    service = SystemSettingsService(db)
    try:
        await service.initialize_defaults(admin.id)
        data = await service.update_settings(admin.id, request)
    except BillingError as exc:
        raise http_error_for(exc, "admin_update_settings") from exc
    return _settings_response(data)

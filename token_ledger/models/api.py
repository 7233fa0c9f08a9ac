"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class AccountStatus(str, Enum):
    """Account status enumeration."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class TransactionType(str, Enum):
    """Ledger transaction type enumeration."""

    BONUS = "bonus"
    PURCHASE = "purchase"
    USAGE = "usage"
    ADMIN_GRANT = "admin_grant"
    ADMIN_DEDUCTION = "admin_deduction"
    REFUND = "refund"
    AUTO_RECHARGE = "auto_recharge"


class ChargeType(str, Enum):
    """How the billable cost of an operation was derived."""

    MULTIPLIER = "multiplier"
    FIXED = "fixed"


class OperationType(str, Enum):
    """Metered AI operation types."""

    CONTENT_GENERATION = "content_generation"
    CONTENT_REFINEMENT = "content_refinement"
    CONTENT_REPURPOSE = "content_repurpose"
    CHAT_RESPONSE = "chat_response"
    IMAGE_GENERATION = "image_generation"
    IMAGE_PROMPT_GENERATION = "image_prompt_generation"


class AIProvider(str, Enum):
    """Upstream AI providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class UserRole(str, Enum):
    """Roles stored on the trusted user record."""

    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


# ============================================================================
# Account Models
# ============================================================================


class InitializeAccountRequest(BaseModel):
    """POST /v1/billing/account/initialize request body."""

    workspace_id: str | None = Field(None, min_length=1, max_length=255)


class InitializeAccountResponse(BaseModel):
    """POST /v1/billing/account/initialize response."""

    account_id: UUID
    balance: int
    status: AccountStatus


class AccountResponse(BaseModel):
    """Account details response."""

    account_id: UUID
    user_id: UUID
    workspace_id: str | None
    balance: int
    currency: str
    status: AccountStatus
    lifetime_tokens_purchased: int
    lifetime_tokens_used: int
    lifetime_actual_tokens_used: int
    lifetime_spent_cents: int
    auto_recharge_enabled: bool
    auto_recharge_threshold: int | None
    auto_recharge_amount: int | None
    has_payment_method: bool
    last_purchase_at: str | None
    created_at: str
    updated_at: str


class BalanceCheckResponse(BaseModel):
    """GET /v1/billing/balance/check response."""

    sufficient: bool
    balance: int
    required: int
    status: AccountStatus


class AutoRechargeUpdateRequest(BaseModel):
    """PUT /v1/billing/auto-recharge request body."""

    enabled: bool
    threshold: int | None = Field(None, ge=0, description="Recharge when balance falls to this")
    amount: int | None = Field(None, gt=0, description="Tokens to buy; must match a package")


# ============================================================================
# Transaction Models
# ============================================================================


class TransactionItem(BaseModel):
    """Single ledger transaction in list response."""

    transaction_id: UUID
    sequence: int
    transaction_type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    amount_cents: int | None
    usage_id: UUID | None
    external_payment_ref: str | None
    admin_user_id: UUID | None
    description: str
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /v1/billing/transactions response."""

    transactions: list[TransactionItem]
    count: int


# ============================================================================
# Usage Models
# ============================================================================


class RecordUsageRequest(BaseModel):
    """POST /v1/billing/usage request body (server-to-server only)."""

    secret: str = Field(..., min_length=1)

    user_id: UUID
    workspace_id: str = Field(..., min_length=1, max_length=255)
    project_id: str | None = Field(None, max_length=255)
    content_piece_id: str | None = Field(None, max_length=255)

    operation_type: OperationType
    provider: AIProvider
    model: str = Field(..., min_length=1, max_length=100)
    input_tokens: int | None = Field(None, ge=0)
    output_tokens: int | None = Field(None, ge=0)
    total_tokens: int | None = Field(None, ge=0)
    image_count: int | None = Field(None, ge=0)
    image_size: str | None = Field(None, max_length=50)
    request_metadata: str | None = Field(None, max_length=10000)
    success: bool
    error_message: str | None = Field(None, max_length=2000)

    billable_tokens: int = Field(..., ge=0)
    charge_type: ChargeType
    multiplier: float | None = Field(None, gt=0)
    fixed_cost: int | None = Field(None, ge=0)


class RecordUsageResponse(BaseModel):
    """POST /v1/billing/usage response."""

    usage_id: UUID
    billed: bool
    new_balance: int | None = None


class UsageItem(BaseModel):
    """Single usage record in list response."""

    usage_id: UUID
    workspace_id: str
    project_id: str | None
    content_piece_id: str | None
    operation_type: OperationType
    provider: AIProvider
    model: str
    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int | None
    image_count: int | None
    image_size: str | None
    billable_tokens: int
    actual_tokens: int
    charge_type: ChargeType
    multiplier: float | None
    success: bool
    error_message: str | None
    created_at: str


class UsageListResponse(BaseModel):
    """GET /v1/billing/usage response."""

    usage: list[UsageItem]
    count: int


# ============================================================================
# Pricing Models
# ============================================================================


class PackageResponse(BaseModel):
    """Token package in catalog responses."""

    package_id: UUID
    package_name: str
    token_amount: int
    price_cents: int
    description: str | None
    is_popular: bool
    sort_order: int
    active: bool


class PackageListResponse(BaseModel):
    """GET /v1/billing/packages response."""

    packages: list[PackageResponse]


class CreatePackageRequest(BaseModel):
    """POST /admin/packages request body."""

    package_name: str = Field(..., min_length=1, max_length=100)
    token_amount: int = Field(..., gt=0)
    price_cents: int = Field(..., gt=0)
    stripe_price_id: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=1000)
    is_popular: bool = False
    sort_order: int = 0
    active: bool = True


class UpdatePackageRequest(BaseModel):
    """PATCH /admin/packages/{package_id} request body - all fields optional."""

    package_name: str | None = Field(None, min_length=1, max_length=100)
    token_amount: int | None = Field(None, gt=0)
    price_cents: int | None = Field(None, gt=0)
    stripe_price_id: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=1000)
    is_popular: bool | None = None
    sort_order: int | None = None
    active: bool | None = None


# ============================================================================
# Checkout Models
# ============================================================================


class CheckoutRequest(BaseModel):
    """POST /v1/billing/checkout request body."""

    package_id: UUID
    success_url: str = Field(..., min_length=1, max_length=2000)
    cancel_url: str = Field(..., min_length=1, max_length=2000)

    @field_validator("success_url", "cancel_url")
    @classmethod
    def validate_redirect_url(cls, v: str) -> str:
        """Checkout redirects must be absolute http(s) URLs."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("Redirect URL must start with http:// or https://")
        return v


class CheckoutResponse(BaseModel):
    """POST /v1/billing/checkout response."""

    session_id: str
    url: str


# ============================================================================
# Admin Models
# ============================================================================


class AdminTokenAdjustmentRequest(BaseModel):
    """POST /admin/tokens/grant and /admin/tokens/deduct request body."""

    user_id: UUID
    amount: int
    reason: str = Field(..., min_length=1, max_length=500)


class AdminTokenAdjustmentResponse(BaseModel):
    """Result of an admin grant or deduction."""

    user_id: UUID
    new_balance: int
    status: AccountStatus


class TokenStatsResponse(BaseModel):
    """GET /admin/stats response."""

    total_accounts: int
    active_accounts: int
    suspended_accounts: int
    total_balance: int
    average_balance: int
    lifetime_tokens_purchased: int
    lifetime_tokens_used: int
    lifetime_actual_tokens_used: int
    revenue_cents: int
    profit_margin_percent: float


class ModelUsageStatsItem(BaseModel):
    """Per-model usage aggregate."""

    provider: AIProvider
    model: str
    operation_count: int
    billable_tokens: int
    actual_tokens: int


class OperationStatsItem(BaseModel):
    """Per-operation usage aggregate."""

    operation_type: OperationType
    operation_count: int
    success_count: int
    billable_tokens: int


class AdminAccountItem(BaseModel):
    """Account row in admin listing."""

    account_id: UUID
    user_id: UUID
    email: str | None
    balance: int
    status: AccountStatus
    lifetime_tokens_purchased: int
    lifetime_tokens_used: int
    created_at: str


class AdminAccountListResponse(BaseModel):
    """GET /admin/accounts response."""

    accounts: list[AdminAccountItem]
    count: int


class LedgerAuditResponse(BaseModel):
    """GET /admin/accounts/{user_id}/audit response."""

    user_id: UUID
    balance: int
    transaction_sum: int
    transaction_count: int
    consistent: bool
    first_broken_sequence: int | None


class SystemSettingsResponse(BaseModel):
    """GET /admin/settings response."""

    default_token_multiplier: float
    image_generation_cost_dalle3: int
    image_generation_cost_dalle2: int
    image_generation_cost_google: int
    tokens_per_usd: int
    min_purchase_amount_cents: int
    new_user_bonus_tokens: int
    low_balance_threshold: int
    critical_balance_threshold: int
    updated_at: str | None


class UpdateSystemSettingsRequest(BaseModel):
    """PUT /admin/settings request body - all fields optional."""

    default_token_multiplier: float | None = Field(None, gt=0)
    image_generation_cost_dalle3: int | None = Field(None, ge=0)
    image_generation_cost_dalle2: int | None = Field(None, ge=0)
    image_generation_cost_google: int | None = Field(None, ge=0)
    tokens_per_usd: int | None = Field(None, gt=0)
    min_purchase_amount_cents: int | None = Field(None, ge=0)
    new_user_bonus_tokens: int | None = Field(None, ge=0)
    low_balance_threshold: int | None = Field(None, ge=0)
    critical_balance_threshold: int | None = Field(None, ge=0)


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str

"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from token_ledger.models.api import (
    AccountStatus,
    AIProvider,
    ChargeType,
    OperationType,
    TransactionType,
)

# Transaction types that may flow through the generic credit path
CREDIT_TRANSACTION_TYPES = frozenset(
    {
        TransactionType.PURCHASE,
        TransactionType.ADMIN_GRANT,
        TransactionType.REFUND,
        TransactionType.AUTO_RECHARGE,
    }
)


@dataclass(frozen=True)
class CreditIntent:
    """Domain model for a credit before persistence - immutable intent."""

    user_id: UUID
    amount: int
    transaction_type: TransactionType
    description: str
    amount_cents: int | None = None
    external_payment_ref: str | None = None
    admin_user_id: UUID | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate credit constraints."""
        if self.transaction_type not in CREDIT_TRANSACTION_TYPES:
            raise ValueError(f"Not a credit transaction type: {self.transaction_type.value}")
        if self.transaction_type == TransactionType.REFUND:
            if self.amount >= 0:
                raise ValueError(f"Refund amount must be negative: {self.amount}")
        elif self.amount <= 0:
            raise ValueError(f"Credit amount must be positive: {self.amount}")
        if self.amount_cents is not None and self.amount_cents < 0:
            raise ValueError(f"amount_cents cannot be negative: {self.amount_cents}")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class UsageContext:
    """Who and where an AI operation ran for."""

    user_id: UUID
    workspace_id: str
    project_id: str | None = None
    content_piece_id: str | None = None

    def __post_init__(self) -> None:
        if not self.workspace_id:
            raise ValueError("workspace_id cannot be empty")


@dataclass(frozen=True)
class OperationDescriptor:
    """What was executed and how much the provider consumed."""

    operation_type: OperationType
    provider: AIProvider
    model: str
    success: bool
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    image_count: int | None = None
    image_size: str | None = None
    request_metadata: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("model cannot be empty")
        for name in ("input_tokens", "output_tokens", "total_tokens", "image_count"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative: {value}")


@dataclass(frozen=True)
class CostDescriptor:
    """What the operation costs the user."""

    billable_tokens: int
    charge_type: ChargeType
    multiplier: float | None = None
    fixed_cost: int | None = None

    def __post_init__(self) -> None:
        if self.billable_tokens < 0:
            raise ValueError(f"billable_tokens cannot be negative: {self.billable_tokens}")
        if self.multiplier is not None and self.multiplier <= 0:
            raise ValueError(f"multiplier must be positive: {self.multiplier}")
        if self.fixed_cost is not None and self.fixed_cost < 0:
            raise ValueError(f"fixed_cost cannot be negative: {self.fixed_cost}")

    @property
    def actual_tokens(self) -> int:
        """Provider-consumed tokens before markup, for cost analytics."""
        if self.charge_type == ChargeType.MULTIPLIER and self.multiplier:
            # Halves round up
            return math.floor(self.billable_tokens / self.multiplier + 0.5)
        return self.billable_tokens


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

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
    external_customer_id: str | None
    default_payment_method_id: str | None
    last_purchase_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction data."""

    transaction_id: UUID
    account_id: UUID
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
    created_at: datetime


@dataclass(frozen=True)
class UsageData:
    """Immutable usage record data."""

    usage_id: UUID
    user_id: UUID
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
    created_at: datetime


@dataclass(frozen=True)
class UsageReceipt:
    """Outcome of recording one usage fact."""

    usage_id: UUID
    billed: bool
    new_balance: int | None


@dataclass(frozen=True)
class BalanceCheck:
    """Read-only sufficiency answer for a prospective operation."""

    sufficient: bool
    balance: int
    required: int
    status: AccountStatus


@dataclass(frozen=True)
class PackageData:
    """Immutable pricing package data."""

    package_id: UUID
    package_name: str
    token_amount: int
    price_cents: int
    stripe_price_id: str
    description: str | None
    is_popular: bool
    sort_order: int
    active: bool


@dataclass(frozen=True)
class AutoRechargeResult:
    """Structured outcome of an auto-recharge attempt. Never raised."""

    success: bool
    reason: str | None = None
    payment_ref: str | None = None
    tokens_added: int = 0


@dataclass(frozen=True)
class LedgerAudit:
    """Replay of an account's transaction chain against its stored balance."""

    user_id: UUID
    balance: int
    transaction_sum: int
    transaction_count: int
    first_broken_sequence: int | None

    @property
    def consistent(self) -> bool:
        return self.first_broken_sequence is None and self.balance == self.transaction_sum


@dataclass(frozen=True)
class TokenStats:
    """Platform-wide token economics."""

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


@dataclass(frozen=True)
class ModelUsageStats:
    """Usage aggregated per provider/model."""

    provider: AIProvider
    model: str
    operation_count: int
    billable_tokens: int
    actual_tokens: int


@dataclass(frozen=True)
class OperationStats:
    """Usage aggregated per operation type."""

    operation_type: OperationType
    operation_count: int
    success_count: int
    billable_tokens: int


@dataclass(frozen=True)
class SystemSettingsData:
    """Immutable snapshot of the system pricing settings."""

    default_token_multiplier: float
    image_generation_cost_dalle3: int
    image_generation_cost_dalle2: int
    image_generation_cost_google: int
    tokens_per_usd: int
    min_purchase_amount_cents: int
    new_user_bonus_tokens: int
    low_balance_threshold: int
    critical_balance_threshold: int
    updated_at: datetime | None

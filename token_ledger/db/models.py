"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    The trusted identity record. Roles are only ever read from here.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    auth_subject: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: ["user"])
    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    onboarding_tokens_granted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def has_any_role(self, *roles: str) -> bool:
        """Check role membership on the stored record."""
        return any(role in (self.roles or []) for role in roles)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, subject={self.auth_subject}, roles={self.roles})>"


class TokenAccount(Base):
    """
    ORM model for token_accounts table.

    One per user. Balance is signed and must equal the sum of its transactions.
    """

    __tablename__ = "token_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Balance (signed - may go negative under concurrent spend)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Lifetime counters
    lifetime_tokens_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_actual_tokens_used: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    lifetime_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Auto-recharge configuration
    auto_recharge_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_recharge_threshold: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    auto_recharge_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Payment provider references
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Number of transactions written; the next transaction gets this + 1
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_purchase_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'suspended', 'blocked')", name="ck_token_account_status"
        ),
        CheckConstraint("transaction_count >= 0", name="ck_transaction_count_non_negative"),
        CheckConstraint(
            "auto_recharge_threshold IS NULL OR auto_recharge_threshold >= 0",
            name="ck_auto_recharge_threshold_non_negative",
        ),
        CheckConstraint(
            "auto_recharge_amount IS NULL OR auto_recharge_amount > 0",
            name="ck_auto_recharge_amount_positive",
        ),
        Index("idx_token_accounts_status", "status"),
        Index("idx_token_accounts_external_customer", "external_customer_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenAccount(id={self.id}, user_id={self.user_id}, "
            f"balance={self.balance}, status={self.status})>"
        )


class TokenUsage(Base):
    """
    ORM model for token_usage table.

    One row per metered AI operation attempt, successful or not.
    """

    __tablename__ = "token_usage"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(String(255), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_piece_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Operation descriptors
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)

    # Raw consumption
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_size: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Cost
    billable_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    charge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    multiplier: Mapped[float | None] = mapped_column(Float, nullable=True)
    fixed_cost: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    request_metadata: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("billable_tokens >= 0", name="ck_usage_billable_non_negative"),
        CheckConstraint("charge_type IN ('multiplier', 'fixed')", name="ck_usage_charge_type"),
        Index("idx_token_usage_user_created", "user_id", "created_at"),
        Index("idx_token_usage_operation", "operation_type"),
        Index("idx_token_usage_model", "provider", "model"),
    )


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Append-only ledger. Each row chains from the account's previous balance.
    """

    __tablename__ = "token_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("token_accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    usage_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("token_usage.id", ondelete="SET NULL"), nullable=True
    )
    external_payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "balance_after = balance_before + amount", name="ck_transaction_balance_chain"
        ),
        CheckConstraint(
            "transaction_type IN ('bonus', 'purchase', 'usage', 'admin_grant', "
            "'admin_deduction', 'refund', 'auto_recharge')",
            name="ck_transaction_type",
        ),
        CheckConstraint("sequence > 0", name="ck_transaction_sequence_positive"),
        UniqueConstraint("account_id", "sequence", name="uq_transaction_account_sequence"),
        UniqueConstraint(
            "account_id", "idempotency_key", name="uq_transaction_account_idempotency"
        ),
        Index("idx_token_transactions_user_created", "user_id", "created_at"),
        Index("idx_token_transactions_type", "transaction_type"),
        Index("idx_token_transactions_payment_ref", "external_payment_ref"),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenTransaction(id={self.id}, seq={self.sequence}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )


class TokenPackage(Base):
    """ORM model for token_packages table (pricing catalog)."""

    __tablename__ = "token_packages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    package_name: Mapped[str] = mapped_column(String(100), nullable=False)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("token_amount > 0", name="ck_package_tokens_positive"),
        CheckConstraint("price_cents > 0", name="ck_package_price_positive"),
        Index("idx_token_packages_active_sort", "active", "sort_order"),
    )


class SystemSettings(Base):
    """ORM model for system_settings table (single row)."""

    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    default_token_multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    image_generation_cost_dalle3: Mapped[int] = mapped_column(Integer, nullable=False)
    image_generation_cost_dalle2: Mapped[int] = mapped_column(Integer, nullable=False)
    image_generation_cost_google: Mapped[int] = mapped_column(Integer, nullable=False)
    tokens_per_usd: Mapped[int] = mapped_column(Integer, nullable=False)
    min_purchase_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    new_user_bonus_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    low_balance_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)
    critical_balance_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)

    updated_by: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("id = 1", name="ck_system_settings_single_row"),)

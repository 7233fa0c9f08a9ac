"""
Admin Service - Privileged balance adjustments and platform analytics.

Every operation re-reads the caller's User row and checks roles there.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.db.models import TokenAccount, TokenTransaction, TokenUsage, User
from token_ledger.exceptions import InvalidInputError, UserNotFoundError
from token_ledger.models.api import (
    AccountStatus,
    AIProvider,
    OperationType,
    TransactionType,
    UserRole,
)
from token_ledger.models.domain import (
    CreditIntent,
    LedgerAudit,
    ModelUsageStats,
    OperationStats,
    TokenStats,
)
from token_ledger.observability.logging import get_logger
from token_ledger.services.identity import require_roles
from token_ledger.services.ledger import LedgerService

logger = get_logger(__name__)

ANALYTICS_ROLES = (UserRole.ADMIN, UserRole.SUPERADMIN)


@dataclass(frozen=True)
class AdminAccountRow:
    """Account listing row joined with the owner's email."""

    account_id: UUID
    user_id: UUID
    email: str | None
    balance: int
    status: AccountStatus
    lifetime_tokens_purchased: int
    lifetime_tokens_used: int
    created_at: datetime


class AdminService:
    """Superadmin adjustments plus admin analytics."""

    def __init__(self, session: AsyncSession, ledger: LedgerService | None = None) -> None:
        self.session = session
        self.ledger = ledger or LedgerService(session)

    # ========================================================================
    # Balance adjustments (superadmin)
    # ========================================================================

    async def grant_tokens(
        self, actor_id: UUID, target_user_id: UUID, amount: int, reason: str
    ) -> tuple[int, AccountStatus]:
        """
        Credit tokens to a user, creating an empty account if needed.

        Returns (new_balance, status).

        Raises:
            AuthenticationError / AuthorizationError: Caller is not superadmin
            InvalidInputError: amount <= 0
            UserNotFoundError: Target user doesn't exist
        """
        await require_roles(self.session, actor_id, UserRole.SUPERADMIN)
        if amount <= 0:
            raise InvalidInputError(f"Grant amount must be positive, got {amount}")

        target = await self.session.get(User, target_user_id)
        if target is None:
            raise UserNotFoundError(target_user_id)

        await self.ledger.ensure_account(target_user_id)
        new_balance = await self.ledger.credit(
            CreditIntent(
                user_id=target_user_id,
                amount=amount,
                transaction_type=TransactionType.ADMIN_GRANT,
                description=f"Admin grant: {reason}",
                admin_user_id=actor_id,
            )
        )
        account = await self.ledger.get_account(target_user_id)

        logger.info(
            "admin_tokens_granted",
            actor_id=str(actor_id),
            user_id=str(target_user_id),
            amount=amount,
            new_balance=new_balance,
            reason=reason,
        )
        return new_balance, account.status

    async def deduct_tokens(
        self, actor_id: UUID, target_user_id: UUID, amount: int, reason: str
    ) -> tuple[int, AccountStatus]:
        """
        Remove tokens from a user's existing account.

        Raises:
            AuthenticationError / AuthorizationError: Caller is not superadmin
            InvalidInputError: amount <= 0
            AccountNotFoundError: Target has no account
        """
        await require_roles(self.session, actor_id, UserRole.SUPERADMIN)

        new_balance = await self.ledger.deduct(target_user_id, amount, actor_id, reason)
        account = await self.ledger.get_account(target_user_id)

        logger.info(
            "admin_tokens_deducted",
            actor_id=str(actor_id),
            user_id=str(target_user_id),
            amount=amount,
            new_balance=new_balance,
            reason=reason,
        )
        return new_balance, account.status

    # ========================================================================
    # Analytics (admin or superadmin)
    # ========================================================================

    async def get_token_stats(self, actor_id: UUID) -> TokenStats:
        """Platform-wide balances, lifetime counters, revenue and margin."""
        await require_roles(self.session, actor_id, *ANALYTICS_ROLES)

        account_stmt = select(
            func.count(TokenAccount.id).label("total"),
            func.coalesce(
                func.sum(case((TokenAccount.status == AccountStatus.ACTIVE.value, 1), else_=0)), 0
            ).label("active"),
            func.coalesce(
                func.sum(case((TokenAccount.status == AccountStatus.SUSPENDED.value, 1), else_=0)),
                0,
            ).label("suspended"),
            func.coalesce(func.sum(TokenAccount.balance), 0).label("balance"),
            func.coalesce(func.sum(TokenAccount.lifetime_tokens_purchased), 0).label("purchased"),
            func.coalesce(func.sum(TokenAccount.lifetime_tokens_used), 0).label("used"),
            func.coalesce(func.sum(TokenAccount.lifetime_actual_tokens_used), 0).label("actual"),
        )
        accounts = (await self.session.execute(account_stmt)).one()

        revenue_stmt = select(func.coalesce(func.sum(TokenTransaction.amount_cents), 0)).where(
            TokenTransaction.transaction_type == TransactionType.PURCHASE.value
        )
        revenue_cents = int((await self.session.execute(revenue_stmt)).scalar_one())

        usage_stmt = select(
            func.coalesce(func.sum(TokenUsage.billable_tokens), 0),
            func.coalesce(func.sum(TokenUsage.actual_tokens), 0),
        ).where(TokenUsage.success.is_(True))
        billable, actual = (await self.session.execute(usage_stmt)).one()

        total = int(accounts.total)
        total_balance = int(accounts.balance)
        return TokenStats(
            total_accounts=total,
            active_accounts=int(accounts.active),
            suspended_accounts=int(accounts.suspended),
            total_balance=total_balance,
            average_balance=total_balance // total if total else 0,
            lifetime_tokens_purchased=int(accounts.purchased),
            lifetime_tokens_used=int(accounts.used),
            lifetime_actual_tokens_used=int(accounts.actual),
            revenue_cents=revenue_cents,
            profit_margin_percent=profit_margin_percent(int(billable), int(actual)),
        )

    async def get_model_usage_stats(self, actor_id: UUID) -> list[ModelUsageStats]:
        """Successful usage per provider/model, largest billable first."""
        await require_roles(self.session, actor_id, *ANALYTICS_ROLES)

        billable = func.coalesce(func.sum(TokenUsage.billable_tokens), 0)
        stmt = (
            select(
                TokenUsage.provider,
                TokenUsage.model,
                func.count(TokenUsage.id).label("operation_count"),
                billable.label("billable_tokens"),
                func.coalesce(func.sum(TokenUsage.actual_tokens), 0).label("actual_tokens"),
            )
            .where(TokenUsage.success.is_(True))
            .group_by(TokenUsage.provider, TokenUsage.model)
            .order_by(billable.desc())
        )
        result = await self.session.execute(stmt)
        return [
            ModelUsageStats(
                provider=AIProvider(row.provider),
                model=row.model,
                operation_count=int(row.operation_count),
                billable_tokens=int(row.billable_tokens),
                actual_tokens=int(row.actual_tokens),
            )
            for row in result.all()
        ]

    async def get_operation_stats(self, actor_id: UUID) -> list[OperationStats]:
        """All usage per operation type, most frequent first."""
        await require_roles(self.session, actor_id, *ANALYTICS_ROLES)

        operation_count = func.count(TokenUsage.id)
        stmt = (
            select(
                TokenUsage.operation_type,
                operation_count.label("operation_count"),
                func.coalesce(
                    func.sum(case((TokenUsage.success.is_(True), 1), else_=0)), 0
                ).label("success_count"),
                func.coalesce(
                    func.sum(
                        case((TokenUsage.success.is_(True), TokenUsage.billable_tokens), else_=0)
                    ),
                    0,
                ).label("billable_tokens"),
            )
            .group_by(TokenUsage.operation_type)
            .order_by(operation_count.desc())
        )
        result = await self.session.execute(stmt)
        return [
            OperationStats(
                operation_type=OperationType(row.operation_type),
                operation_count=int(row.operation_count),
                success_count=int(row.success_count),
                billable_tokens=int(row.billable_tokens),
            )
            for row in result.all()
        ]

    async def list_accounts(
        self, actor_id: UUID, limit: int = 100, status: AccountStatus | None = None
    ) -> list[AdminAccountRow]:
        """Accounts with owner email, newest first."""
        await require_roles(self.session, actor_id, *ANALYTICS_ROLES)
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")

        stmt = select(TokenAccount, User.email).join(User, User.id == TokenAccount.user_id)
        if status is not None:
            stmt = stmt.where(TokenAccount.status == status.value)
        stmt = stmt.order_by(TokenAccount.created_at.desc()).limit(limit)

        result = await self.session.execute(stmt)
        return [
            AdminAccountRow(
                account_id=account.id,
                user_id=account.user_id,
                email=email,
                balance=account.balance,
                status=AccountStatus(account.status),
                lifetime_tokens_purchased=account.lifetime_tokens_purchased,
                lifetime_tokens_used=account.lifetime_tokens_used,
                created_at=account.created_at,
            )
            for account, email in result.all()
        ]

    async def audit_account(self, actor_id: UUID, target_user_id: UUID) -> LedgerAudit:
        """Replay one account's ledger chain."""
        await require_roles(self.session, actor_id, *ANALYTICS_ROLES)
        return await self.ledger.audit_account(target_user_id)


def profit_margin_percent(billable_tokens: int, actual_tokens: int) -> float:
    """(billable - actual) / billable * 100, rounded to two places; 0 with no usage."""
    if billable_tokens <= 0:
        return 0.0
    return round((billable_tokens - actual_tokens) / billable_tokens * 100, 2)

"""
Ledger Service - Authoritative token balances with an append-only audit trail.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change follows the same path:
1. Acquire the per-account lock and SELECT ... FOR UPDATE the account row
2. Check the chain head (last transaction's balance_after == account balance)
3. Update counters/status, append a transaction, flush
4. Read back and verify
5. Commit
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import TokenAccount, TokenTransaction, User
from token_ledger.exceptions import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InvalidInputError,
    InvariantViolationError,
    UserNotFoundError,
)
from token_ledger.models.api import AccountStatus, TransactionType
from token_ledger.models.domain import (
    AccountData,
    BalanceCheck,
    CreditIntent,
    LedgerAudit,
    TransactionData,
)
from token_ledger.observability.logging import get_logger
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import trace_operation
from token_ledger.services.account_locks import AccountLockRegistry, account_locks
from token_ledger.services.system_settings import SystemSettingsService

logger = get_logger(__name__)

WELCOME_BONUS_DESCRIPTION = "Welcome bonus for new user"
USAGE_DESCRIPTION = "Token usage for AI operation"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def next_status(current: str, new_balance: int, allow_reactivation: bool) -> str:
    """
    Status after a balance change.

    Negative balances suspend an active account. Only credits may lift a
    suspension, and nothing here lifts a block.
    """
    if new_balance < 0 and current == AccountStatus.ACTIVE.value:
        return AccountStatus.SUSPENDED.value
    if allow_reactivation and new_balance >= 0 and current == AccountStatus.SUSPENDED.value:
        return AccountStatus.ACTIVE.value
    return current


class LedgerService:
    """
    Ledger core with per-account serialization and write verification.

    Methods prefixed `apply_` expect the caller to hold `locked_account()` and
    to commit; every other mutating method is a complete unit of work.
    """

    def __init__(self, session: AsyncSession, locks: AccountLockRegistry | None = None) -> None:
        """Initialize ledger service with database session."""
        self.session = session
        self.locks = locks or account_locks

    # ========================================================================
    # Account lifecycle
    # ========================================================================

    async def initialize_account(self, user_id: UUID, workspace_id: str | None) -> AccountData:
        """
        Create the user's account with the welcome bonus, or return the existing one.

        Idempotent: repeated calls return the same account and never write a
        second bonus transaction.

        Raises:
            UserNotFoundError: No user record for user_id
        """
        existing = await self._find_account(user_id)
        if existing is not None:
            return self._account_to_domain(existing)

        bonus = (await SystemSettingsService(self.session).get_settings()).new_user_bonus_tokens
        return await self._create_account(user_id, workspace_id, welcome_bonus=bonus)

    async def ensure_account(self, user_id: UUID) -> AccountData:
        """
        Return the user's account, creating an empty one (no bonus) if absent.

        Raises:
            UserNotFoundError: No user record for user_id
        """
        existing = await self._find_account(user_id)
        if existing is not None:
            return self._account_to_domain(existing)
        return await self._create_account(user_id, None, welcome_bonus=None)

    async def get_account(self, user_id: UUID) -> AccountData:
        """
        Get account by user id.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return self._account_to_domain(account)

    async def check_balance(self, user_id: UUID, required: int) -> BalanceCheck:
        """
        Read-only sufficiency check.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidInputError: Negative requirement
        """
        if required < 0:
            raise InvalidInputError(f"required must be >= 0, got {required}")

        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        status = AccountStatus(account.status)
        return BalanceCheck(
            sufficient=status == AccountStatus.ACTIVE and account.balance >= required,
            balance=account.balance,
            required=required,
            status=status,
        )

    # ========================================================================
    # Balance changes
    # ========================================================================

    async def credit(self, intent: CreditIntent) -> int:
        """
        Credit tokens (purchase, admin grant, refund, auto-recharge).

        Returns the new balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
            IdempotencyConflictError: Idempotency key already applied
            InvariantViolationError: Chain or write verification failed
        """
        with trace_operation(
            "ledger.credit",
            user_id=intent.user_id,
            amount=intent.amount,
            transaction_type=intent.transaction_type.value,
        ):
            async with self.locked_account(intent.user_id) as account:
                if intent.idempotency_key:
                    existing = await self._find_by_idempotency(account.id, intent.idempotency_key)
                    if existing is not None:
                        raise IdempotencyConflictError(intent.idempotency_key, existing.id)

                txn = await self.apply_credit(account, intent)
                await self.session.commit()

        self.record_committed(txn)
        return txn.balance_after

    async def debit(
        self,
        user_id: UUID,
        billable_tokens: int,
        actual_tokens: int,
        usage_id: UUID | None = None,
    ) -> int:
        """
        Debit metered usage. May drive the balance negative (suspending the account).

        Returns the new balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidInputError: Non-positive billable tokens
            InvariantViolationError: Chain or write verification failed
        """
        async with self.locked_account(user_id) as account:
            txn = await self.apply_debit(account, billable_tokens, actual_tokens, usage_id)
            await self.session.commit()

        self.record_committed(txn)
        return txn.balance_after

    async def deduct(self, user_id: UUID, amount: int, admin_user_id: UUID, reason: str) -> int:
        """
        Administrative deduction, separate from metered debit.

        May drive the balance negative. Returns the new balance.

        Raises:
            InvalidInputError: amount <= 0
            AccountNotFoundError: Account doesn't exist
        """
        if amount <= 0:
            raise InvalidInputError(f"Deduction amount must be positive, got {amount}")

        with trace_operation("ledger.deduct", user_id=user_id, amount=amount):
            async with self.locked_account(user_id) as account:
                account.status = next_status(
                    account.status, account.balance - amount, allow_reactivation=False
                )
                txn = await self._append_transaction(
                    account,
                    amount=-amount,
                    transaction_type=TransactionType.ADMIN_DEDUCTION,
                    description=f"Admin deduction: {reason}",
                    admin_user_id=admin_user_id,
                )
                await self.session.commit()

        self.record_committed(txn)
        return txn.balance_after

    async def apply_credit(self, account: TokenAccount, intent: CreditIntent) -> TokenTransaction:
        """Apply a credit inside a held account lock. Caller commits."""
        new_balance = account.balance + intent.amount
        account.lifetime_tokens_purchased += intent.amount
        account.lifetime_spent_cents += intent.amount_cents or 0
        if intent.transaction_type in (TransactionType.PURCHASE, TransactionType.AUTO_RECHARGE):
            account.last_purchase_at = _utc_now()
        account.status = next_status(account.status, new_balance, allow_reactivation=True)

        return await self._append_transaction(
            account,
            amount=intent.amount,
            transaction_type=intent.transaction_type,
            description=intent.description,
            amount_cents=intent.amount_cents,
            external_payment_ref=intent.external_payment_ref,
            admin_user_id=intent.admin_user_id,
            idempotency_key=intent.idempotency_key,
        )

    async def apply_debit(
        self,
        account: TokenAccount,
        billable_tokens: int,
        actual_tokens: int,
        usage_id: UUID | None,
    ) -> TokenTransaction:
        """Apply a usage debit inside a held account lock. Caller commits."""
        if billable_tokens <= 0:
            raise InvalidInputError(f"billable_tokens must be positive, got {billable_tokens}")
        if actual_tokens < 0:
            raise InvalidInputError(f"actual_tokens cannot be negative, got {actual_tokens}")

        new_balance = account.balance - billable_tokens
        account.lifetime_tokens_used += billable_tokens
        account.lifetime_actual_tokens_used += actual_tokens
        account.status = next_status(account.status, new_balance, allow_reactivation=False)

        return await self._append_transaction(
            account,
            amount=-billable_tokens,
            transaction_type=TransactionType.USAGE,
            description=USAGE_DESCRIPTION,
            usage_id=usage_id,
        )

    def record_committed(self, txn: TokenTransaction) -> None:
        """Emit metrics and logs for a committed transaction."""
        metrics.record_ledger_write(txn.transaction_type, txn.amount)
        if txn.balance_after < 0 <= txn.balance_before:
            metrics.account_suspensions_total.inc()
        logger.info(
            "ledger_transaction_committed",
            user_id=str(txn.user_id),
            transaction_id=str(txn.id),
            transaction_type=txn.transaction_type,
            amount=txn.amount,
            balance_before=txn.balance_before,
            balance_after=txn.balance_after,
            sequence=txn.sequence,
        )

    # ========================================================================
    # Account settings (no balance change)
    # ========================================================================

    async def update_auto_recharge(
        self,
        user_id: UUID,
        enabled: bool,
        threshold: int | None = None,
        amount: int | None = None,
    ) -> AccountData:
        """
        Update auto-recharge configuration.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidInputError: Negative threshold or non-positive amount
        """
        if threshold is not None and threshold < 0:
            raise InvalidInputError(f"threshold must be >= 0, got {threshold}")
        if amount is not None and amount <= 0:
            raise InvalidInputError(f"amount must be positive, got {amount}")

        async with self.locked_account(user_id) as account:
            account.auto_recharge_enabled = enabled
            if threshold is not None:
                account.auto_recharge_threshold = threshold
            if amount is not None:
                account.auto_recharge_amount = amount
            await self.session.commit()

        logger.info(
            "auto_recharge_updated",
            user_id=str(user_id),
            enabled=enabled,
            threshold=account.auto_recharge_threshold,
            amount=account.auto_recharge_amount,
        )
        return self._account_to_domain(account)

    async def disable_auto_recharge(self, user_id: UUID, reason: str) -> None:
        """Turn auto-recharge off. Missing accounts are ignored."""
        async with self.locks.hold(user_id):
            account = await self._lock_account_for_update(user_id)
            if account is None or not account.auto_recharge_enabled:
                await self.session.rollback()
                return
            account.auto_recharge_enabled = False
            await self.session.commit()

        logger.warning("auto_recharge_disabled", user_id=str(user_id), reason=reason)

    async def set_payment_details(
        self,
        user_id: UUID,
        external_customer_id: str | None = None,
        default_payment_method_id: str | None = None,
    ) -> AccountData:
        """
        Persist payment provider references on the account.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        async with self.locked_account(user_id) as account:
            if external_customer_id is not None:
                account.external_customer_id = external_customer_id
            if default_payment_method_id is not None:
                account.default_payment_method_id = default_payment_method_id
            await self.session.commit()

        return self._account_to_domain(account)

    # ========================================================================
    # Reads
    # ========================================================================

    async def list_transactions(self, user_id: UUID, limit: int = 50) -> list[TransactionData]:
        """Newest-first transaction history."""
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.sequence.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._transaction_to_domain(txn) for txn in result.scalars().all()]

    async def audit_account(self, user_id: UUID) -> LedgerAudit:
        """
        Replay the full chain and compare it to the stored balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.account_id == account.id)
            .order_by(TokenTransaction.sequence.asc())
        )
        result = await self.session.execute(stmt)
        transactions = result.scalars().all()

        running = 0
        first_broken: int | None = None
        for position, txn in enumerate(transactions, start=1):
            intact = (
                txn.sequence == position
                and txn.balance_before == running
                and txn.balance_after == txn.balance_before + txn.amount
            )
            if not intact and first_broken is None:
                first_broken = txn.sequence
            running = txn.balance_after

        audit = LedgerAudit(
            user_id=user_id,
            balance=account.balance,
            transaction_sum=sum(txn.amount for txn in transactions),
            transaction_count=len(transactions),
            first_broken_sequence=first_broken,
        )
        if not audit.consistent:
            logger.error(
                "ledger_audit_failed",
                user_id=str(user_id),
                balance=audit.balance,
                transaction_sum=audit.transaction_sum,
                first_broken_sequence=first_broken,
            )
        return audit

    # ========================================================================
    # Serialization primitives
    # ========================================================================

    @asynccontextmanager
    async def locked_account(self, user_id: UUID) -> AsyncIterator[TokenAccount]:
        """
        Hold the per-account lock with the account row locked for update.

        Rolls back if the body raises.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        async with self.locks.hold(user_id):
            account = await self._lock_account_for_update(user_id)
            if account is None:
                await self.session.rollback()
                raise AccountNotFoundError(user_id)
            try:
                yield account
            except BaseException:
                await self.session.rollback()
                raise

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _create_account(
        self, user_id: UUID, workspace_id: str | None, welcome_bonus: int | None
    ) -> AccountData:
        async with self.locks.hold(user_id):
            # Re-check under the lock; a concurrent initializer may have won
            existing = await self._find_account(user_id, refresh=True)
            if existing is not None:
                return self._account_to_domain(existing)

            user = await self.session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            account = TokenAccount(
                user_id=user_id,
                workspace_id=workspace_id or user.workspace_id,
                balance=0,
                currency=settings.default_currency,
                status=AccountStatus.ACTIVE.value,
                lifetime_tokens_purchased=0,
                lifetime_tokens_used=0,
                lifetime_actual_tokens_used=0,
                lifetime_spent_cents=0,
                auto_recharge_enabled=False,
                transaction_count=0,
            )
            self.session.add(account)

            try:
                await self.session.flush()
            except IntegrityError:
                # Race condition - account created by another worker
                await self.session.rollback()
                account = await self._find_account(user_id, refresh=True)
                if account is None:
                    raise InvariantViolationError(
                        f"Account creation for user {user_id} failed due to race condition"
                    )
                return self._account_to_domain(account)

            txn: TokenTransaction | None = None
            if welcome_bonus is not None:
                txn = await self._append_transaction(
                    account,
                    amount=welcome_bonus,
                    transaction_type=TransactionType.BONUS,
                    description=WELCOME_BONUS_DESCRIPTION,
                )
                user.onboarding_tokens_granted = True

            await self.session.commit()

        metrics.accounts_created_total.labels(welcome_bonus=str(txn is not None)).inc()
        if txn is not None:
            self.record_committed(txn)
        logger.info(
            "token_account_initialized",
            user_id=str(user_id),
            account_id=str(account.id),
            welcome_bonus=welcome_bonus or 0,
        )
        return self._account_to_domain(account)

    async def _append_transaction(
        self,
        account: TokenAccount,
        *,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        usage_id: UUID | None = None,
        amount_cents: int | None = None,
        external_payment_ref: str | None = None,
        admin_user_id: UUID | None = None,
        idempotency_key: str | None = None,
    ) -> TokenTransaction:
        """Write one transaction and move the balance, then verify both."""
        await self._verify_chain_head(account)

        balance_before = account.balance
        balance_after = balance_before + amount
        sequence = account.transaction_count + 1

        txn = TokenTransaction(
            account_id=account.id,
            user_id=account.user_id,
            workspace_id=account.workspace_id,
            sequence=sequence,
            transaction_type=transaction_type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            amount_cents=amount_cents,
            usage_id=usage_id,
            external_payment_ref=external_payment_ref,
            admin_user_id=admin_user_id,
            idempotency_key=idempotency_key,
            description=description,
        )
        account.balance = balance_after
        account.transaction_count = sequence
        self.session.add(txn)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            # Sequence or idempotency uniqueness: another writer got past serialization
            await self.session.rollback()
            self._invariant_violated(
                transaction_type.value,
                f"Concurrent write on account {account.id} at sequence {sequence}",
            )
            raise InvariantViolationError(
                f"Concurrent write on account {account.id} at sequence {sequence}"
            ) from exc

        verified_txn = await self.session.get(TokenTransaction, txn.id)
        if verified_txn is None:
            self._invariant_violated(transaction_type.value, "transaction missing after insert")
            raise InvariantViolationError(f"Transaction {txn.id} not found after insert")

        verified_account = await self.session.get(TokenAccount, account.id)
        if verified_account is None:
            self._invariant_violated(transaction_type.value, "account missing after update")
            raise InvariantViolationError(f"Account {account.id} disappeared after update")

        if verified_account.balance != verified_txn.balance_after:
            self._invariant_violated(transaction_type.value, "balance/transaction mismatch")
            raise InvariantViolationError(
                f"Balance mismatch: account={verified_account.balance}, "
                f"transaction balance_after={verified_txn.balance_after}"
            )

        return verified_txn

    async def _verify_chain_head(self, account: TokenAccount) -> None:
        """The account balance must equal the last transaction's balance_after."""
        if account.transaction_count == 0:
            expected = 0
        else:
            stmt = select(TokenTransaction.balance_after).where(
                TokenTransaction.account_id == account.id,
                TokenTransaction.sequence == account.transaction_count,
            )
            result = await self.session.execute(stmt)
            last_balance = result.scalar_one_or_none()
            if last_balance is None:
                self._invariant_violated("chain_head", "last transaction missing")
                raise InvariantViolationError(
                    f"Account {account.id} has no transaction at sequence "
                    f"{account.transaction_count}"
                )
            expected = last_balance

        if account.balance != expected:
            self._invariant_violated("chain_head", "balance_before mismatch")
            raise InvariantViolationError(
                f"balance_before mismatch on account {account.id}: "
                f"balance={account.balance}, chain head={expected}"
            )

    def _invariant_violated(self, operation: str, detail: str) -> None:
        metrics.invariant_violations_total.labels(operation=operation).inc()
        logger.error("ledger_invariant_violation", operation=operation, detail=detail)

    async def _find_account(self, user_id: UUID, refresh: bool = False) -> TokenAccount | None:
        stmt = select(TokenAccount).where(TokenAccount.user_id == user_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, user_id: UUID) -> TokenAccount | None:
        """Lock account row for update (SELECT FOR UPDATE), refreshing cached state."""
        stmt = (
            select(TokenAccount)
            .where(TokenAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_by_idempotency(
        self, account_id: UUID, idempotency_key: str
    ) -> TokenTransaction | None:
        stmt = select(TokenTransaction).where(
            TokenTransaction.account_id == account_id,
            TokenTransaction.idempotency_key == idempotency_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _account_to_domain(self, account: TokenAccount) -> AccountData:
        """Convert ORM account to domain model."""
        return AccountData(
            account_id=account.id,
            user_id=account.user_id,
            workspace_id=account.workspace_id,
            balance=account.balance,
            currency=account.currency,
            status=AccountStatus(account.status),
            lifetime_tokens_purchased=account.lifetime_tokens_purchased,
            lifetime_tokens_used=account.lifetime_tokens_used,
            lifetime_actual_tokens_used=account.lifetime_actual_tokens_used,
            lifetime_spent_cents=account.lifetime_spent_cents,
            auto_recharge_enabled=account.auto_recharge_enabled,
            auto_recharge_threshold=account.auto_recharge_threshold,
            auto_recharge_amount=account.auto_recharge_amount,
            external_customer_id=account.external_customer_id,
            default_payment_method_id=account.default_payment_method_id,
            last_purchase_at=account.last_purchase_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )

    def _transaction_to_domain(self, txn: TokenTransaction) -> TransactionData:
        """Convert ORM transaction to domain model."""
        return TransactionData(
            transaction_id=txn.id,
            account_id=txn.account_id,
            sequence=txn.sequence,
            transaction_type=TransactionType(txn.transaction_type),
            amount=txn.amount,
            balance_before=txn.balance_before,
            balance_after=txn.balance_after,
            amount_cents=txn.amount_cents,
            usage_id=txn.usage_id,
            external_payment_ref=txn.external_payment_ref,
            admin_user_id=txn.admin_user_id,
            description=txn.description,
            created_at=txn.created_at,
        )

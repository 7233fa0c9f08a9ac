"""
Usage Meter Service - Records AI operations and bills them against the ledger.

NO DICTIONARIES - Usage facts arrive as UsageContext/OperationDescriptor/CostDescriptor.

Only trusted callers holding the shared billing secret may record usage. A
billed usage row and its debit commit together under the account lock.
"""

import secrets
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import TokenTransaction, TokenUsage, User
from token_ledger.exceptions import AuthorizationError, InvalidInputError, UserNotFoundError
from token_ledger.models.api import AIProvider, ChargeType, OperationType
from token_ledger.models.domain import (
    CostDescriptor,
    OperationDescriptor,
    UsageContext,
    UsageData,
    UsageReceipt,
)
from token_ledger.observability.logging import get_logger
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import trace_operation
from token_ledger.services.ledger import LedgerService
from token_ledger.services.payment_gateway import PaymentGatewayService

logger = get_logger(__name__)


class UsageMeterService:
    """
    Usage recording with optional auto-recharge follow-up.

    The gateway is optional; without one, threshold crossings are not acted on.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerService | None = None,
        gateway: PaymentGatewayService | None = None,
        billing_secret: str | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or LedgerService(session)
        self.gateway = gateway
        self.billing_secret = (
            billing_secret if billing_secret is not None else settings.billing_secret
        )

    async def record_usage(
        self,
        secret: str,
        context: UsageContext,
        operation: OperationDescriptor,
        cost: CostDescriptor,
    ) -> UsageReceipt:
        """
        Record one AI operation and debit its billable tokens if it succeeded.

        Raises:
            AuthorizationError: Secret mismatch (nothing is written)
            AccountNotFoundError: Billable usage for a user without an account
            UserNotFoundError: Unbilled usage for an unknown user
        """
        if not self._secret_matches(secret):
            metrics.usage_rejections_total.inc()
            logger.warning(
                "usage_recording_rejected",
                user_id=str(context.user_id),
                operation_type=operation.operation_type.value,
            )
            raise AuthorizationError("billing secret")

        billed = operation.success and cost.billable_tokens > 0

        with trace_operation(
            "usage.record",
            user_id=context.user_id,
            operation_type=operation.operation_type.value,
            billable_tokens=cost.billable_tokens,
        ):
            if billed:
                usage, txn = await self._record_billed(context, operation, cost)
            else:
                usage = await self._record_unbilled(context, operation, cost)
                txn = None

        metrics.record_usage(operation.operation_type.value, operation.success, billed)
        logger.info(
            "usage_recorded",
            usage_id=str(usage.id),
            user_id=str(context.user_id),
            operation_type=operation.operation_type.value,
            model=operation.model,
            success=operation.success,
            billable_tokens=cost.billable_tokens,
            billed=billed,
        )

        usage_id = usage.id
        if txn is None:
            return UsageReceipt(usage_id=usage_id, billed=False, new_balance=None)

        self.ledger.record_committed(txn)
        # The recharge may roll the session back and expire these instances
        balance_before = txn.balance_before
        balance_after = txn.balance_after
        await self._maybe_auto_recharge(context.user_id, balance_before, balance_after, usage_id)
        return UsageReceipt(usage_id=usage_id, billed=True, new_balance=balance_after)

    async def list_usage(
        self,
        user_id: UUID,
        limit: int = 50,
        operation_type: OperationType | None = None,
    ) -> list[UsageData]:
        """Newest-first usage history, optionally filtered by operation type."""
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")

        stmt = select(TokenUsage).where(TokenUsage.user_id == user_id)
        if operation_type is not None:
            stmt = stmt.where(TokenUsage.operation_type == operation_type.value)
        stmt = stmt.order_by(TokenUsage.created_at.desc()).limit(limit)

        result = await self.session.execute(stmt)
        return [self._usage_to_domain(usage) for usage in result.scalars().all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _secret_matches(self, secret: str) -> bool:
        if not self.billing_secret:
            return False
        return secrets.compare_digest(secret.encode("utf-8"), self.billing_secret.encode("utf-8"))

    async def _record_billed(
        self,
        context: UsageContext,
        operation: OperationDescriptor,
        cost: CostDescriptor,
    ) -> tuple[TokenUsage, TokenTransaction]:
        async with self.ledger.locked_account(context.user_id) as account:
            usage = self._build_usage(context, operation, cost)
            self.session.add(usage)
            await self.session.flush()

            txn = await self.ledger.apply_debit(
                account, cost.billable_tokens, cost.actual_tokens, usage.id
            )
            await self.session.commit()
        return usage, txn

    async def _record_unbilled(
        self,
        context: UsageContext,
        operation: OperationDescriptor,
        cost: CostDescriptor,
    ) -> TokenUsage:
        user = await self.session.get(User, context.user_id)
        if user is None:
            raise UserNotFoundError(context.user_id)

        usage = self._build_usage(context, operation, cost)
        self.session.add(usage)
        await self.session.commit()
        return usage

    async def _maybe_auto_recharge(
        self, user_id: UUID, balance_before: int, balance_after: int, usage_id: UUID
    ) -> None:
        if self.gateway is None:
            return
        try:
            result = await self.gateway.maybe_auto_recharge(
                user_id, balance_before, balance_after, str(usage_id)
            )
        except Exception:
            # The debit is committed; recharge problems must not fail the usage call
            logger.error("auto_recharge_check_failed", user_id=str(user_id), exc_info=True)
            return

        if result is None:
            return
        logger.info(
            "auto_recharge_attempted",
            user_id=str(user_id),
            usage_id=str(usage_id),
            success=result.success,
            reason=result.reason,
            payment_ref=result.payment_ref,
            tokens_added=result.tokens_added,
        )

    def _build_usage(
        self,
        context: UsageContext,
        operation: OperationDescriptor,
        cost: CostDescriptor,
    ) -> TokenUsage:
        return TokenUsage(
            user_id=context.user_id,
            workspace_id=context.workspace_id,
            project_id=context.project_id,
            content_piece_id=context.content_piece_id,
            operation_type=operation.operation_type.value,
            provider=operation.provider.value,
            model=operation.model,
            input_tokens=operation.input_tokens,
            output_tokens=operation.output_tokens,
            total_tokens=operation.total_tokens,
            image_count=operation.image_count,
            image_size=operation.image_size,
            billable_tokens=cost.billable_tokens,
            actual_tokens=cost.actual_tokens,
            charge_type=cost.charge_type.value,
            multiplier=cost.multiplier,
            fixed_cost=cost.fixed_cost,
            request_metadata=operation.request_metadata,
            success=operation.success,
            error_message=operation.error_message,
        )

    def _usage_to_domain(self, usage: TokenUsage) -> UsageData:
        return UsageData(
            usage_id=usage.id,
            user_id=usage.user_id,
            workspace_id=usage.workspace_id,
            project_id=usage.project_id,
            content_piece_id=usage.content_piece_id,
            operation_type=OperationType(usage.operation_type),
            provider=AIProvider(usage.provider),
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            image_count=usage.image_count,
            image_size=usage.image_size,
            billable_tokens=usage.billable_tokens,
            actual_tokens=usage.actual_tokens,
            charge_type=ChargeType(usage.charge_type),
            multiplier=usage.multiplier,
            success=usage.success,
            error_message=usage.error_message,
            created_at=usage.created_at,
        )

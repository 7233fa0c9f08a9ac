"""
Payment Gateway Service - Checkout, webhook reconciliation and auto-recharge.

Network calls to the provider always happen outside the ledger's account
lock; the ledger is only written after the provider confirms success.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import User
from token_ledger.exceptions import (
    AccountNotFoundError,
    BillingError,
    IdempotencyConflictError,
    PaymentProviderError,
    UserNotFoundError,
)
from token_ledger.models.api import TransactionType
from token_ledger.models.domain import AutoRechargeResult, CreditIntent
from token_ledger.observability.logging import get_logger
from token_ledger.observability.metrics import metrics
from token_ledger.services.ledger import LedgerService
from token_ledger.services.payment_provider import (
    CHARGE_REFUNDED,
    CHECKOUT_COMPLETED,
    PAYMENT_INTENT_SUCCEEDED,
    CheckoutRequest,
    CheckoutSession,
    CustomerRequest,
    OffSessionChargeRequest,
    PaymentProvider,
    PurchaseMetadata,
    WebhookEvent,
)
from token_ledger.services.pricing import PricingService

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    """How a verified webhook event was handled."""

    event_id: str
    event_type: str
    result: str  # credited, duplicate, acknowledged, ignored


def crossed_threshold(threshold: int | None, balance_before: int, balance_after: int) -> bool:
    """True when a debit moved the balance from above the threshold to at or below it."""
    return threshold is not None and balance_before > threshold >= balance_after


class PaymentGatewayService:
    """Translates provider interactions into ledger credits."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        ledger: LedgerService | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.ledger = ledger or LedgerService(session)
        self.pricing = PricingService(session)

    # ========================================================================
    # Checkout
    # ========================================================================

    async def create_checkout(
        self, user_id: UUID, package_id: UUID, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        """
        Start a hosted checkout for a catalog package.

        Raises:
            UserNotFoundError / AccountNotFoundError / PackageNotFoundError
            PaymentProviderError: Provider failed or returned no redirect URL
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        account = await self.ledger.get_account(user_id)
        package = await self.pricing.get_package(package_id)

        customer_id = account.external_customer_id
        if not customer_id:
            customer_id = await self.provider.create_customer(
                CustomerRequest(
                    user_id=user_id,
                    email=user.email,
                    name=user.name,
                    workspace_id=account.workspace_id,
                )
            )
            await self.ledger.set_payment_details(user_id, external_customer_id=customer_id)

        try:
            checkout = await self.provider.create_checkout_session(
                CheckoutRequest(
                    customer_id=customer_id,
                    price_id=package.stripe_price_id,
                    success_url=success_url,
                    cancel_url=cancel_url,
                    metadata=PurchaseMetadata(
                        user_id=user_id,
                        token_amount=package.token_amount,
                        workspace_id=account.workspace_id,
                        package_id=str(package.package_id),
                        price_cents=package.price_cents,
                    ),
                )
            )
        except PaymentProviderError:
            metrics.checkout_sessions_total.labels(success="False").inc()
            raise

        if not checkout.url:
            metrics.checkout_sessions_total.labels(success="False").inc()
            raise PaymentProviderError("Checkout session was created without a redirect URL")

        metrics.checkout_sessions_total.labels(success="True").inc()
        logger.info(
            "checkout_session_started",
            user_id=str(user_id),
            package_id=str(package_id),
            session_id=checkout.session_id,
        )
        return checkout

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_webhook(self, payload: bytes, signature: str) -> WebhookResult:
        """
        Verify and apply one provider event.

        Redeliveries of an already-applied event are acknowledged without a
        second ledger write.

        Raises:
            WebhookVerificationError: Signature invalid (nothing is mutated)
            BillingError: Ledger write failed; the provider should retry
        """
        event = await self.provider.verify_webhook(payload, signature)

        if event.event_type == CHECKOUT_COMPLETED:
            result = await self._handle_checkout_completed(event)
        elif event.event_type == CHARGE_REFUNDED:
            result = await self._handle_charge_refunded(event)
        elif event.event_type == PAYMENT_INTENT_SUCCEEDED:
            result = await self._handle_payment_succeeded(event)
        else:
            logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.event_type)
            result = "ignored"

        metrics.webhook_events_total.labels(event_type=event.event_type, result=result).inc()
        return WebhookResult(event_id=event.event_id, event_type=event.event_type, result=result)

    async def _handle_checkout_completed(self, event: WebhookEvent) -> str:
        if event.payment_status != "paid":
            logger.info(
                "checkout_not_paid",
                event_id=event.event_id,
                payment_status=event.payment_status,
            )
            return "ignored"
        if event.metadata is None:
            logger.warning("checkout_missing_metadata", event_id=event.event_id)
            return "ignored"

        tokens = event.metadata.token_amount
        return await self._apply_credit(
            event,
            CreditIntent(
                user_id=event.metadata.user_id,
                amount=tokens,
                transaction_type=TransactionType.PURCHASE,
                description=f"Purchase: {tokens} tokens via checkout",
                amount_cents=event.metadata.price_cents,
                external_payment_ref=event.payment_intent_id,
                idempotency_key=f"checkout:{event.object_id}",
            ),
        )

    async def _handle_charge_refunded(self, event: WebhookEvent) -> str:
        if event.metadata is None:
            logger.warning("refund_missing_metadata", event_id=event.event_id)
            return "ignored"

        tokens = event.metadata.token_amount
        return await self._apply_credit(
            event,
            CreditIntent(
                user_id=event.metadata.user_id,
                amount=-tokens,
                transaction_type=TransactionType.REFUND,
                description=f"Refund: {tokens} tokens refunded",
                external_payment_ref=event.payment_intent_id,
                idempotency_key=f"refund:{event.object_id}",
            ),
        )

    async def _handle_payment_succeeded(self, event: WebhookEvent) -> str:
        """Keep the card from a checkout payment as the auto-recharge method."""
        if event.metadata is None:
            return "acknowledged"
        user_id = event.metadata.user_id
        if event.metadata.auto_recharge:
            logger.info(
                "auto_recharge_payment_confirmed",
                payment_intent_id=event.payment_intent_id,
                user_id=str(user_id),
            )
            return "acknowledged"
        if event.payment_method_id is None:
            return "acknowledged"

        try:
            await self.ledger.set_payment_details(
                user_id, default_payment_method_id=event.payment_method_id
            )
        except AccountNotFoundError:
            logger.warning(
                "payment_method_for_missing_account",
                event_id=event.event_id,
                user_id=str(user_id),
            )
            return "acknowledged"

        logger.info(
            "default_payment_method_saved",
            event_id=event.event_id,
            user_id=str(user_id),
            payment_method_id=event.payment_method_id,
        )
        return "acknowledged"

    async def _apply_credit(self, event: WebhookEvent, intent: CreditIntent) -> str:
        try:
            new_balance = await self.ledger.credit(intent)
        except IdempotencyConflictError:
            logger.info(
                "webhook_duplicate_delivery",
                event_id=event.event_id,
                idempotency_key=intent.idempotency_key,
            )
            return "duplicate"

        logger.info(
            "webhook_credit_applied",
            event_id=event.event_id,
            event_type=event.event_type,
            user_id=str(intent.user_id),
            amount=intent.amount,
            new_balance=new_balance,
        )
        return "credited"

    # ========================================================================
    # Auto-recharge
    # ========================================================================

    async def maybe_auto_recharge(
        self,
        user_id: UUID,
        balance_before: int,
        balance_after: int,
        trigger_reference: str,
    ) -> AutoRechargeResult | None:
        """Run auto-recharge if enabled and this debit crossed the threshold."""
        account = await self.ledger.get_account(user_id)
        if not account.auto_recharge_enabled:
            return None
        if not crossed_threshold(account.auto_recharge_threshold, balance_before, balance_after):
            return None
        return await self.trigger_auto_recharge(user_id, trigger_reference)

    async def trigger_auto_recharge(
        self, user_id: UUID, trigger_reference: str
    ) -> AutoRechargeResult:
        """
        Buy the configured package off-session and credit it.

        Never raises: every failure disables auto-recharge and is returned
        as AutoRechargeResult(success=False, reason=...).
        """
        try:
            return await self._run_auto_recharge(user_id, trigger_reference)
        except Exception as exc:
            logger.error(
                "auto_recharge_unexpected_error",
                user_id=str(user_id),
                error=str(exc),
                exc_info=True,
            )
            return await self._fail_auto_recharge(
                user_id,
                f"Payment failed: {exc}. Auto-recharge disabled.",
                "error",
                rollback=True,
            )

    async def _run_auto_recharge(self, user_id: UUID, trigger_reference: str) -> AutoRechargeResult:
        try:
            account = await self.ledger.get_account(user_id)
        except AccountNotFoundError:
            return AutoRechargeResult(success=False, reason="Token account not found")

        if not account.auto_recharge_enabled:
            return AutoRechargeResult(success=False, reason="Auto-recharge is not enabled")

        missing = [
            name
            for name, value in (
                ("threshold", account.auto_recharge_threshold),
                ("amount", account.auto_recharge_amount),
                ("customer", account.external_customer_id),
                ("payment method", account.default_payment_method_id),
            )
            if value is None
        ]
        if missing:
            return await self._fail_auto_recharge(
                user_id,
                f"Auto-recharge configuration incomplete: missing {', '.join(missing)}",
                "misconfigured",
            )

        # Exact match only
        package = await self.pricing.find_by_token_amount(account.auto_recharge_amount)
        if package is None:
            return await self._fail_auto_recharge(
                user_id,
                f"No active package provides exactly {account.auto_recharge_amount} tokens",
                "misconfigured",
            )

        try:
            charge = await self.provider.create_off_session_charge(
                OffSessionChargeRequest(
                    customer_id=account.external_customer_id,
                    payment_method_id=account.default_payment_method_id,
                    amount_cents=package.price_cents,
                    currency=account.currency or settings.default_currency,
                    metadata=PurchaseMetadata(
                        user_id=user_id,
                        token_amount=package.token_amount,
                        workspace_id=account.workspace_id,
                        package_id=str(package.package_id),
                        price_cents=package.price_cents,
                        auto_recharge=True,
                    ),
                    idempotency_key=f"auto-recharge:{trigger_reference}",
                )
            )
        except Exception as exc:
            return await self._fail_auto_recharge(
                user_id, f"Payment failed: {exc}. Auto-recharge disabled.", "charge_error"
            )

        if not charge.succeeded:
            return await self._fail_auto_recharge(
                user_id,
                f"Payment failed with status: {charge.status}. Auto-recharge disabled.",
                "charge_declined",
            )

        try:
            await self.ledger.credit(
                CreditIntent(
                    user_id=user_id,
                    amount=package.token_amount,
                    transaction_type=TransactionType.AUTO_RECHARGE,
                    description=f"Auto-recharge: {package.package_name} package",
                    amount_cents=package.price_cents,
                    external_payment_ref=charge.payment_id,
                    idempotency_key=f"auto-recharge:{charge.payment_id}",
                )
            )
        except IdempotencyConflictError:
            logger.info("auto_recharge_already_credited", payment_intent_id=charge.payment_id)
            return AutoRechargeResult(success=True, payment_ref=charge.payment_id)
        except BillingError as exc:
            # Charged but not credited: needs manual reconciliation
            logger.error(
                "auto_recharge_credit_failed",
                user_id=str(user_id),
                payment_intent_id=charge.payment_id,
                token_amount=package.token_amount,
                error=str(exc),
            )
            return await self._fail_auto_recharge(
                user_id,
                f"Payment {charge.payment_id} succeeded but crediting failed: {exc}. "
                "Auto-recharge disabled.",
                "credit_error",
            )

        metrics.auto_recharges_total.labels(outcome="success").inc()
        logger.info(
            "auto_recharge_succeeded",
            user_id=str(user_id),
            payment_intent_id=charge.payment_id,
            tokens_added=package.token_amount,
        )
        return AutoRechargeResult(
            success=True, payment_ref=charge.payment_id, tokens_added=package.token_amount
        )

    async def _fail_auto_recharge(
        self, user_id: UUID, reason: str, outcome: str, rollback: bool = False
    ) -> AutoRechargeResult:
        metrics.auto_recharges_total.labels(outcome=outcome).inc()
        try:
            if rollback:
                # An unexpected error may have left the transaction unusable
                await self.session.rollback()
            await self.ledger.disable_auto_recharge(user_id, reason)
        except Exception:
            logger.error("auto_recharge_disable_failed", user_id=str(user_id), exc_info=True)
        return AutoRechargeResult(success=False, reason=reason)

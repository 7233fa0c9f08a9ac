"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import stripe

from token_ledger.exceptions import PaymentProviderError, WebhookVerificationError
from token_ledger.observability.logging import get_logger
from token_ledger.services.payment_provider import (
    ChargeResult,
    CheckoutRequest,
    CheckoutSession,
    CustomerRequest,
    OffSessionChargeRequest,
    PurchaseMetadata,
    WebhookEvent,
)

logger = get_logger(__name__)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe. Requests go through
    the async HTTPX transport, time out after `timeout_seconds` and are
    never retried by the client.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 10.0) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Per-request network timeout
        """
        self.webhook_secret = webhook_secret
        self.client = stripe.StripeClient(
            api_key,
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    async def create_customer(self, request: CustomerRequest) -> str:
        """
        Create a Stripe Customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata = {"userId": str(request.user_id)}
        if request.workspace_id:
            metadata["workspaceId"] = request.workspace_id
        params: dict[str, object] = {"metadata": metadata}
        if request.email:
            params["email"] = request.email
        if request.name:
            params["name"] = request.name

        try:
            customer = await self.client.v1.customers.create_async(
                params=params  # type: ignore[arg-type]
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_create_failed",
                user_id=str(request.user_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe customer creation failed: {exc}") from exc

        logger.info("stripe_customer_created", customer_id=customer.id, user_id=str(request.user_id))
        customer_id: str = customer.id
        return customer_id

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Create a one-time payment Checkout Session.

        Metadata is attached to both the session and its PaymentIntent so that
        checkout and charge webhooks carry the purchase facts. The card is
        saved on the customer for later off-session charges.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata = request.metadata.to_provider()
        try:
            session = await self.client.v1.checkout.sessions.create_async(
                params={
                    "mode": "payment",
                    "customer": request.customer_id,
                    "line_items": [{"price": request.price_id, "quantity": 1}],
                    "success_url": request.success_url,
                    "cancel_url": request.cancel_url,
                    "metadata": metadata,
                    "payment_intent_data": {
                        "metadata": metadata,
                        "setup_future_usage": "off_session",
                    },
                }
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_create_failed",
                customer_id=request.customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

        logger.info(
            "stripe_checkout_session_created",
            session_id=session.id,
            customer_id=request.customer_id,
            token_amount=request.metadata.token_amount,
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    async def create_off_session_charge(self, request: OffSessionChargeRequest) -> ChargeResult:
        """
        Create and confirm a PaymentIntent against a saved payment method.

        Raises:
            PaymentProviderError: If Stripe API call fails (card declines included)
        """
        try:
            payment_intent = await self.client.v1.payment_intents.create_async(
                params={
                    "amount": request.amount_cents,
                    "currency": request.currency.lower(),
                    "customer": request.customer_id,
                    "payment_method": request.payment_method_id,
                    "off_session": True,
                    "confirm": True,
                    "metadata": request.metadata.to_provider(),
                },
                options={"idempotency_key": request.idempotency_key},
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_off_session_charge_failed",
                customer_id=request.customer_id,
                amount_cents=request.amount_cents,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe off-session charge failed: {exc}") from exc

        logger.info(
            "stripe_off_session_charge_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return ChargeResult(payment_id=payment_intent.id, status=payment_intent.status)

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify the Stripe-Signature header, then parse the event.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        try:
            data_object = event.data.object.to_dict()
            payment_intent = data_object.get("payment_intent")
            payment_method = None
            if data_object.get("object") == "payment_intent":
                payment_intent = data_object.get("id")
                payment_method = data_object.get("payment_method")
            webhook_event = WebhookEvent(
                event_id=event.id,
                event_type=event.type,
                object_id=data_object.get("id"),
                payment_status=data_object.get("payment_status"),
                payment_intent_id=payment_intent if isinstance(payment_intent, str) else None,
                metadata=PurchaseMetadata.from_provider(data_object.get("metadata")),
                payment_method_id=payment_method if isinstance(payment_method, str) else None,
            )
        except (ValueError, KeyError, AttributeError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
        )
        return webhook_event

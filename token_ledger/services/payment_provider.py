"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models. Provider metadata
maps are converted at the provider boundary only.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"


@dataclass(frozen=True)
class PurchaseMetadata:
    """
    Purchase facts embedded in provider objects.

    Lets webhook processing credit the ledger without re-reading the catalog.
    """

    user_id: UUID
    token_amount: int
    workspace_id: str | None = None
    package_id: str | None = None
    price_cents: int | None = None
    auto_recharge: bool = False

    def to_provider(self) -> dict[str, str]:
        """Flatten to the string map payment providers accept."""
        metadata = {
            "userId": str(self.user_id),
            "tokenAmount": str(self.token_amount),
        }
        if self.workspace_id:
            metadata["workspaceId"] = self.workspace_id
        if self.package_id:
            metadata["packageId"] = self.package_id
        if self.price_cents is not None:
            metadata["priceCents"] = str(self.price_cents)
        if self.auto_recharge:
            metadata["autoRecharge"] = "true"
        return metadata

    @classmethod
    def from_provider(cls, metadata: Mapping[str, str] | None) -> "PurchaseMetadata | None":
        """Parse provider metadata; None when user or token amount is unusable."""
        if not metadata:
            return None
        try:
            user_id = UUID(metadata.get("userId", ""))
            token_amount = int(metadata.get("tokenAmount") or "0")
            price_raw = metadata.get("priceCents")
            price_cents = int(price_raw) if price_raw else None
        except ValueError:
            return None
        if token_amount <= 0:
            return None
        return cls(
            user_id=user_id,
            token_amount=token_amount,
            workspace_id=metadata.get("workspaceId") or None,
            package_id=metadata.get("packageId") or None,
            price_cents=price_cents,
            auto_recharge=metadata.get("autoRecharge") == "true",
        )


@dataclass(frozen=True)
class CustomerRequest:
    """Details for creating a provider-side customer."""

    user_id: UUID
    email: str | None
    name: str | None
    workspace_id: str | None


@dataclass(frozen=True)
class CheckoutRequest:
    """Hosted checkout for one catalog package."""

    customer_id: str
    price_id: str
    success_url: str
    cancel_url: str
    metadata: PurchaseMetadata


@dataclass(frozen=True)
class CheckoutSession:
    """Created checkout session."""

    session_id: str
    url: str | None


@dataclass(frozen=True)
class OffSessionChargeRequest:
    """Charge a stored payment method without the cardholder present."""

    customer_id: str
    payment_method_id: str
    amount_cents: int
    currency: str
    metadata: PurchaseMetadata
    idempotency_key: str


@dataclass(frozen=True)
class ChargeResult:
    """Outcome reported by the provider for an off-session charge."""

    payment_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event, produced only after signature verification.
    """

    event_id: str
    event_type: str
    object_id: str | None
    payment_status: str | None
    payment_intent_id: str | None
    metadata: PurchaseMetadata | None
    payment_method_id: str | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Implementations must bound every network call with a timeout and raise
    PaymentProviderError on any provider-side failure.
    """

    async def create_customer(self, request: CustomerRequest) -> str:
        """Create a customer and return its provider id."""
        ...

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a hosted checkout session."""
        ...

    async def create_off_session_charge(self, request: OffSessionChargeRequest) -> ChargeResult:
        """Create and confirm an off-session payment."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook payload.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

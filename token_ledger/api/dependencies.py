"""
FastAPI Dependencies - Authentication, payment provider wiring, error mapping.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import User
from token_ledger.db.session import get_write_db
from token_ledger.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BillingError,
    IdempotencyConflictError,
    InvalidInputError,
    InvariantViolationError,
    PaymentProviderError,
    ResourceNotFoundError,
    WebhookVerificationError,
)
from token_ledger.observability.logging import get_logger
from token_ledger.observability.metrics import metrics
from token_ledger.services.identity import IdentityService
from token_ledger.services.payment_provider import PaymentProvider
from token_ledger.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def get_identity_service() -> IdentityService:
    return IdentityService()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
    identity: IdentityService = Depends(get_identity_service),
) -> User:
    """
    Resolve the bearer token to the caller's User record.

    The token only names the subject; the record (and its roles) comes from
    the database and is provisioned with the `user` role on first sight.

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = identity.verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    email = payload.get("email")
    name = payload.get("name")
    try:
        return await identity.get_or_create_user(
            db,
            subject=str(payload["sub"]),
            email=email if isinstance(email, str) else None,
            name=name if isinstance(name, str) else None,
        )
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def _build_stripe_provider() -> StripeProvider:
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )


def get_payment_provider() -> PaymentProvider:
    """Provider for checkout; 503 when Stripe isn't configured."""
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return _build_stripe_provider()


def get_optional_payment_provider() -> PaymentProvider | None:
    """Provider for auto-recharge follow-ups; None disables them."""
    if not settings.stripe_api_key:
        return None
    return _build_stripe_provider()


def get_webhook_provider() -> PaymentProvider:
    """Provider for webhook verification; 500 when the signing secret is missing."""
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )
    return _build_stripe_provider()


def http_error_for(exc: BillingError, operation: str) -> HTTPException:
    """Map a billing exception to the HTTP error the caller sees."""
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, AuthorizationError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires {exc.required_permission}",
        )
    if isinstance(exc, ResourceNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{exc.resource_type} not found",
        )
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, WebhookVerificationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, IdempotencyConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Already applied",
            headers={"X-Existing-Transaction-ID": str(exc.existing_id)},
        )
    if isinstance(exc, PaymentProviderError):
        metrics.record_error("payment_provider", operation)
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider request failed",
        )
    if isinstance(exc, InvariantViolationError):
        metrics.record_error("invariant_violation", operation)
        logger.error("ledger_invariant_violation_surfaced", operation=operation, error=str(exc))
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        )

    metrics.record_error(type(exc).__name__, operation)
    logger.error("billing_operation_failed", operation=operation, error=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Billing operation failed",
    )

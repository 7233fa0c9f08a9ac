"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class AuthenticationError(BillingError):
    """Raised when the caller cannot be identified (missing/invalid token, unknown user)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(BillingError):
    """Raised when the caller lacks a required role or presented a wrong secret."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")


class ResourceNotFoundError(BillingError):
    """Raised when a referenced resource does not exist."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class AccountNotFoundError(ResourceNotFoundError):
    """Raised when a user has no token account."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Token account", str(user_id))


class UserNotFoundError(ResourceNotFoundError):
    """Raised when a user record doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("User", str(user_id))


class PackageNotFoundError(ResourceNotFoundError):
    """Raised when a pricing package doesn't exist or is inactive."""

    def __init__(self, package_id: UUID | str) -> None:
        self.package_id = package_id
        super().__init__("Pricing package", str(package_id))


class InvalidInputError(BillingError):
    """Raised when an operation receives an argument outside its domain."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid input: {message}")


class InvariantViolationError(BillingError):
    """
    Raised when a ledger invariant does not hold after a write.

    Fatal: never retried. Indicates broken serialization or a corrupted row.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Ledger invariant violated: {message}")


class IdempotencyConflictError(BillingError):
    """Raised when an idempotency key was already applied to the account."""

    def __init__(self, idempotency_key: str, existing_id: UUID) -> None:
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: {idempotency_key} already applied as {existing_id}")


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")

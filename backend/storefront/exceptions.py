"""
Storefront Exception Hierarchy

Every error that can reach an HTTP caller carries a stable error code,
a human-readable message and an HTTP status. Codes are namespaced by the
component that raises them (payment:, auth:, download:, provider:, ...).
"""
from typing import Optional, Dict, Any


class StorefrontError(Exception):
    """
    Base exception for all storefront errors.

    Subclasses set `status_code`; the app-level exception handler renders
    `to_dict()` with that status.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Validation (rejected synchronously, never persisted)
# ============================================================================

class ValidationError(StorefrontError):
    """Bad checkout input."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:invalid_request", message, details)


class InvalidCartError(ValidationError):
    """
    Cart is empty or malformed.

    Examples:
    - No items
    - Item without product_id or with a non-positive amount
    - Product no longer in the catalog
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        StorefrontError.__init__(self, "payment:invalid_cart", message, details)


class PriceMismatchError(ValidationError):
    """Submitted amount differs from catalog price x quantity."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        StorefrontError.__init__(self, "payment:price_mismatch", message, details)


class InvalidPaymentDetailsError(ValidationError):
    """Channel details (phone number, payer email) unusable for the provider."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        StorefrontError.__init__(self, "payment:invalid_details", message, details)


# ============================================================================
# Identity and entitlement
# ============================================================================

class AuthError(StorefrontError):
    """Missing or invalid identity."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:unauthenticated", message, details)


class NotEntitledError(StorefrontError):
    """Identity holds neither a purchase nor the admin capability."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("download:not_entitled", message, details)


class ProductNotFoundError(StorefrontError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("catalog:not_found", message, details)


class OrderNotFoundError(StorefrontError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("order:not_found", message, details)


# ============================================================================
# Provider communication
# ============================================================================

class ProviderConfigError(StorefrontError):
    """
    Adapter is missing credentials.

    Checkout turns this into a soft `pending_integration` response rather
    than a hard failure.
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("provider:unconfigured", message, details)


class ProviderCallError(StorefrontError):
    """
    Network error, timeout or rejection from an external provider.

    The message carries the provider's own explanation where it gave one.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("provider:rejected", message, details)


class StorageError(StorefrontError):
    """Signed URL could not be minted."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("storage:unavailable", message, details)


# ============================================================================
# Reconciliation (swallowed at the webhook boundary)
# ============================================================================

class ReconciliationError(StorefrontError):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciliation:failed", message, details)


class MalformedPayloadError(ReconciliationError):
    """Callback payload lacks the fields needed to correlate it to an order."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        StorefrontError.__init__(self, "reconciliation:malformed_payload", message, details)


class LedgerConflictError(Exception):
    """
    A ledger write lost a race.

    Raised when a uniqueness constraint rejects a purchase insert or the
    order is no longer pending at commit time. Callers treat it as
    "already processed".
    """

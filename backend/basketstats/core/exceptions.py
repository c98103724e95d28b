"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data leaks in error messages (OWASP A04)

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {
            "password",
            "token",
            "secret",
            "key",
            "api_key",
            "api_secret",
            "api_key_sha256",
            "api_secret_sha256",
            "hmac_compute",
        }
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication & Authorization Exceptions (OWASP A07)
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when authentication fails.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(AppException):
    """
    Raised when the caller lacks permissions for an action.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


# ============================================================================
# Validation & Resource Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class BusinessRuleViolation(AppException):
    """
    Raised when an operation violates a business rule.

    WHY: Distinguishes "your request is well formed but not allowed right
    now" from plain validation failures.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when a state machine transition is not allowed.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Invalid state transition"


# ============================================================================
# External Service & Infrastructure Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Raised when a third-party service call fails.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class DatabaseError(AppException):
    """
    Raised when a database operation fails.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Database error"


class DatabaseConnectionError(DatabaseError):
    """
    Raised when the database is unreachable or the transaction was aborted.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Database connection failed"


# ============================================================================
# Payment Webhook Exceptions
# ============================================================================


class AuthenticationFailed(AuthenticationError):
    """
    Raised when a payment notification fails credential or HMAC checks.

    WHY: An unauthenticated notification must never reach the state machine.
    The error response lets the provider apply its own retry policy.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Payment notification authentication failed"


class MalformedPayload(ValidationError):
    """
    Raised when an authentic notification cannot be parsed.

    WHY: Retrying an unparseable payload never helps. The webhook handler
    acknowledges it without effect unless WEBHOOK_ACK_MALFORMED is off.

    HTTP Status: 400 Bad Request
    """

    default_message = "Malformed payment notification"


class DuplicateTransaction(AppException):
    """
    Signals that a transaction token was already processed.

    WHY: Not an error for the provider (the response is still 200). Raised
    inside the processing unit to abort the transition and reported as the
    duplicate outcome.

    HTTP Status: 200 OK
    """

    status_code = 200
    default_message = "Transaction already processed"


class PaymentProviderError(ExternalServiceError):
    """
    Raised when the PayTech API refuses or fails a payment request.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment provider error"


# ============================================================================
# Subscription Exceptions
# ============================================================================


class PlanNotFound(ResourceNotFoundError):
    """
    Raised when a plan type is unknown or the plan is inactive.

    WHY: From a webhook this means catalog and payload disagree, which needs
    operator attention. The transaction is rolled back (no ledger row) so the
    provider retry succeeds once the catalog is fixed.

    HTTP Status: 404 Not Found
    """

    default_message = "Subscription plan not found"


class SubscriptionNotFound(ResourceNotFoundError):
    """
    Raised when a subscription id doesn't exist.

    HTTP Status: 404 Not Found
    """

    default_message = "Subscription not found"


class InvalidSubscriptionTransition(InvalidStateTransitionError):
    """
    Raised when a command is not valid from the subscription's current status.

    Example: restoring a CANCELLED subscription.

    HTTP Status: 409 Conflict
    """

    default_message = "Subscription cannot make this transition"


class ConflictingActiveSubscription(BusinessRuleViolation):
    """
    Raised when a transition would leave a user with two ACTIVE rows.

    WHY: The at-most-one-ACTIVE rule fails closed. A restore that races a
    payment, or an activation that keeps colliding after its retry, is
    rejected and surfaced rather than silently merged.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "User already has an active subscription"


class InvariantViolationDetected(BusinessRuleViolation):
    """
    Raised by reconciliation when users with several ACTIVE rows exist.

    WHY: Request paths prevent violations. Only the reconciliation audit
    reports them, for example from a health check or the CLI.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Subscription invariant violation detected"


class TransientStoreError(DatabaseConnectionError):
    """
    Raised when the store fails for reasons unrelated to the request.

    WHY: No mutation is guaranteed. The provider retries and the idempotency
    ledger makes the retry converge.

    HTTP Status: 503 Service Unavailable
    """

    default_message = "Subscription store temporarily unavailable"


class OptimisticLockConflict(BusinessRuleViolation):
    """
    Raised when a compare-and-swap update matched no row.

    WHY: The row changed status between our read and our write. The
    unit-of-work runner retries once from a fresh read and converts a
    second occurrence into ConflictingActiveSubscription.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Subscription was modified concurrently"


class NotificationDeliveryError(ExternalServiceError):
    """
    Raised when the notification webhook rejects or times out.

    WHY: Only ever raised by SubscriptionNotifier.send(); dispatch from
    request paths goes through send_safe(), which logs and swallows it.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Notification delivery failed"

# Overview: Error taxonomy shared by services and routes.

"""
Trust Core error taxonomy.

Every failure a caller can observe is a TrustCoreError subclass carrying:
- code: stable machine-readable string (e.g. "INSUFFICIENT_STOCK")
- details: JSON-safe dict merged into the error response
- http_status: the status the HTTP binding maps the category to

Categories mirror request outcomes:
- ValidationError      400  malformed/missing input, business precondition
- AuthenticationError  401  bad/expired/revoked token or credentials
- AuthorizationError   403  insufficient role, manager approval needed
- ConflictError        409  stock race lost, duplicate data
- IntegrityError       422  tamper or decryption failure
- RateLimitError       429  too many attempts
- InternalError        500  unexpected
"""

from __future__ import annotations


class TrustCoreError(Exception):
    """Base class for typed Trust Core failures."""
    http_status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(TrustCoreError):
    http_status = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(TrustCoreError):
    http_status = 401
    default_code = "AUTHENTICATION_FAILED"


class AuthorizationError(TrustCoreError):
    http_status = 403
    default_code = "FORBIDDEN"


class ConflictError(TrustCoreError):
    http_status = 409
    default_code = "CONFLICT"


class IntegrityError(TrustCoreError):
    http_status = 422
    default_code = "INTEGRITY_ERROR"


class RateLimitError(TrustCoreError):
    http_status = 429
    default_code = "RATE_LIMIT_EXCEEDED"


class InternalError(TrustCoreError):
    http_status = 500
    default_code = "INTERNAL_ERROR"


# =============================================================================
# CRYPTO
# =============================================================================

class EncryptionError(InternalError):
    default_code = "ENCRYPTION_ERROR"


class DecryptionError(IntegrityError):
    default_code = "DECRYPTION_ERROR"


# =============================================================================
# CREDENTIALS & TOKENS
# =============================================================================

class InvalidCredentials(AuthenticationError):
    default_code = "INVALID_CREDENTIALS"


class AccountDisabled(AuthenticationError):
    default_code = "ACCOUNT_DISABLED"


class AccountLocked(RateLimitError):
    default_code = "ACCOUNT_LOCKED"


class PasswordValidationError(ValidationError):
    default_code = "WEAK_PASSWORD"


class TokenRevoked(AuthenticationError):
    default_code = "TOKEN_REVOKED"


class TokenInvalid(AuthenticationError):
    default_code = "TOKEN_INVALID"


class TokenExpired(AuthenticationError):
    default_code = "TOKEN_EXPIRED"


class DeviceMismatch(AuthenticationError):
    default_code = "DEVICE_MISMATCH"


class InvalidTokenType(AuthenticationError):
    default_code = "INVALID_TOKEN_TYPE"


class RefreshTokenExpired(AuthenticationError):
    default_code = "REFRESH_TOKEN_EXPIRED"


class RefreshTokenRevoked(AuthenticationError):
    default_code = "REFRESH_TOKEN_REVOKED"


class RefreshTokenInvalid(AuthenticationError):
    default_code = "REFRESH_TOKEN_INVALID"


class CsrfTokenMissing(AuthorizationError):
    default_code = "CSRF_TOKEN_MISSING"


class CsrfTokenInvalid(AuthorizationError):
    default_code = "CSRF_TOKEN_INVALID"


class InsufficientRole(AuthorizationError):
    default_code = "INSUFFICIENT_ROLE"


# =============================================================================
# CHECKOUT
# =============================================================================

class ProductNotFound(ValidationError):
    default_code = "PRODUCT_NOT_FOUND"


class InsufficientStock(ConflictError):
    default_code = "INSUFFICIENT_STOCK"


class AgeVerificationRequired(ValidationError):
    default_code = "AGE_VERIFICATION_REQUIRED"


class InvalidCustomer(ValidationError):
    default_code = "INVALID_CUSTOMER"


class InsufficientCash(ValidationError):
    default_code = "INSUFFICIENT_CASH"


class AdditionalVerificationRequired(AuthorizationError):
    default_code = "ADDITIONAL_VERIFICATION_REQUIRED"


class TransactionNotFound(ValidationError):
    http_status = 404
    default_code = "TRANSACTION_NOT_FOUND"


class CheckoutConflict(ConflictError):
    default_code = "CHECKOUT_CONFLICT"


class CheckoutTimeout(InternalError):
    http_status = 503
    default_code = "CHECKOUT_TIMEOUT"

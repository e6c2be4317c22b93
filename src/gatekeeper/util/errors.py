"""
Structured error types for the API protection layer.

Provides a small exception hierarchy with severity and category metadata,
typed crypto failures, client-facing rejections and operational errors that
are logged but never surfaced to the end client.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels for categorization and response."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ErrorCategory(str, Enum):
    """Error categories for systematic handling."""
    VALIDATION = "validation"
    SECURITY = "security"
    CRYPTO = "crypto"
    REJECTION = "rejection"
    CONFIGURATION = "configuration"
    NETWORK = "network"
    LOGIC = "logic"


class GatekeeperError(Exception):
    """
    Base exception class with structured error handling.

    Carries severity, category and a free-form details map so that errors
    can be logged as structured records.
    """

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.LOGIC,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.severity.value.upper()}] {self.category.value}: {self.message}"


class ConfigurationError(GatekeeperError):
    """Configuration and setup errors."""

    def __init__(self, config_key: str, message: str, **kwargs):
        super().__init__(
            f"Configuration error for '{config_key}': {message}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.details["config_key"] = config_key


class SecurityError(GatekeeperError):
    """Base class for security-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.SECURITY)
        super().__init__(message, **kwargs)


class CryptoErrorKind(str, Enum):
    """Failure classes of the crypto core."""
    KEY_UNAVAILABLE = "key_unavailable"
    INTEGRITY_FAILURE = "integrity_failure"
    INVALID_INPUT = "invalid_input"


class CryptoError(SecurityError):
    """Raised when cryptographic operations fail. Always fails closed."""

    def __init__(self, message: str, kind: CryptoErrorKind = CryptoErrorKind.INVALID_INPUT, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CRYPTO)
        super().__init__(message, **kwargs)
        self.kind = kind
        self.details["kind"] = kind.value


class RejectionError(SecurityError):
    """
    A request was rejected at the boundary.

    Always carries a stable machine-readable ``code`` and an HTTP status.
    Rate-limit rejections also carry ``retry_after`` in seconds.
    """

    status_code: int = 403
    code: str = "REJECTED"
    public_message: str = "Request rejected"

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.REJECTION)
        super().__init__(message or self.public_message, **kwargs)
        self.retry_after = retry_after

    def to_response_body(self) -> Dict[str, Any]:
        """Client-facing body. Never includes internal details."""
        body: Dict[str, Any] = {
            "success": False,
            "message": self.public_message,
            "code": self.code,
        }
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class IPBlocked(RejectionError):
    """Client identifier is on the block list."""
    status_code = 403
    code = "IP_BLOCKED"
    public_message = "Access denied"


class IPNotAllowed(RejectionError):
    """Client identifier is not on the allow list."""
    status_code = 403
    code = "IP_NOT_ALLOWED"
    public_message = "Access denied"


class PayloadTooLarge(RejectionError):
    """Declared content length exceeds the configured maximum."""
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    public_message = "Request payload too large"


class SecurityViolation(RejectionError):
    """A threat detector fired on the request."""
    status_code = 403
    code = "SECURITY_VIOLATION"
    public_message = "Security violation detected"


class RateLimitExceeded(RejectionError):
    """Tier quota exhausted for the current window."""
    status_code = 429
    code = "RATE_LIMITED"
    public_message = "Too many requests, please retry later"


class InvalidAPIKey(RejectionError):
    """Sensitive route requested without a valid ``X-API-Key``."""
    status_code = 401
    code = "INVALID_API_KEY"
    public_message = "Invalid API key"


class InvalidCSRFToken(RejectionError):
    """State-changing request without a matching CSRF token."""
    status_code = 403
    code = "INVALID_CSRF_TOKEN"
    public_message = "CSRF token invalid or missing"


class AdminKeyRequired(RejectionError):
    status_code = 401
    code = "UNAUTHORIZED"
    public_message = "Admin API key required"


class AdminKeyInvalid(RejectionError):
    status_code = 403
    code = "FORBIDDEN"
    public_message = "Invalid admin API key"


class OperationalError(GatekeeperError):
    """
    Internal failure of a detector, listener or alert dispatch.

    Logged server-side only; never aborts the request pipeline.
    """

    def __init__(self, component: str, operation: str, cause: Optional[BaseException] = None, **kwargs):
        message = f"{component}.{operation} failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.LOGIC,
            cause=cause,
            **kwargs
        )
        self.component = component
        self.operation = operation
        self.details["component"] = component
        self.details["operation"] = operation

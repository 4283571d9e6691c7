from typing import Optional, Dict, Any


class CostwatchException(Exception):
    """Base exception for all Costwatch errors.

    ``retryable`` tells the job queue whether another attempt can succeed.
    """

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.details = details or {}


class ConfigurationError(CostwatchException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=False, details=details)


class CredentialError(CostwatchException):
    """Raised when a stored secret is missing, malformed or tampered with."""

    def __init__(self, message: str, code: str = "credential_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=False, details=details)


class DecryptionError(CredentialError):
    """Raised when a sealed value fails to open."""

    def __init__(self, message: str = "Failed to decrypt sealed value", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="decryption_error", details=details)


class ProviderAuthError(CostwatchException):
    """Raised when the cloud provider rejects the account credentials."""

    def __init__(self, message: str, code: str = "provider_auth_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=False, details=details)


class ProviderTransientError(CostwatchException):
    """Raised on provider timeouts, throttling and 5xx responses."""

    def __init__(self, message: str, code: str = "provider_transient_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=True, details=details)


class StoreError(CostwatchException):
    """Raised when the relational store fails.

    Reads are retryable; writes that decide a job's terminal state are not.
    """

    def __init__(
        self,
        message: str,
        code: str = "store_error",
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, retryable=retryable, details=details)


class DeliveryError(CostwatchException):
    """Raised by a notification channel when a send attempt fails."""

    def __init__(
        self,
        message: str,
        code: str = "delivery_error",
        retryable: bool = True,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, retryable=retryable, details=details)
        self.status_code = status_code


class ValidationError(CostwatchException):
    """Raised when input is malformed; never enters the queue."""

    def __init__(self, message: str, code: str = "validation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=False, details=details)


class ResourceNotFoundError(CostwatchException):
    """Raised when a requested record is not found."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, retryable=False, details=details)


def is_retryable(exc: BaseException) -> bool:
    """Queue-level retry decision for an arbitrary exception.

    Unknown exceptions are retried; the taxonomy above decides for its own types.
    """
    if isinstance(exc, CostwatchException):
        return exc.retryable
    return True

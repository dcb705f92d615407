"""
Exceptions for the compute relay.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """
    Named failure kinds reported by the completion client and the submitter.
    """
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AUTH_FAILED = "AUTH_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"

    INSUFFICIENT_GAS = "INSUFFICIENT_GAS"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"


class RelayError(Exception):
    """Base exception for all relay errors."""
    pass


class ConfigurationError(RelayError):
    """Raised when a component is constructed without required configuration."""
    pass


class SubscriptionError(RelayError):
    """Raised when the node rejects or never confirms an event subscription."""
    pass


class CompletionError(RelayError):
    """Raised when the completion engine returns a classified failure."""

    def __init__(self, message: str, kind: ErrorKind, status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(f"{kind.value}: {message}")


class SubmissionError(RelayError):
    """Raised when a callback transaction cannot be submitted or confirmed."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSACTION_FAILED):
        self.kind = kind
        super().__init__(f"{kind.value}: {message}")

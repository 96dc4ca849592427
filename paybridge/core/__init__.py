"""Core payment orchestration logic."""
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DuplicateTransactionError,
    MethodNotAllowedError,
    NotFoundError,
    OrderReconciliationError,
    PaymentError,
    PersistenceError,
    RateLimitedError,
    UpstreamProviderError,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DuplicateTransactionError",
    "MethodNotAllowedError",
    "NotFoundError",
    "OrderReconciliationError",
    "PaymentError",
    "PersistenceError",
    "RateLimitedError",
    "UpstreamProviderError",
    "ValidationError",
]

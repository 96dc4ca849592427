"""Error taxonomy for payment orchestration."""


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    status_code = 500

    def __init__(self, message: str = "", **context: object):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(PaymentError):
    """Raised when an initiate request is missing or has malformed fields."""

    status_code = 400


class AuthenticationError(PaymentError):
    """Raised when a webhook signature does not match."""

    status_code = 401


class NotFoundError(PaymentError):
    """Raised when a transaction, provider or route is unknown."""

    status_code = 404


class MethodNotAllowedError(PaymentError):
    """Raised when a known path is called with the wrong HTTP method."""

    status_code = 405


class RateLimitedError(PaymentError):
    """Raised when a client exceeds the initiation rate limit."""

    status_code = 429

    def __init__(self, message: str = "Too Many Requests", retry_after: int = 0, **context: object):
        super().__init__(message, **context)
        self.retry_after = retry_after


class UpstreamProviderError(PaymentError):
    """
    Raised by adapters when the external network call fails.

    Never reaches the payer: initiation absorbs it into a pending transaction.
    """

    status_code = 502


class PersistenceError(PaymentError):
    """Raised when a ledger or order write fails."""

    status_code = 500


class DuplicateTransactionError(PersistenceError):
    """Raised when inserting a transaction id that already exists."""


class OrderReconciliationError(PersistenceError):
    """Raised when the order linked to a successful transaction cannot be updated."""


class ConfigurationError(PaymentError):
    """Raised when the service is misconfigured (e.g. missing webhook secret in production)."""

    status_code = 500

"""
Provider adapter contract and canonical payment types.

Every external payment network is wrapped by one ``PaymentAdapter``. Adapters
convert the canonical initiate request into the network's wire format, and the
network's webhook payload into a canonical ``VerificationResult``. They never
touch the ledger.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from paybridge.config import ProviderConfig
from paybridge.core.exceptions import UpstreamProviderError
from paybridge.monitoring.metrics import metrics
from paybridge.providers.signature import WebhookVerifier

logger = structlog.get_logger(__name__)

# Failures while talking to a provider; absorbed into a pending result.
UPSTREAM_ERRORS = (
    UpstreamProviderError,
    httpx.HTTPError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)


class CanonicalStatus(str, Enum):
    """Tri-state every provider status vocabulary is mapped into."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not CanonicalStatus.PENDING


@dataclass(frozen=True)
class InitiateRequest:
    """Canonical payment initiation request."""

    user_id: str
    amount: Decimal
    currency: str
    method: str
    order_id: Optional[str] = None
    description: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class InitiateResult:
    """What an adapter returns for one initiation; always ``pending``."""

    transaction_id: str
    provider: str
    status: CanonicalStatus
    amount: Decimal
    currency: str
    redirect_url: Optional[str] = None
    reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmitResult:
    """Provider-specific outcome of a successful upstream submission."""

    redirect_url: Optional[str] = None
    reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    """Canonical view of a webhook or status-query payload."""

    status: CanonicalStatus
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    provider_status: Optional[str] = None


def generate_transaction_id() -> str:
    """Generate an unguessable transaction id."""
    return f"txn_{uuid.uuid4().hex}"


def dig(data: Any, *path: str) -> Any:
    """Walk nested dicts, returning None when any step is missing."""
    for key in path:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def first_present(*values: Any) -> Any:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class PaymentAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses implement ``_submit`` (the upstream call), ``parse_callback``
    and ``map_status``. The base class owns transaction id generation, the
    bounded timeout and the downgrade of upstream failures to ``pending``.
    """

    tag: str = ""
    signature_headers: Tuple[str, ...] = ("x-paybridge-signature",)

    def __init__(
        self,
        config: ProviderConfig,
        verifier: Optional[WebhookVerifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize adapter.

        Args:
            config: Provider configuration
            verifier: Optional webhook verifier (built from config if not provided)
            http_client: Optional HTTP client (created lazily if not provided)
        """
        self.config = config
        self.verifier = verifier or WebhookVerifier(config.tag, config.webhook_secret)
        self._http_client = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def validate(self, request: InitiateRequest) -> None:
        """Provider-specific request checks; raise ValidationError on failure."""

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        """
        Submit a payment to the provider.

        Upstream failures and timeouts are logged and returned as a ``pending``
        result carrying diagnostic metadata: the provider may have accepted the
        request even though its response was lost.

        Args:
            request: Canonical initiate request

        Returns:
            InitiateResult: Always ``pending``
        """
        transaction_id = generate_transaction_id()
        base_metadata: Dict[str, Any] = {"has_keys": self.config.has_keys}

        logger.info(
            "provider_initiate_started",
            provider=self.tag,
            transaction_id=transaction_id,
            amount=str(request.amount),
            currency=request.currency,
            phone_number=request.phone_number,
        )

        try:
            submitted = await asyncio.wait_for(
                self._submit(transaction_id, request),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "provider_initiate_timeout",
                provider=self.tag,
                transaction_id=transaction_id,
                timeout_seconds=self.config.timeout_seconds,
            )
            submitted = SubmitResult(metadata={"error": "upstream timeout", "upstream_error": True})
        except UPSTREAM_ERRORS as e:
            logger.warning(
                "provider_initiate_failed",
                provider=self.tag,
                transaction_id=transaction_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            submitted = SubmitResult(metadata={"error": str(e), "upstream_error": True})

        return InitiateResult(
            transaction_id=transaction_id,
            provider=self.tag,
            status=CanonicalStatus.PENDING,
            amount=request.amount,
            currency=request.currency,
            redirect_url=submitted.redirect_url,
            reference_id=submitted.reference_id,
            metadata={**base_metadata, **submitted.metadata},
        )

    def signature_from(self, headers: Mapping[str, str]) -> Optional[str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in self.signature_headers:
            if lowered.get(name):
                return lowered[name]
        return None

    def verify(
        self, raw_body: bytes, headers: Mapping[str, str], body: Any
    ) -> Optional[VerificationResult]:
        """
        Authenticate and interpret a webhook.

        Args:
            raw_body: Raw request body exactly as received
            headers: Request headers
            body: Parsed JSON body

        Returns:
            Optional[VerificationResult]: None if the signature is rejected
        """
        if not self.verifier.verify(raw_body, self.signature_from(headers)):
            return None
        return self.parse_callback(body)

    async def query_status(
        self,
        transaction_id: str,
        reference_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Optional[VerificationResult]:
        """
        Ask the provider for the current status of a payment.

        Returns None when the provider has no query API or the call fails.
        """
        if not self.config.has_keys:
            return None
        try:
            return await asyncio.wait_for(
                self._query(transaction_id, reference_id, currency),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("provider_query_timeout", provider=self.tag, transaction_id=transaction_id)
            metrics.record_provider_error(self.tag, "query")
        except UPSTREAM_ERRORS as e:
            logger.warning(
                "provider_query_failed",
                provider=self.tag,
                transaction_id=transaction_id,
                error=str(e),
            )
            metrics.record_provider_error(self.tag, "query")
        return None

    async def _query(
        self, transaction_id: str, reference_id: Optional[str], currency: Optional[str]
    ) -> Optional[VerificationResult]:
        return None

    @abstractmethod
    async def _submit(self, transaction_id: str, request: InitiateRequest) -> SubmitResult:
        """Call the provider; raise UpstreamProviderError on rejection."""

    @abstractmethod
    def parse_callback(self, body: Any) -> VerificationResult:
        """Convert a provider webhook body into a VerificationResult."""

    @staticmethod
    @abstractmethod
    def map_status(code: Any) -> CanonicalStatus:
        """Map a provider status code to the canonical tri-state; unknown -> pending."""

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_error:
            raise UpstreamProviderError(
                f"{action} failed: HTTP {response.status_code} - {response.text[:200]}"
            )

    @staticmethod
    def _json(response: httpx.Response, action: str) -> Dict[str, Any]:
        """Decode a JSON object body; any other shape is an upstream failure."""
        try:
            data = response.json()
        except ValueError:
            raise UpstreamProviderError(f"{action} returned a non-JSON body")
        if not isinstance(data, dict):
            raise UpstreamProviderError(
                f"{action} returned {type(data).__name__} instead of a JSON object"
            )
        return data

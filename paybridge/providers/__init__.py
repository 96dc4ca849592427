"""Payment provider adapters."""
from .airtel import AirtelAdapter
from .base import (
    CanonicalStatus,
    InitiateRequest,
    InitiateResult,
    PaymentAdapter,
    SubmitResult,
    VerificationResult,
    generate_transaction_id,
)
from .dpo import DpoAdapter
from .mpesa import MpesaAdapter
from .pesapal import PesapalAdapter
from .registry import AdapterRegistry, build_registry
from .signature import WebhookVerifier

__all__ = [
    "AdapterRegistry",
    "AirtelAdapter",
    "CanonicalStatus",
    "DpoAdapter",
    "InitiateRequest",
    "InitiateResult",
    "MpesaAdapter",
    "PaymentAdapter",
    "PesapalAdapter",
    "SubmitResult",
    "VerificationResult",
    "WebhookVerifier",
    "build_registry",
    "generate_transaction_id",
]

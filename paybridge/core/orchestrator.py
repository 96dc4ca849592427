"""
Payment orchestrator.

Owns the three payment flows:
1. Initiate: pick the adapter for the method, submit, record a pending transaction
2. Status query: read the ledger, optionally polling the provider for pending rows
3. Webhook: verify, correlate, apply the conditional update, reconcile the order

Provider outcomes from webhooks and from polling go through the same
``_apply_outcome`` path, so the ledger's conditional update is the single gate
for both.
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from paybridge.config import Settings
from paybridge.core.exceptions import (
    AuthenticationError,
    NotFoundError,
    OrderReconciliationError,
    ValidationError,
)
from paybridge.core.ledger import TransactionLedger
from paybridge.core.reconciler import OrderReconciler
from paybridge.database.connection import get_session_factory
from paybridge.database.models import Transaction
from paybridge.monitoring.metrics import metrics
from paybridge.providers.base import (
    CanonicalStatus,
    InitiateRequest,
    InitiateResult,
    PaymentAdapter,
    VerificationResult,
)
from paybridge.providers.registry import AdapterRegistry, build_registry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of one webhook delivery."""

    transaction_id: str
    status: str
    applied: bool
    outcome: str  # applied, duplicate, pending


class PaymentOrchestrator:
    """Coordinates adapters, the ledger and the order reconciler."""

    def __init__(
        self,
        registry: AdapterRegistry,
        ledger: TransactionLedger,
        reconciler: OrderReconciler,
        default_webhook_provider: str = "pesapal",
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Provider adapters
            ledger: Transaction ledger
            reconciler: Order reconciler
            default_webhook_provider: Adapter for webhooks that name no provider
                and no known transaction
        """
        self.registry = registry
        self.ledger = ledger
        self.reconciler = reconciler
        self.default_webhook_provider = default_webhook_provider

    async def close(self) -> None:
        await self.registry.close()

    async def initiate(self, request: InitiateRequest, client_ip: Optional[str] = None) -> InitiateResult:
        """
        Initiate a payment and record it as pending.

        Args:
            request: Canonical initiate request
            client_ip: Caller's address, for logging

        Returns:
            InitiateResult: Pending result with the generated transaction id

        Raises:
            ValidationError: If the method or provider-specific fields are invalid
            PersistenceError: If the transaction cannot be recorded
        """
        adapter = self.registry.for_method(request.method)
        adapter.validate(request)

        start = time.monotonic()
        result = await adapter.initiate(request)
        duration = time.monotonic() - start

        upstream_error = bool(result.metadata.get("upstream_error"))
        if upstream_error:
            metrics.record_provider_error(adapter.tag, "initiate")

        await self.ledger.insert(result, user_id=request.user_id, order_id=request.order_id)

        metrics.record_initiation(
            provider=adapter.tag,
            outcome="upstream_error" if upstream_error else "submitted",
            currency=request.currency,
            amount=float(request.amount),
            duration_seconds=duration,
        )
        logger.info(
            "payment_initiated",
            transaction_id=result.transaction_id,
            provider=adapter.tag,
            method=request.method,
            user_id=request.user_id,
            order_id=request.order_id,
            client_ip=client_ip,
            upstream_error=upstream_error,
            duration_seconds=round(duration, 3),
        )
        return result

    async def get_status(self, transaction_id: str, refresh: bool = False) -> Transaction:
        """
        Return the stored transaction.

        Args:
            transaction_id: Transaction id
            refresh: Poll the provider first if the transaction is still pending

        Raises:
            NotFoundError: If the transaction does not exist
        """
        transaction = await self.ledger.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        if refresh and transaction.status == CanonicalStatus.PENDING.value:
            transaction = await self.refresh_transaction(transaction)
        return transaction

    async def refresh_transaction(self, transaction: Transaction) -> Transaction:
        """
        Poll the provider for a pending transaction and apply a terminal answer.

        Returns:
            Transaction: The stored row after any update
        """
        adapter = self.registry.get(transaction.provider)
        verification = await adapter.query_status(
            transaction.id, transaction.reference_id, transaction.currency
        )
        if verification is None:
            return transaction

        await self.ledger.record_event(
            transaction.id,
            "status_polled",
            {"status": verification.status.value, "provider_status": verification.provider_status},
        )
        if not verification.status.is_terminal:
            return transaction

        await self._apply_outcome(transaction, verification, source="status_poll")
        return await self.ledger.get(transaction.id) or transaction

    async def handle_webhook(
        self,
        provider: Optional[str],
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Args:
            provider: Provider tag from the URL, or None to resolve it from the
                body's transaction id (falling back to the default provider)
            raw_body: Raw request body, exactly as received
            headers: Request headers

        Returns:
            WebhookOutcome: Stored status after processing; duplicates and
                ``pending`` notifications are acknowledged without mutation

        Raises:
            AuthenticationError: Signature rejected (nothing is mutated)
            ValidationError: Body is not JSON or does not identify a transaction
            NotFoundError: Unknown provider or transaction
            PersistenceError: Ledger write failed
        """
        start = time.monotonic()
        tag = "unknown"
        outcome = "error"
        try:
            body = self._parse_body(raw_body)
            adapter = await self._webhook_adapter(provider, body)
            tag = adapter.tag

            verification = adapter.verify(raw_body, headers, body if isinstance(body, dict) else {})
            if verification is None:
                outcome = "rejected"
                raise AuthenticationError("Invalid webhook signature", provider=tag)
            if not isinstance(body, dict):
                raise ValidationError("Webhook body must be a JSON object")

            transaction = await self._correlate(adapter, verification)

            if not verification.status.is_terminal:
                outcome = "pending"
                await self.ledger.record_event(
                    transaction.id,
                    "webhook_pending",
                    {"provider_status": verification.provider_status},
                )
                logger.info(
                    "webhook_pending_status",
                    transaction_id=transaction.id,
                    provider=tag,
                    provider_status=verification.provider_status,
                )
                return WebhookOutcome(transaction.id, transaction.status, False, outcome)

            applied, status = await self._apply_outcome(transaction, verification, source="webhook")
            outcome = "applied" if applied else "duplicate"
            return WebhookOutcome(transaction.id, status, applied, outcome)

        except NotFoundError:
            outcome = "not_found"
            raise
        finally:
            metrics.record_webhook_event(tag, outcome, time.monotonic() - start)

    @staticmethod
    def _parse_body(raw_body: bytes) -> Any:
        if not raw_body:
            return {}
        try:
            return json.loads(raw_body)
        except ValueError:
            return None

    async def _webhook_adapter(self, provider: Optional[str], body: Any) -> PaymentAdapter:
        if provider:
            return self.registry.get(provider)
        if isinstance(body, dict) and isinstance(body.get("transaction_id"), str):
            transaction = await self.ledger.get(body["transaction_id"])
            if transaction is not None:
                return self.registry.get(transaction.provider)
        return self.registry.get(self.default_webhook_provider)

    async def _correlate(self, adapter: PaymentAdapter, verification: VerificationResult) -> Transaction:
        if not verification.transaction_id and not verification.reference_id:
            raise ValidationError("Webhook does not identify a transaction", provider=adapter.tag)

        transaction = None
        if verification.transaction_id:
            transaction = await self.ledger.get(verification.transaction_id)
        if transaction is None and verification.reference_id:
            transaction = await self.ledger.find_by_reference(adapter.tag, verification.reference_id)

        if transaction is None or transaction.provider != adapter.tag:
            logger.warning(
                "webhook_transaction_not_found",
                provider=adapter.tag,
                transaction_id=verification.transaction_id,
                reference_id=verification.reference_id,
            )
            raise NotFoundError(
                "Transaction not found",
                transaction_id=verification.transaction_id,
                reference_id=verification.reference_id,
            )
        return transaction

    async def _apply_outcome(
        self, transaction: Transaction, verification: VerificationResult, source: str
    ) -> tuple[bool, str]:
        """
        Apply a terminal provider outcome through the conditional update.

        Returns:
            tuple[bool, str]: Whether this call performed the transition, and
                the stored status afterwards
        """
        applied = await self.ledger.update_status(
            transaction.id,
            verification.status,
            reference_id=verification.reference_id,
            event_data={"source": source, "provider_status": verification.provider_status},
        )

        if not applied:
            current = await self.ledger.get(transaction.id)
            stored_status = current.status if current else transaction.status
            await self.ledger.record_event(
                transaction.id,
                "duplicate_webhook" if source == "webhook" else "duplicate_status_poll",
                {"reported_status": verification.status.value, "stored_status": stored_status},
            )
            logger.info(
                "webhook_duplicate_ignored",
                transaction_id=transaction.id,
                provider=transaction.provider,
                reported_status=verification.status.value,
                stored_status=stored_status,
                source=source,
            )
            return False, stored_status

        metrics.record_status_transition(transaction.provider, verification.status.value)
        logger.info(
            "transaction_status_changed",
            transaction_id=transaction.id,
            provider=transaction.provider,
            status=verification.status.value,
            source=source,
        )

        if verification.status is CanonicalStatus.SUCCESS and transaction.order_id:
            updated = await self.ledger.get(transaction.id)
            if updated is not None:
                await self.reconcile_order(updated)

        return True, verification.status.value

    async def reconcile_order(self, transaction: Transaction) -> bool:
        """
        Reconcile the order of a successful transaction, absorbing failures.

        A failure is logged and recorded as an audit event; the reconciliation
        worker retries it later.
        """
        try:
            return await self.reconciler.reconcile(transaction)
        except OrderReconciliationError as e:
            logger.error(
                "order_reconciliation_failed",
                transaction_id=transaction.id,
                order_id=transaction.order_id,
                error=e.message,
            )
            await self.ledger.record_event(
                transaction.id,
                "order_reconciliation_failed",
                {"order_id": transaction.order_id, "error": e.message},
            )
            return False


def build_orchestrator(settings: Settings) -> PaymentOrchestrator:
    """Wire the orchestrator against the configured database and providers."""
    session_factory = get_session_factory()
    return PaymentOrchestrator(
        registry=build_registry(settings),
        ledger=TransactionLedger(session_factory),
        reconciler=OrderReconciler(session_factory),
        default_webhook_provider=settings.default_webhook_provider,
    )

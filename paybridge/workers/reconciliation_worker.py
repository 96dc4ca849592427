"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds``:
1. Polls providers for transactions pending longer than
   ``stale_pending_after_seconds`` and applies terminal answers
2. Retries the order update for successful transactions whose order has not
   been reconciled yet

Anything that still fails is logged and left for the next sweep.
"""
import asyncio
import signal
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paybridge.config import Settings, get_settings
from paybridge.core.exceptions import OrderReconciliationError, PersistenceError
from paybridge.core.orchestrator import PaymentOrchestrator, build_orchestrator
from paybridge.core.reconciler import OrderReconciler
from paybridge.database.connection import close_db, init_db
from paybridge.database.models import Transaction
from paybridge.monitoring.logging import setup_logging
from paybridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@retry(
    retry=retry_if_exception_type(OrderReconciliationError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)
async def reconcile_with_retry(reconciler: OrderReconciler, transaction: Transaction) -> bool:
    """Reconcile one order, retrying transient failures."""
    return await reconciler.reconcile(transaction)


class ReconciliationWorker:
    """Sweeps stale pending transactions and unreconciled orders."""

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        settings: Optional[Settings] = None,
        reconcile_order: Callable[[OrderReconciler, Transaction], Awaitable[bool]] = reconcile_with_retry,
        batch_size: int = 100,
    ):
        """
        Initialize worker.

        Args:
            orchestrator: Payment orchestrator (ledger, adapters, reconciler)
            settings: Application settings
            reconcile_order: Order reconciliation call, with retry policy
            batch_size: Maximum rows handled per step per sweep
        """
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.reconcile_order = reconcile_order
        self.batch_size = batch_size
        self.running = False

    async def poll_stale_pending(self) -> Dict[str, int]:
        """
        Poll providers for pending transactions older than the threshold.

        Returns:
            Dict[str, int]: Counts of stale and resolved transactions
        """
        cutoff = datetime.now(timezone.utc) - timedelta(
            seconds=self.settings.stale_pending_after_seconds
        )
        stale = await self.orchestrator.ledger.list_stale_pending(cutoff, limit=self.batch_size)
        resolved = 0

        for transaction in stale:
            refreshed = await self.orchestrator.refresh_transaction(transaction)
            if refreshed.status == transaction.status:
                await self.orchestrator.ledger.mark_polled(transaction.id)
                continue

            resolved += 1
            logger.info(
                "stale_transaction_resolved",
                transaction_id=transaction.id,
                provider=transaction.provider,
                status=refreshed.status,
            )

        if stale:
            logger.info("stale_pending_polled", stale=len(stale), resolved=resolved)
        return {"stale": len(stale), "resolved": resolved}

    async def retry_unreconciled_orders(self) -> Dict[str, int]:
        """
        Retry order updates for successful transactions.

        Returns:
            Dict[str, int]: Counts of reconciled and failed orders
        """
        pending_orders = await self.orchestrator.ledger.list_unreconciled_orders(limit=self.batch_size)
        reconciled = 0
        failed = 0

        for transaction in pending_orders:
            try:
                if await self.reconcile_order(self.orchestrator.reconciler, transaction):
                    reconciled += 1
            except OrderReconciliationError as e:
                failed += 1
                logger.error(
                    "order_reconciliation_retry_exhausted",
                    transaction_id=transaction.id,
                    order_id=transaction.order_id,
                    error=e.message,
                )
                await self.orchestrator.ledger.record_event(
                    transaction.id,
                    "order_reconciliation_failed",
                    {"order_id": transaction.order_id, "error": e.message, "source": "worker"},
                )

        if pending_orders:
            logger.info(
                "unreconciled_orders_retried",
                total=len(pending_orders),
                reconciled=reconciled,
                failed=failed,
            )
        return {"reconciled": reconciled, "failed": failed}

    async def run_once(self) -> Dict[str, Any]:
        """Run one sweep; persistence failures end the sweep early."""
        start = time.monotonic()
        result: Dict[str, Any] = {}
        logger.info("reconciliation_sweep_started")

        try:
            result["stale_pending"] = await self.poll_stale_pending()
            result["orders"] = await self.retry_unreconciled_orders()
        except PersistenceError as e:
            logger.error("reconciliation_sweep_failed", error=e.message)
            result["error"] = e.message

        duration = time.monotonic() - start
        metrics.set_reconciliation_metrics(
            stale_count=result.get("stale_pending", {}).get("stale", 0),
            duration_seconds=duration,
        )
        logger.info("reconciliation_sweep_completed", duration_seconds=round(duration, 3), **result)
        return result

    async def run(self) -> None:
        """Sweep every ``reconciliation_interval_seconds`` until stopped."""
        self.running = True
        interval = self.settings.reconciliation_interval_seconds
        logger.info("reconciliation_worker_starting", interval_seconds=interval)

        try:
            while self.running:
                await self.run_once()

                # Sleep in short steps so a shutdown signal is noticed promptly
                remaining = float(interval)
                while remaining > 0 and self.running:
                    step = min(remaining, 1.0)
                    await asyncio.sleep(step)
                    remaining -= step
        finally:
            logger.info("reconciliation_worker_stopped")

    def stop(self) -> None:
        self.running = False


async def start_reconciliation_worker() -> None:
    """Start the reconciliation worker against the configured database."""
    settings = get_settings()
    setup_logging(settings)

    await init_db()
    orchestrator = build_orchestrator(settings)
    worker = ReconciliationWorker(orchestrator, settings)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.run()
    finally:
        await orchestrator.close()
        await close_db()


def main() -> None:
    """Console entry point."""
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()

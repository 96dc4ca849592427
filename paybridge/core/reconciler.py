"""
Order reconciliation.

When a transaction becomes ``success`` and funds an order, the order is marked
confirmed and paid. The claim on ``transactions.order_reconciled_at`` and the
order update commit together, so an order is reconciled at most once even if
the webhook path and the reconciliation worker race.
"""
from datetime import datetime, timezone

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paybridge.core.exceptions import OrderReconciliationError
from paybridge.database.models import Order, Transaction, TransactionEvent
from paybridge.monitoring.metrics import metrics
from paybridge.providers.base import CanonicalStatus

logger = structlog.get_logger(__name__)

ORDER_STATUS_CONFIRMED = "confirmed"
ORDER_PAYMENT_COMPLETED = "completed"


class OrderReconciler:
    """Applies successful payments to the orders they fund."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def reconcile(self, transaction: Transaction) -> bool:
        """
        Mark the transaction's order as confirmed and paid.

        Args:
            transaction: A successful transaction

        Returns:
            bool: True if the order was updated by this call, False if there is
                nothing to do (no order, not successful, already reconciled)

        Raises:
            OrderReconciliationError: If the order is missing or the write fails
        """
        if transaction.status != CanonicalStatus.SUCCESS.value or not transaction.order_id:
            metrics.record_order_reconciliation("skipped")
            return False

        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            try:
                claim = await db.execute(
                    update(Transaction)
                    .where(
                        Transaction.id == transaction.id,
                        Transaction.order_reconciled_at.is_(None),
                    )
                    .values(order_reconciled_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount == 0:
                    await db.rollback()
                    logger.info(
                        "order_already_reconciled",
                        transaction_id=transaction.id,
                        order_id=transaction.order_id,
                    )
                    metrics.record_order_reconciliation("skipped")
                    return False

                result = await db.execute(
                    update(Order)
                    .where(Order.id == transaction.order_id)
                    .values(
                        status=ORDER_STATUS_CONFIRMED,
                        payment_status=ORDER_PAYMENT_COMPLETED,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise OrderReconciliationError(
                        f"Order {transaction.order_id} not found",
                        transaction_id=transaction.id,
                        order_id=transaction.order_id,
                    )

                db.add(
                    TransactionEvent(
                        transaction_id=transaction.id,
                        event_type="order_reconciled",
                        event_data={"order_id": transaction.order_id},
                        created_at=now,
                    )
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "order_reconciliation_write_failed",
                    transaction_id=transaction.id,
                    order_id=transaction.order_id,
                    error=str(e),
                )
                metrics.record_order_reconciliation("failed")
                raise OrderReconciliationError(
                    f"Failed to update order {transaction.order_id}: {e}",
                    transaction_id=transaction.id,
                    order_id=transaction.order_id,
                )
            except OrderReconciliationError:
                logger.error(
                    "order_reconciliation_order_missing",
                    transaction_id=transaction.id,
                    order_id=transaction.order_id,
                )
                metrics.record_order_reconciliation("failed")
                raise

        logger.info(
            "order_reconciled",
            transaction_id=transaction.id,
            order_id=transaction.order_id,
        )
        metrics.record_order_reconciliation("reconciled")
        return True

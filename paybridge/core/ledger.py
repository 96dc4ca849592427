"""
Transaction ledger.

Durable record of every payment attempt. The only status change after insert is
``update_status``, a conditional ``pending -> terminal`` update whose row count
decides whether a webhook delivery is the first or a duplicate.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paybridge.core.exceptions import DuplicateTransactionError, PersistenceError
from paybridge.database.models import Transaction, TransactionEvent
from paybridge.providers.base import CanonicalStatus, InitiateResult

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionLedger:
    """Insert, conditional update and reads over the transactions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize ledger.

        Args:
            session_factory: Factory for database sessions; each operation
                runs in its own session and commits before returning
        """
        self._session_factory = session_factory

    @staticmethod
    def _event(transaction_id: str, event_type: str, event_data: Dict[str, Any]) -> TransactionEvent:
        return TransactionEvent(
            transaction_id=transaction_id,
            event_type=event_type,
            event_data=event_data,
            created_at=utcnow(),
        )

    async def insert(
        self,
        result: InitiateResult,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Transaction:
        """
        Insert a new pending transaction.

        Args:
            result: Adapter initiation result
            user_id: Paying user
            order_id: Order funded by this payment, if any

        Returns:
            Transaction: The stored row

        Raises:
            DuplicateTransactionError: If the id already exists
            PersistenceError: If the write fails
        """
        now = utcnow()
        transaction = Transaction(
            id=result.transaction_id,
            user_id=user_id,
            order_id=order_id,
            amount=result.amount,
            currency=result.currency,
            provider=result.provider,
            status=CanonicalStatus.PENDING.value,
            reference_id=result.reference_id,
            redirect_url=result.redirect_url,
            metadata_=result.metadata,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as db:
            try:
                db.add(transaction)
                db.add(
                    self._event(
                        result.transaction_id,
                        "initiated",
                        {
                            "provider": result.provider,
                            "amount": str(result.amount),
                            "currency": result.currency,
                            "reference_id": result.reference_id,
                            "upstream_error": bool(result.metadata.get("upstream_error")),
                        },
                    )
                )
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                if await self.get(result.transaction_id) is not None:
                    logger.error("transaction_duplicate_id", transaction_id=result.transaction_id)
                    raise DuplicateTransactionError(
                        f"Transaction {result.transaction_id} already exists",
                        transaction_id=result.transaction_id,
                    )
                logger.error(
                    "transaction_insert_failed",
                    transaction_id=result.transaction_id,
                    error=str(e),
                )
                raise PersistenceError(
                    f"Failed to record transaction: {e}", transaction_id=result.transaction_id
                )
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "transaction_insert_failed",
                    transaction_id=result.transaction_id,
                    provider=result.provider,
                    amount=str(result.amount),
                    currency=result.currency,
                    error=str(e),
                )
                raise PersistenceError(
                    f"Failed to record transaction: {e}", transaction_id=result.transaction_id
                )

        logger.info(
            "transaction_recorded",
            transaction_id=transaction.id,
            provider=transaction.provider,
            order_id=order_id,
        )
        return transaction

    async def update_status(
        self,
        transaction_id: str,
        new_status: CanonicalStatus,
        reference_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a pending transaction to a terminal status.

        The update only applies while the stored status is still ``pending``;
        the stored reference id is only filled in, never replaced.

        Args:
            transaction_id: Transaction id
            new_status: Terminal status to apply
            reference_id: Provider reference to store if none is stored yet
            event_data: Extra context for the audit event

        Returns:
            bool: True if this call performed the transition, False if the
                transaction was already terminal (duplicate delivery)

        Raises:
            ValueError: If ``new_status`` is not terminal
            PersistenceError: If the write fails
        """
        if not new_status.is_terminal:
            raise ValueError(f"Cannot transition to non-terminal status {new_status.value}")

        async with self._session_factory() as db:
            try:
                stmt = (
                    update(Transaction)
                    .where(
                        Transaction.id == transaction_id,
                        Transaction.status == CanonicalStatus.PENDING.value,
                    )
                    .values(status=new_status.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                applied = result.rowcount == 1

                if applied:
                    if reference_id:
                        await db.execute(
                            update(Transaction)
                            .where(
                                Transaction.id == transaction_id,
                                Transaction.reference_id.is_(None),
                            )
                            .values(reference_id=reference_id)
                            .execution_options(synchronize_session=False)
                        )
                    db.add(
                        self._event(
                            transaction_id,
                            "status_changed",
                            {"status": new_status.value, **(event_data or {})},
                        )
                    )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "transaction_status_update_failed",
                    transaction_id=transaction_id,
                    new_status=new_status.value,
                    error=str(e),
                )
                raise PersistenceError(
                    f"Failed to update transaction {transaction_id}: {e}",
                    transaction_id=transaction_id,
                )

        logger.info(
            "transaction_status_update",
            transaction_id=transaction_id,
            new_status=new_status.value,
            applied=applied,
        )
        return applied

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        """Return the stored transaction, or None."""
        async with self._session_factory() as db:
            try:
                return await db.get(Transaction, transaction_id)
            except SQLAlchemyError as e:
                logger.error("transaction_read_failed", transaction_id=transaction_id, error=str(e))
                raise PersistenceError(f"Failed to read transaction {transaction_id}: {e}")

    async def find_by_reference(self, provider: str, reference_id: str) -> Optional[Transaction]:
        """Return the transaction a provider knows by ``reference_id``, or None."""
        async with self._session_factory() as db:
            try:
                stmt = (
                    select(Transaction)
                    .where(
                        Transaction.provider == provider,
                        Transaction.reference_id == reference_id,
                    )
                    .order_by(Transaction.created_at.desc())
                    .limit(1)
                )
                result = await db.execute(stmt)
                return result.scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.error(
                    "transaction_read_failed",
                    provider=provider,
                    reference_id=reference_id,
                    error=str(e),
                )
                raise PersistenceError(f"Failed to look up reference {reference_id}: {e}")

    async def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[Transaction]:
        """
        Pending transactions created before ``older_than``.

        Rows are ordered by when they were last polled (never-polled rows by
        creation time), so rows the provider cannot answer for rotate to the
        back instead of filling every batch.
        """
        async with self._session_factory() as db:
            try:
                stmt = (
                    select(Transaction)
                    .where(
                        Transaction.status == CanonicalStatus.PENDING.value,
                        Transaction.created_at < older_than,
                    )
                    .order_by(
                        func.coalesce(Transaction.last_polled_at, Transaction.created_at),
                        Transaction.created_at,
                    )
                    .limit(limit)
                )
                result = await db.execute(stmt)
                return list(result.scalars().all())
            except SQLAlchemyError as e:
                logger.error("stale_pending_query_failed", error=str(e))
                raise PersistenceError(f"Failed to list stale transactions: {e}")

    async def mark_polled(self, transaction_id: str) -> None:
        """Record a status poll of a pending transaction."""
        async with self._session_factory() as db:
            try:
                await db.execute(
                    update(Transaction)
                    .where(
                        Transaction.id == transaction_id,
                        Transaction.status == CanonicalStatus.PENDING.value,
                    )
                    .values(last_polled_at=utcnow(), updated_at=Transaction.updated_at)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("transaction_poll_mark_failed", transaction_id=transaction_id, error=str(e))
                raise PersistenceError(
                    f"Failed to mark transaction {transaction_id} polled: {e}",
                    transaction_id=transaction_id,
                )

    async def list_unreconciled_orders(self, limit: int = 100) -> List[Transaction]:
        """Successful transactions whose order update has not landed yet."""
        async with self._session_factory() as db:
            try:
                stmt = (
                    select(Transaction)
                    .where(
                        and_(
                            Transaction.status == CanonicalStatus.SUCCESS.value,
                            Transaction.order_id.is_not(None),
                            Transaction.order_reconciled_at.is_(None),
                        )
                    )
                    .order_by(Transaction.updated_at)
                    .limit(limit)
                )
                result = await db.execute(stmt)
                return list(result.scalars().all())
            except SQLAlchemyError as e:
                logger.error("unreconciled_orders_query_failed", error=str(e))
                raise PersistenceError(f"Failed to list unreconciled orders: {e}")

    async def record_event(
        self, transaction_id: str, event_type: str, event_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Append an audit event.

        Audit writes are best effort: a failure is logged, never raised, so
        it cannot turn an acknowledged webhook into an error.
        """
        async with self._session_factory() as db:
            try:
                db.add(self._event(transaction_id, event_type, event_data or {}))
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.warning(
                    "transaction_event_write_failed",
                    transaction_id=transaction_id,
                    event_type=event_type,
                    error=str(e),
                )

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        """Audit events of one transaction, oldest first."""
        async with self._session_factory() as db:
            try:
                stmt = (
                    select(TransactionEvent)
                    .where(TransactionEvent.transaction_id == transaction_id)
                    .order_by(TransactionEvent.id)
                )
                result = await db.execute(stmt)
                return list(result.scalars().all())
            except SQLAlchemyError as e:
                logger.error("transaction_events_query_failed", transaction_id=transaction_id, error=str(e))
                raise PersistenceError(f"Failed to read events for {transaction_id}: {e}")

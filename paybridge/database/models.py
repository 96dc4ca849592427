"""SQLAlchemy database models for the transaction ledger."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    Payment attempts table.

    One row per initiation call. ``status`` moves from ``pending`` to a terminal
    state exactly once; rows are never deleted.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    order_reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed')",
            name="valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_provider_reference", "provider", "reference_id"),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Public fields, as stored."""
        return {
            "transaction_id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "provider": self.provider,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "reference_id": self.reference_id,
            "redirect_url": self.redirect_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, provider={self.provider}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction events audit trail table.

    Stores every lifecycle event of a transaction, including webhook deliveries
    that were ignored as duplicates. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (Index("idx_transaction_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )


class Order(Base):
    """
    Commerce orders table.

    Owned by the order-management service; only the payment and fulfilment
    status columns are written here.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, status={self.status}, "
            f"payment_status={self.payment_status})>"
        )

"""Database package for paybridge."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, Order, Transaction, TransactionEvent

__all__ = [
    "Base",
    "Order",
    "Transaction",
    "TransactionEvent",
    "close_db",
    "get_session_factory",
    "init_db",
]

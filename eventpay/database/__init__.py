"""Database module for settlement persistence."""
from eventpay.database.connection import close_db, get_engine, get_session_factory, init_db
from eventpay.database.memory import InMemorySettlementRepository
from eventpay.database.models import (
    Base,
    CreatorPaymentProfileRecord,
    OutboxEvent,
    PayoutRecord,
    TransactionEventRecord,
    TransactionRecord,
)
from eventpay.database.repository import SettlementRepository, SqlSettlementRepository

__all__ = [
    "Base",
    "TransactionRecord",
    "TransactionEventRecord",
    "PayoutRecord",
    "CreatorPaymentProfileRecord",
    "OutboxEvent",
    "SettlementRepository",
    "SqlSettlementRepository",
    "InMemorySettlementRepository",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
]

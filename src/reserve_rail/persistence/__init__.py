"""
Persistence Layer for Reserve Rail

SQLite storage for ledger state and the event audit trail.
"""

from .database import Database, get_database
from .models import (
    SubscriptionRecord,
    LedgerStateRecord,
    EventRecord,
    TokenBalanceRecord,
    AllowanceRecord,
)
from .repository import LedgerRepository

__all__ = [
    "Database",
    "get_database",
    "SubscriptionRecord",
    "LedgerStateRecord",
    "EventRecord",
    "TokenBalanceRecord",
    "AllowanceRecord",
    "LedgerRepository",
]

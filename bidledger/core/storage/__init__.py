"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Credit relationships and the append-only ledger
- Sellers, orders and offers
- The audit trail
"""

from bidledger.core.storage.sqlite_adapter import (
    SQLiteAdapter,
    RowLockManager,
    classify_operational_error,
)
from bidledger.core.storage.storage_manager import (
    StorageManager,
    credit_lock_key,
    order_lock_key,
    settlement_lock_key,
)

__all__ = [
    "SQLiteAdapter",
    "RowLockManager",
    "classify_operational_error",
    "StorageManager",
    "credit_lock_key",
    "order_lock_key",
    "settlement_lock_key",
]

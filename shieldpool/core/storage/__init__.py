"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Accumulator leaves and root history
- Nullifier set
- Verifying keys, token blocklist and pool metadata
"""

from shieldpool.core.storage.sqlite_adapter import SQLiteAdapter
from shieldpool.core.storage.storage_manager import PoolState, StorageManager

__all__ = ["SQLiteAdapter", "StorageManager", "PoolState"]

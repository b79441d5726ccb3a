from turnbound.memory.cache import ResultCache
from turnbound.memory.deltas import DeltaRestoreError, DeltaTracker
from turnbound.memory.pruning import prune_sessions
from turnbound.memory.session_store import SessionStore
from turnbound.memory.store import BusyRetryPolicy, MemoryStore, is_sqlite_busy
from turnbound.memory.write_behind import WriteBehindQueue

__all__ = [
    "BusyRetryPolicy",
    "DeltaRestoreError",
    "DeltaTracker",
    "MemoryStore",
    "ResultCache",
    "SessionStore",
    "WriteBehindQueue",
    "is_sqlite_busy",
    "prune_sessions",
]

"""開始コンテキストストア"""

from infrastructure.store.context_store import ContextStore, StoreUnavailableError
from infrastructure.store.file_lock import FileLock, LockTimeoutError

__all__ = [
    "ContextStore",
    "StoreUnavailableError",
    "FileLock",
    "LockTimeoutError",
]

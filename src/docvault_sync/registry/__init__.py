"""Account and sync-folder records."""

from .accounts import AccountRegistry
from .folders import SyncFolderRegistry
from .store import JsonRecordStore, MemoryRecordStore

__all__ = [
    "AccountRegistry",
    "JsonRecordStore",
    "MemoryRecordStore",
    "SyncFolderRegistry",
]

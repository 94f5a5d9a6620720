"""Request store backends for zeromiles."""

from zeromiles.storage.base import RequestStore
from zeromiles.storage.memory import InMemoryRequestStore
from zeromiles.storage.sqlite import SQLiteRequestStore

__all__ = [
    "RequestStore",
    "InMemoryRequestStore",
    "SQLiteRequestStore",
]

"""Concrete Store implementations."""

from salesbot.stores.memory import MemoryStore
from salesbot.stores.sql import SQLStore

__all__ = ["MemoryStore", "SQLStore"]

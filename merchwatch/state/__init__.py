"""Backing store, crawl-state tracking and product persistence."""

from .base import MerchStore
from .memory import MemoryStore
from .storage import SqliteStore

__all__ = ["MemoryStore", "MerchStore", "SqliteStore"]

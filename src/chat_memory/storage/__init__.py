"""Storage backends for the memory system."""

from __future__ import annotations

from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]

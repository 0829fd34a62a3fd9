"""Storage module for DeployOps."""

from .sqlite_store import SQLiteStore, new_id

__all__ = ["SQLiteStore", "new_id"]

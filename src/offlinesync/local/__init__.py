"""Local entity store collaborator."""

from offlinesync.local.store import EntityStore, SQLiteEntityStore

__all__ = ["EntityStore", "SQLiteEntityStore"]

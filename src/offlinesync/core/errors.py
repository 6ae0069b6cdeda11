"""Base exceptions shared by the sync engine and the local stores."""


class SyncError(Exception):
    """Base exception for sync errors."""


class PersistenceError(SyncError):
    """Underlying storage failed. Never swallowed."""

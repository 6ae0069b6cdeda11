"""offlinesync - Offline-first synchronization engine for business entities."""

__version__ = "0.1.0"

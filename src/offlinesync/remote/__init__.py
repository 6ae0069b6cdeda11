"""Remote API collaborator: protocol, errors and the httpx client."""

from offlinesync.remote.api import (
    ENTITY_COLLECTIONS,
    AuthenticationError,
    HTTPRemoteClient,
    PermanentRemoteError,
    RemoteAPI,
    RemoteConflictError,
    RemoteError,
    RemoteResult,
    TransientRemoteError,
)

__all__ = [
    "ENTITY_COLLECTIONS",
    "AuthenticationError",
    "HTTPRemoteClient",
    "PermanentRemoteError",
    "RemoteAPI",
    "RemoteConflictError",
    "RemoteError",
    "RemoteResult",
    "TransientRemoteError",
]

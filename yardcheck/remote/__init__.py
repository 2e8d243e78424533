"""Remote communication implementations for interacting with the target host."""

from yardcheck.remote.base import (
    AuthError,
    CommandResult,
    RemoteClient,
    RemoteConnectionError,
    TransportError,
    UploadError,
)
from yardcheck.remote.ssh import ConnectionManager, SSHClient


__all__ = [
    "AuthError",
    "CommandResult",
    "ConnectionManager",
    "RemoteClient",
    "RemoteConnectionError",
    "SSHClient",
    "TransportError",
    "UploadError",
]

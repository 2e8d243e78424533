#!/usr/bin/env python3
"""Abstract base class for remote clients.

Provides interface for remote command execution and file upload, plus the
error taxonomy shared by every remote channel implementation.
"""

from abc import ABC, abstractmethod
from typing import NamedTuple


# Constants
ALIVE_MARKER = "alive"
SESSION_FAILURE_EXIT = -1


class RemoteConnectionError(Exception):
    """Base exception for remote connection errors."""


class TransportError(RemoteConnectionError):
    """The channel could not be established or maintained."""


class AuthError(RemoteConnectionError):
    """No usable credential was found or every credential was rejected."""


class UploadError(RemoteConnectionError):
    """A local file could not be read or written to the remote host."""


class CommandResult(NamedTuple):
    """Captured outcome of one remote command.

    Attributes:
        stdout: Decoded standard output
        stderr: Decoded standard error
        exit_code: Remote exit status (SESSION_FAILURE_EXIT if no session could be opened)
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """True when the remote command exited with status 0."""
        return self.exit_code == 0


class RemoteClient(ABC):
    """Abstract base class for remote clients.

    Provides interface for executing commands on the target host and
    uploading files. Implementations handle the transport.

    Attributes:
        host: Remote host hostname or IP address
        user: Username for authentication
    """

    def __init__(self, host: str, user: str) -> None:
        """Initialize remote client.

        Args:
            host: Remote host hostname or IP address
            user: Username for authentication
        """
        self.host = host
        self.user = user

    @abstractmethod
    def run_command(self, command: str) -> CommandResult:
        """Run command on remote host.

        A non-zero remote exit status is a normal result, never an exception.

        Args:
            command: Shell command line to execute

        Returns:
            CommandResult with stdout, stderr and exit code
        """

    def is_alive(self) -> bool:
        """Check if remote host answers commands.

        Returns:
            True if host is reachable, False otherwise
        """
        result = self.run_command(f"echo {ALIVE_MARKER}")
        return result.ok and ALIVE_MARKER in result.stdout

    @abstractmethod
    def copy_file(self, local_path: str, remote_name: str) -> None:
        """Upload an executable file into the remote home directory.

        Args:
            local_path: Local file path
            remote_name: Requested remote name; only its base name is used

        Raises:
            UploadError: If the file cannot be read or written
        """

    def close(self) -> None:
        """Release the underlying channel (no-op by default)."""

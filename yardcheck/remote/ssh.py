#!/usr/bin/env python3
"""SSH client for remote command execution and file upload.

Provides the paramiko based channel used for every remote operation and the
connection manager that establishes it (and re-establishes it after a
reboot).
"""

import logging
import posixpath
import select
import shlex
import socket
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko

from yardcheck.config.config import HarnessConfig
from yardcheck.core.poller import poll_until_deadline
from yardcheck.remote.auth import (
    AGENT_SOCKET_ENV,
    Credential,
    gather_credentials,
    open_agent,
    verify_host_key,
)
from yardcheck.remote.base import (
    SESSION_FAILURE_EXIT,
    AuthError,
    CommandResult,
    RemoteClient,
    TransportError,
    UploadError,
)


logger = logging.getLogger(__name__)

# Constants
KEEPALIVE_INTERVAL = 30
REACHABILITY_INTERVAL = 5
REACHABILITY_PROBE_TIMEOUT = 5
RECV_CHUNK_SIZE = 32768
DRAIN_POLL_INTERVAL = 0.1

_TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


class SSHClient(RemoteClient):
    """Authenticated SSH channel to the target host.

    Every command runs in its own session on the shared transport, so
    concurrent callers never share output buffers.

    Attributes:
        host: Target hostname or IP
        user: SSH username
        transport: Authenticated paramiko transport
        session_timeout: Timeout in seconds for opening a session
    """

    def __init__(
        self, host: str, user: str, transport: paramiko.Transport, session_timeout: float = 15
    ) -> None:
        """Initialize SSH client.

        Args:
            host: Target hostname or IP
            user: SSH username
            transport: Authenticated paramiko transport
            session_timeout: Timeout in seconds for opening a session
        """
        super().__init__(host, user)
        self.transport = transport
        self.session_timeout = session_timeout

    def _execute(self, command: str, stdin_data: Optional[bytes] = None) -> CommandResult:
        try:
            channel = self.transport.open_session(timeout=self.session_timeout)
        except _TRANSPORT_ERRORS as exc:
            logger.debug(f"Could not open session for {command!r}: {exc}")
            return CommandResult("", str(exc) or type(exc).__name__, SESSION_FAILURE_EXIT)

        try:
            channel.exec_command(command)
            if stdin_data is not None:
                channel.sendall(stdin_data)
                channel.shutdown_write()
            stdout, stderr = _drain(channel)
            if channel.exit_status_ready():
                exit_code = channel.recv_exit_status()
            else:
                exit_code = SESSION_FAILURE_EXIT
                stderr += b"session closed without exit status"
        except _TRANSPORT_ERRORS as exc:
            logger.debug(f"Session for {command!r} failed: {exc}")
            return CommandResult("", str(exc) or type(exc).__name__, SESSION_FAILURE_EXIT)
        finally:
            channel.close()

        return CommandResult(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            exit_code,
        )

    def run_command(self, command: str) -> CommandResult:
        """Run command on the target host.

        Args:
            command: Shell command line to execute

        Returns:
            CommandResult; a session that cannot be opened yields exit code
            SESSION_FAILURE_EXIT with the transport error as stderr
        """
        logger.debug(f"[{self.host}] $ {command}")
        result = self._execute(command)
        logger.debug(f"[{self.host}] exit={result.exit_code}")
        return result

    def copy_file(self, local_path: str, remote_name: str) -> None:
        """Upload a file into the remote home directory and mark it executable.

        Directory components of ``remote_name`` are discarded: requesting
        ``level1/level2/tool.sh`` writes ``~/tool.sh``.

        Args:
            local_path: Local file path
            remote_name: Requested remote name

        Raises:
            UploadError: If the file cannot be read or the remote write fails
        """
        try:
            data = Path(local_path).read_bytes()
        except OSError as exc:
            raise UploadError(f"read {local_path}: {exc}") from exc

        base = remote_base_name(remote_name)
        target = f"~/{shlex.quote(base)}"
        result = self._execute(f"cat > {target} && chmod +x {target}", stdin_data=data)
        if not result.ok:
            raise UploadError(
                f"write {target} failed (exit {result.exit_code}): {result.stderr.strip()}"
            )
        logger.debug(f"Uploaded {local_path} ({len(data)} bytes) to {target}")

    def close(self) -> None:
        """Close the transport."""
        try:
            self.transport.close()
        except _TRANSPORT_ERRORS as exc:
            logger.debug(f"Error closing transport: {exc}")


def _drain(channel: paramiko.Channel) -> Tuple[bytes, bytes]:
    """Read stdout and stderr of a session as the data arrives.

    Both streams share the session's flow-control window, so they are
    consumed together until the command has exited or the session closed.

    Args:
        channel: Session with a command running

    Returns:
        Tuple of (stdout, stderr) bytes
    """
    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    while True:
        if channel.recv_ready():
            stdout_chunks.append(channel.recv(RECV_CHUNK_SIZE))
        if channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(RECV_CHUNK_SIZE))
        if channel.recv_ready() or channel.recv_stderr_ready():
            continue
        if channel.exit_status_ready() or channel.closed:
            break
        select.select([channel], [], [], DRAIN_POLL_INTERVAL)

    # Data sent before the exit status is already buffered
    while channel.recv_ready():
        stdout_chunks.append(channel.recv(RECV_CHUNK_SIZE))
    while channel.recv_stderr_ready():
        stderr_chunks.append(channel.recv_stderr(RECV_CHUNK_SIZE))

    return b"".join(stdout_chunks), b"".join(stderr_chunks)


def remote_base_name(remote_name: str) -> str:
    """Return the file name an upload of ``remote_name`` lands under.

    Raises:
        UploadError: If no file name remains after flattening
    """
    name = remote_name[2:] if remote_name.startswith("~/") else remote_name
    base = posixpath.basename(name.rstrip("/"))
    if base in ("", ".", "..", "~"):
        raise UploadError(f"no file name in remote path {remote_name!r}")
    return base


def port_reachable(host: str, port: int, timeout: float = REACHABILITY_PROBE_TIMEOUT) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ConnectionManager:
    """Establishes the SSH channel and rebuilds it after a reboot.

    Attributes:
        config: Run configuration (host, user, keys, trust policy)
    """

    def __init__(
        self,
        config: HarnessConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize connection manager.

        Args:
            config: Run configuration
            sleep: Sleep function used while waiting for reachability
            clock: Monotonic clock used for the reachability deadline
        """
        self.config = config
        self._sleep = sleep
        self._clock = clock

    def _dial(self) -> socket.socket:
        cfg = self.config
        try:
            return socket.create_connection((cfg.host, cfg.port), timeout=cfg.connect_timeout)
        except OSError as exc:
            raise TransportError(f"dial {cfg.host}:{cfg.port}: {exc}") from exc

    def connect(self) -> SSHClient:
        """Open an authenticated channel.

        Returns:
            Connected SSHClient

        Raises:
            AuthError: If no credential is usable or all are rejected
            TransportError: If the host cannot be reached or is not trusted
        """
        agent = open_agent()
        try:
            return self._connect(gather_credentials(self.config.key_candidates, agent))
        finally:
            if agent is not None:
                agent.close()

    def _connect(self, credentials: List[Credential]) -> SSHClient:
        cfg = self.config
        if not credentials:
            raise AuthError(
                f"no auth methods available: {AGENT_SOCKET_ENV} not set and no "
                f"unprotected key found at {cfg.key_candidates}"
            )

        sock = self._dial()
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=cfg.connect_timeout)
            verify_host_key(
                cfg.trust_policy,
                cfg.host,
                cfg.port,
                transport.get_remote_server_key(),
                fingerprint=cfg.host_fingerprint,
                known_hosts=cfg.known_hosts,
            )
            self._authenticate(transport, credentials)
        except (TransportError, AuthError):
            transport.close()
            raise
        except _TRANSPORT_ERRORS as exc:
            transport.close()
            raise TransportError(f"SSH handshake with {cfg.host}:{cfg.port} failed: {exc}") from exc

        transport.set_keepalive(KEEPALIVE_INTERVAL)
        logger.debug(f"Authenticated to {cfg.user}@{cfg.host}:{cfg.port}")
        return SSHClient(cfg.host, cfg.user, transport, session_timeout=cfg.connect_timeout)

    def _authenticate(self, transport: paramiko.Transport, credentials: List[Credential]) -> None:
        user = self.config.user
        for credential in credentials:
            try:
                transport.auth_publickey(user, credential.key)
            except paramiko.AuthenticationException as exc:
                logger.debug(f"Key {credential.source} rejected for {user}: {exc}")
                continue
            if transport.is_authenticated():
                logger.debug(f"Authenticated with {credential.source}")
                return
        raise AuthError(
            f"all {len(credentials)} credential(s) rejected for {user}@{self.config.host}"
        )

    def reconnect(self, max_wait: float) -> SSHClient:
        """Wait for the SSH port to resurface, then open a fresh channel.

        Args:
            max_wait: Maximum seconds to wait for the port

        Returns:
            Connected SSHClient

        Raises:
            ReadinessTimeout: If the port does not come back within max_wait
            AuthError: If authentication fails after the port is back
            TransportError: If the channel cannot be established
        """
        cfg = self.config
        logger.info(f"Waiting for SSH on {cfg.host}:{cfg.port} (up to {max_wait:.0f}s)...")
        poll_until_deadline(
            lambda: port_reachable(cfg.host, cfg.port),
            timeout=max_wait,
            interval=REACHABILITY_INTERVAL,
            description=f"SSH on {cfg.host}:{cfg.port}",
            sleep=self._sleep,
            clock=self._clock,
        )
        return self.connect()

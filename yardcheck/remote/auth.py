#!/usr/bin/env python3
"""Credential discovery and host identity checks for the SSH channel.

Credentials come from the SSH agent first (which also covers
passphrase-protected keys), then from unprotected private key files.
"""

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import paramiko

from yardcheck.config.config import TrustPolicy
from yardcheck.remote.base import TransportError


logger = logging.getLogger(__name__)

# Constants
AGENT_SOCKET_ENV = "SSH_AUTH_SOCK"
DEFAULT_KNOWN_HOSTS = "~/.ssh/known_hosts"


@dataclass
class Credential:
    """A private key usable for public key authentication.

    Attributes:
        source: Human readable origin ("agent" or a file path)
        key: Key object (agent keys sign through the agent)
    """

    source: str
    key: paramiko.PKey


def open_agent() -> Optional[paramiko.Agent]:
    """Connect to the SSH agent advertised in the environment.

    The caller owns the returned agent and must close it once
    authentication is over; agent keys sign through its connection.

    Returns:
        Connected agent, or None if no agent is available
    """
    if not os.environ.get(AGENT_SOCKET_ENV):
        logger.debug(f"{AGENT_SOCKET_ENV} not set, skipping SSH agent")
        return None

    try:
        return paramiko.Agent()
    except (paramiko.SSHException, OSError) as exc:
        logger.debug(f"SSH agent unavailable: {exc}")
        return None


def agent_credentials(agent: Optional[paramiko.Agent]) -> List[Credential]:
    """Collect keys offered by an open SSH agent.

    Args:
        agent: Agent returned by open_agent (None yields no credentials)

    Returns:
        List of agent credentials
    """
    if agent is None:
        return []
    keys = agent.get_keys()
    logger.debug(f"SSH agent offers {len(keys)} key(s)")
    return [Credential(f"agent:{key.get_name()}", key) for key in keys]


def file_credentials(paths: Sequence[str]) -> List[Credential]:
    """Parse unprotected private key files.

    Missing, unreadable, encrypted and malformed files are skipped without
    error; encrypted keys are expected to be served by the agent.

    Args:
        paths: Candidate key file paths, tried in order

    Returns:
        List of parsed credentials
    """
    credentials = []
    for raw_path in paths:
        path = Path(raw_path).expanduser()
        try:
            key = paramiko.PKey.from_path(path)
        except (paramiko.PasswordRequiredException, TypeError):
            logger.debug(f"Skipping passphrase-protected key {path}")
            continue
        except (paramiko.SSHException, OSError, ValueError) as exc:
            logger.debug(f"Skipping key {path}: {exc}")
            continue
        credentials.append(Credential(str(path), key))
    return credentials


def gather_credentials(
    key_paths: Sequence[str], agent: Optional[paramiko.Agent] = None
) -> List[Credential]:
    """Return every usable credential, agent keys first."""
    return agent_credentials(agent) + file_credentials(key_paths)


def sha256_fingerprint(key: paramiko.PKey) -> str:
    """Format a host key fingerprint the way ``ssh-keygen -l`` does."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _known_hosts_name(host: str, port: int) -> str:
    return host if port == 22 else f"[{host}]:{port}"


def verify_host_key(
    policy: TrustPolicy,
    host: str,
    port: int,
    key: paramiko.PKey,
    fingerprint: Optional[str] = None,
    known_hosts: Optional[str] = None,
) -> None:
    """Apply the configured trust policy to the server's host key.

    Args:
        policy: Trust policy to enforce
        host: Host name as dialed
        port: SSH port as dialed
        key: Host key presented by the server
        fingerprint: Expected SHA256 fingerprint (pin policy)
        known_hosts: known_hosts file (strict policy)

    Raises:
        TransportError: If the key is not trusted under the policy
    """
    actual = sha256_fingerprint(key)

    if policy is TrustPolicy.NONE:
        logger.warning(f"Host key verification disabled; {host} presented {actual}")
        return

    if policy is TrustPolicy.PIN:
        if not fingerprint or actual != fingerprint.strip():
            raise TransportError(
                f"host key for {host} is {actual}, expected pinned {fingerprint}"
            )
        logger.debug(f"Host key for {host} matches pinned fingerprint")
        return

    path = Path(known_hosts or DEFAULT_KNOWN_HOSTS).expanduser()
    host_keys = paramiko.HostKeys()
    try:
        host_keys.load(str(path))
    except (OSError, paramiko.SSHException) as exc:
        raise TransportError(f"cannot read known_hosts {path}: {exc}") from exc

    name = _known_hosts_name(host, port)
    if host_keys.lookup(name) is None:
        raise TransportError(f"{name} not found in {path} (trust policy: strict)")
    if not host_keys.check(name, key):
        raise TransportError(f"host key mismatch for {name} ({actual}) in {path}")
    logger.debug(f"Host key for {name} verified against {path}")

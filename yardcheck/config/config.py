#!/usr/bin/env python3
"""Configuration classes for the verification harness.

This module contains the instance descriptors and the run configuration
dataclasses used throughout yardcheck.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union


# Constants
DEFAULT_SSH_PORT = 22
DEFAULT_CONNECT_TIMEOUT = 15
DEFAULT_OVERALL_TIMEOUT = 20 * 60
DEFAULT_ARTIFACT = "dist/dockyard.sh"
DEFAULT_TOOL_PATH = "~/dockyard.sh"
DEFAULT_KEY_FILES = ["~/.ssh/id_ed25519", "~/.ssh/id_rsa"]

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


class ConfigError(ValueError):
    """Raised when configuration values are missing or invalid."""


class TrustPolicy(Enum):
    """Host identity verification policy for the SSH channel."""

    STRICT = "strict"
    PIN = "pin"
    NONE = "none"


@dataclass(frozen=True)
class Instance:
    """One namespaced tenant on the target host.

    Attributes:
        label: Short label used in output ("A", "B", ...)
        prefix: Namespace prefix handed to the provisioning tool ("dy1_")
        root: Instance filesystem root ("/dy1")
        env_file: Remote environment file path ("~/dy1.env")
        socket: Control socket of the instance's container engine
    """

    label: str
    prefix: str
    root: str
    env_file: str
    socket: str

    @property
    def service(self) -> str:
        """Name of the instance's systemd unit."""
        return f"{self.prefix}docker"

    @property
    def bridge(self) -> str:
        """Name of the instance's network bridge."""
        return f"{self.prefix}docker0"

    @property
    def account(self) -> str:
        """System user and group owning the instance."""
        return f"{self.prefix}docker"

    @classmethod
    def from_root(cls, label: str, prefix: str, root: str, env_file: str) -> "Instance":
        """Build an instance whose control socket lives under its root."""
        return cls(label, prefix, root, env_file, f"{root.rstrip('/')}/run/docker.sock")


DEFAULT_INSTANCES = (
    Instance("A", "dy1_", "/dy1", "~/dy1.env", "/dy1/run/docker.sock"),
    Instance("B", "dy2_", "/dy2", "~/dy2.env", "/dy2/run/docker.sock"),
    Instance("C", "dy3_", "/dy3", "~/dy3.env", "/dy3/run/docker.sock"),
)

NESTED_INSTANCE = Instance.from_root(
    "N", "dyn_", "/tmp/dockyard-nested/level1/level2/dockyard", "~/dyn.env"
)


@dataclass
class HarnessConfig:
    """Configuration for one verification run.

    Attributes:
        host: Target host name or IP address
        user: SSH username
        key_path: Explicit private key path (None for the default list)
        port: SSH port
        connect_timeout: TCP/SSH handshake timeout in seconds
        overall_timeout: Advisory run budget in seconds
        artifact: Local path of the provisioning tool to upload
        tool_path: Remote path of the uploaded provisioning tool
        trust_policy: Host identity verification policy
        host_fingerprint: Expected SHA256 host key fingerprint for the pin policy
        known_hosts: known_hosts file consulted by the strict policy
        reboot_wait: Maximum seconds to wait for SSH after reboot
        reboot_settle: Seconds to wait after issuing the reboot
        post_boot_settle: Seconds to wait after SSH is reachable again
        create_stagger: Seconds between concurrent create starts
        db_path: SQLite run history path (None disables history)
        instances: Ordered tenant set under test
    """

    host: str
    user: str
    key_path: Optional[str] = None
    port: int = DEFAULT_SSH_PORT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    overall_timeout: float = DEFAULT_OVERALL_TIMEOUT
    artifact: str = DEFAULT_ARTIFACT
    tool_path: str = DEFAULT_TOOL_PATH
    trust_policy: TrustPolicy = TrustPolicy.NONE
    host_fingerprint: Optional[str] = None
    known_hosts: Optional[str] = None
    reboot_wait: float = 240
    reboot_settle: float = 15
    post_boot_settle: float = 10
    create_stagger: float = 3
    db_path: Optional[str] = None
    instances: List[Instance] = field(default_factory=lambda: list(DEFAULT_INSTANCES))

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ConfigError: If the configuration cannot be used for a run
        """
        if not self.host:
            raise ConfigError("target host is required")
        if not self.user:
            raise ConfigError("remote user is required")
        if len(self.instances) < 2:
            raise ConfigError("at least two instances are required for isolation checks")
        labels = [inst.label for inst in self.instances]
        if len(set(labels)) != len(labels):
            raise ConfigError(f"instance labels must be unique: {labels}")
        if self.trust_policy is TrustPolicy.PIN and not self.host_fingerprint:
            raise ConfigError("trust policy 'pin' requires a host fingerprint")

    @property
    def key_candidates(self) -> List[str]:
        """Private key files to try, in order."""
        if self.key_path:
            return [self.key_path]
        return list(DEFAULT_KEY_FILES)


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration such as ``90``, ``30s``, ``20m`` or ``1.5h`` into seconds.

    Raises:
        ConfigError: If the value is not a recognised duration
    """
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


def parse_trust_policy(value: Union[str, TrustPolicy]) -> TrustPolicy:
    """Convert a policy name into a TrustPolicy.

    Raises:
        ConfigError: If the name is not a known policy
    """
    if isinstance(value, TrustPolicy):
        return value
    try:
        return TrustPolicy(value.lower())
    except ValueError as exc:
        valid = ", ".join(p.value for p in TrustPolicy)
        raise ConfigError(f"unknown trust policy '{value}' (valid: {valid})") from exc

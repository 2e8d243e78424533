#!/usr/bin/env python3
"""Shell command lines for the provisioning tool and the container engine.

Nothing here talks to the host; these helpers only shape the strings that
the phases send over the channel.
"""

from typing import List

from yardcheck.config.config import Instance


# Constants
ENV_VAR = "DOCKYARD_ENV"
ROOT_VAR = "DOCKYARD_ROOT"
PREFIX_VAR = "DOCKYARD_DOCKER_PREFIX"
WORKLOAD_IMAGE = "alpine"
NESTED_ENGINE_IMAGE = "docker:26.1-dind"
PING_TARGET = "1.1.1.1"
DNS_NAME = "google.com"
PACKET_LOSS_MARKER = "100% packet loss"
DNS_ANSWER_MARKER = "Address"

_QUIET = "2>/dev/null; true"


def gen_env(inst: Instance, tool: str) -> str:
    """Generate a fresh environment file for ``inst``."""
    return (
        f"rm -f {inst.env_file} && {ENV_VAR}={inst.env_file} {ROOT_VAR}={inst.root} "
        f"{PREFIX_VAR}={inst.prefix} {tool} gen-env"
    )


def create(inst: Instance, tool: str) -> str:
    """Provision ``inst`` from its environment file (needs root)."""
    return f"{ENV_VAR}={inst.env_file} sudo -E {tool} create"


def destroy(inst: Instance, tool: str) -> str:
    """Tear down ``inst``; the tool treats a missing instance as success."""
    return f"{ENV_VAR}={inst.env_file} sudo -E {tool} destroy --yes"


def docker(inst: Instance, args: str) -> str:
    """Run a container engine client command against the instance's socket."""
    return f"sudo DOCKER_HOST=unix://{inst.socket} docker {args}"


def run_workload(inst: Instance, args: str) -> str:
    """Run a throwaway container on ``inst`` with ``args`` as its command.

    Args:
        inst: Instance whose engine runs the container
        args: Command line passed to the workload image

    Returns:
        Shell command line
    """
    return docker(inst, f"run --rm {WORKLOAD_IMAGE} {args}")


def start_workload(inst: Instance, name: str, image: str, args: str = "") -> str:
    """Start a detached, named container on ``inst``."""
    return docker(inst, f"run -d --name {name} {image} {args}".rstrip())


def remove_workload(inst: Instance, name: str) -> str:
    """Force-remove a named container, silently if it does not exist."""
    return docker(inst, f"rm -f {name} 2>/dev/null")


def exec_in(inst: Instance, name: str, args: str) -> str:
    """Execute ``args`` inside the running container ``name``."""
    return docker(inst, f"exec {name} {args}")


def list_workload_names(inst: Instance) -> str:
    """List the names of every container known to the instance's engine."""
    return docker(inst, "ps -a --format '{{.Names}}'")


def service_active(inst: Instance) -> str:
    """Exit 0 only while the instance's systemd unit is active."""
    return f"systemctl is-active {inst.service}"


def ping_lost(output: str) -> bool:
    """True if ping output reports total packet loss."""
    return PACKET_LOSS_MARKER in output


def dir_exists(path: str) -> str:
    """Print ``exists`` or ``gone`` for a remote directory."""
    return f"[ -d {path} ] && echo exists || echo gone"


def iptables_rules(prefix: str) -> str:
    """Print the firewall rules mentioning ``prefix`` (never fails)."""
    return f"iptables-save | grep -F {prefix} || true"


def cleanup_instance(inst: Instance, tool: str) -> List[str]:
    """Commands that remove every trace of ``inst``.

    Each command ends in ``true`` so a missing target never fails it.
    """
    return [
        f"[ -f {inst.env_file} ] && {destroy(inst, tool)} {_QUIET}",
        f"sudo rm -rf /run/{inst.prefix}docker {_QUIET}",
        f"sudo rm -rf {inst.root} {_QUIET}",
        f"sudo ip link delete {inst.bridge} {_QUIET}",
        f"sudo systemctl stop {inst.service} 2>/dev/null; "
        f"sudo systemctl disable {inst.service} {_QUIET}",
        f"sudo rm -f /etc/systemd/system/{inst.service}.service {_QUIET}",
        f"rm -f {inst.env_file} {_QUIET}",
    ]


def cleanup_nested(inst: Instance, tool: str, scratch_dir: str) -> List[str]:
    """Commands that remove the deeply nested root test instance."""
    return [
        f"[ -f {inst.env_file} ] && {destroy(inst, tool)} {_QUIET}",
        f"sudo rm -rf {scratch_dir} {_QUIET}",
        f"sudo systemctl stop {inst.service} 2>/dev/null; "
        f"sudo systemctl disable {inst.service} {_QUIET}",
        f"sudo rm -f /etc/systemd/system/{inst.service}.service {_QUIET}",
        f"rm -f {inst.env_file} {_QUIET}",
    ]


def daemon_reload() -> str:
    """Make systemd forget unit files removed by a cleanup."""
    return f"sudo systemctl daemon-reload {_QUIET}"

#!/usr/bin/env python3
"""Cross-instance isolation check.

Starts one uniquely named workload per instance and verifies that no other
instance's container engine can see it.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

from yardcheck.config.config import Instance
from yardcheck.core import commands
from yardcheck.remote.base import RemoteClient


logger = logging.getLogger(__name__)

# Constants
ISOLATION_SLEEP = 60


@dataclass(frozen=True)
class _Workload:
    inst: Instance
    name: str


def workload_name(inst: Instance) -> str:
    """Name of the isolation workload started on ``inst``."""
    return f"iso-{inst.label.lower()}-check"


def _start_workloads(client: RemoteClient, instances: Sequence[Instance]) -> List[_Workload]:
    started = []
    for inst in instances:
        name = workload_name(inst)
        client.run_command(commands.remove_workload(inst, name))
        result = client.run_command(
            commands.start_workload(inst, name, commands.WORKLOAD_IMAGE, f"sleep {ISOLATION_SLEEP}")
        )
        if result.ok:
            started.append(_Workload(inst, name))
        else:
            logger.warning(f"  [{inst.label}] Could not start {name}: {result.stderr.strip()}")
    return started


def _remove_workloads(client: RemoteClient, workloads: Sequence[_Workload]) -> None:
    for workload in workloads:
        try:
            client.run_command(commands.remove_workload(workload.inst, workload.name))
        except Exception as exc:
            logger.debug(f"  [{workload.inst.label}] Cleanup of {workload.name} failed: {exc}")


def check_isolation(client: RemoteClient, instances: Sequence[Instance]) -> List[str]:
    """Verify that workloads of one instance are invisible to every other.

    Instances whose workload fails to start are still used as viewers.
    Every started workload is removed afterwards, whatever the outcome.

    Args:
        client: Remote client
        instances: Instances to cross-check

    Returns:
        One message per violation (empty when isolated)
    """
    workloads = _start_workloads(client, instances)
    violations = []
    try:
        for source in workloads:
            for viewer in instances:
                if viewer.label == source.inst.label:
                    continue
                listing = client.run_command(commands.list_workload_names(viewer))
                if source.name in listing.stdout:
                    violations.append(
                        f"container {source.name} (from {source.inst.label}) visible in "
                        f"{viewer.label}'s docker ps — daemon not isolated"
                    )
    finally:
        _remove_workloads(client, workloads)
    return violations

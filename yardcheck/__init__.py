"""yardcheck - End-to-end verification harness for dockyard hosts.

Drives a remote host over SSH through a fixed sequence of provisioning,
networking, isolation, reboot and teardown checks.
"""

__version__ = "0.1.0"

from yardcheck.config import HarnessConfig, Instance, TrustPolicy
from yardcheck.core import PhaseSequencer, ResultRecorder, RunContext, build_phase_table
from yardcheck.remote import ConnectionManager, SSHClient


__all__ = [
    "ConnectionManager",
    "HarnessConfig",
    "Instance",
    "PhaseSequencer",
    "ResultRecorder",
    "RunContext",
    "SSHClient",
    "TrustPolicy",
    "build_phase_table",
]

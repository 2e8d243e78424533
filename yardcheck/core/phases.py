#!/usr/bin/env python3
"""Verification phases.

Each phase is a callable taking the run context. A phase passes by returning
and fails by raising PhaseFailure (or any other exception, which the
sequencer normalizes). The phase table is built from the instance set, so
its length is the declared phase count.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from yardcheck.config.config import NESTED_INSTANCE, HarnessConfig, Instance
from yardcheck.core import commands
from yardcheck.core.dispatcher import Probe, all_ok, dispatch, failure_summary
from yardcheck.core.isolation import check_isolation
from yardcheck.core.poller import (
    NESTED_ENGINE_ATTEMPTS,
    NESTED_ENGINE_INTERVAL,
    ReadinessPoller,
    ReadinessTimeout,
)
from yardcheck.remote.base import CommandResult, RemoteClient


if TYPE_CHECKING:
    from yardcheck.remote.ssh import ConnectionManager


logger = logging.getLogger(__name__)

# Constants
NESTED_SCRATCH_DIR = "/tmp/dockyard-nested"
LOAD_WORKLOAD = "load-test"


class PhaseFailure(Exception):
    """A phase's verification did not hold."""


@dataclass
class RunContext:
    """Mutable state shared by the phases of one run.

    Attributes:
        config: Run configuration
        client: Current remote client (replaced after the reboot)
        connections: Connection manager used to reconnect after the reboot
        surviving: Instances that have not been torn down yet
        sleep: Sleep function for settle times, stagger and polling
    """

    config: HarnessConfig
    client: RemoteClient
    connections: Optional["ConnectionManager"] = None
    surviving: List[Instance] = field(default_factory=list)
    sleep: Callable[[float], None] = time.sleep
    _deferred: List[Tuple[str, Callable[[], None]]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.surviving:
            self.surviving = list(self.config.instances)

    @property
    def instances(self) -> List[Instance]:
        return self.config.instances

    @property
    def tool(self) -> str:
        return self.config.tool_path

    def run(self, command: str) -> CommandResult:
        return self.client.run_command(command)

    def poller(self) -> ReadinessPoller:
        return ReadinessPoller(self.client, sleep=self.sleep)

    def defer(self, name: str, action: Callable[[], None]) -> None:
        """Register a cleanup to run at the next cleanup point or at the end."""
        self._deferred.append((name, action))

    def run_deferred(self) -> None:
        """Run and forget every pending cleanup, swallowing their errors."""
        while self._deferred:
            name, action = self._deferred.pop(0)
            logger.debug(f"Running deferred cleanup: {name}")
            try:
                action()
            except Exception as exc:
                logger.warning(f"Cleanup '{name}' failed: {exc}")


@dataclass(frozen=True)
class Phase:
    """One numbered verification step.

    Attributes:
        name: Name printed in the result line
        run: Phase body
        cleanup_point: Run deferred cleanups after this phase, pass or fail
    """

    name: str
    run: Callable[[RunContext], None]
    cleanup_point: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_all(
    ctx: RunContext, instances: Sequence[Instance], probe: Probe, stagger: float = 0.0
) -> None:
    results = dispatch(ctx.client, instances, probe, stagger=stagger, sleep=ctx.sleep)
    if not all_ok(results):
        raise PhaseFailure(failure_summary(results))


def _labels(instances: Sequence[Instance]) -> str:
    return "+".join(inst.label for inst in instances)


def nested_engine_name(inst: Instance, post_reboot: bool = False) -> str:
    """Name of the docker-in-docker workload started on ``inst``."""
    return f"dind-post-{inst.label.lower()}" if post_reboot else f"dind-{inst.label.lower()}"


def preflight_cleanup(ctx: RunContext) -> None:
    """Remove leftovers of any previous run; never fails."""
    cmds: List[str] = []
    for inst in ctx.instances:
        cmds.extend(commands.cleanup_instance(inst, ctx.tool))
    cmds.extend(commands.cleanup_nested(NESTED_INSTANCE, ctx.tool, NESTED_SCRATCH_DIR))
    cmds.append(commands.daemon_reload())
    for cmd in cmds:
        try:
            ctx.run(cmd)
        except Exception as exc:
            logger.warning(f"Pre-flight cleanup command failed: {exc}")


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


def probe_service_active(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
    """Check that the instance's container engine unit is active."""
    result = client.run_command(commands.service_active(inst))
    return result.ok, "" if result.ok else f"{inst.service} not active"


def probe_workload_echo(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
    """Run a container that echoes ``hello`` and look for the greeting."""
    result = client.run_command(commands.run_workload(inst, "echo hello"))
    if result.ok and "hello" in result.stdout:
        return True, ""
    return False, result.stderr.strip() or f"exit {result.exit_code}"


def probe_outbound_ping(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
    """Ping a public address from a container on ``inst``.

    Any reply counts; only total packet loss fails.
    """
    result = client.run_command(commands.run_workload(inst, f"ping -c3 {commands.PING_TARGET}"))
    if result.ok and not commands.ping_lost(result.stdout):
        return True, ""
    return False, (result.stdout + result.stderr).strip()


def probe_dns(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
    result = client.run_command(commands.run_workload(inst, f"nslookup {commands.DNS_NAME}"))
    if result.ok and commands.DNS_ANSWER_MARKER in result.stdout:
        return True, ""
    return False, result.stderr.strip() or f"no {commands.DNS_ANSWER_MARKER} in answer"


def probe_socket_permissions(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
    """Check the control socket is closed to others and owned by the instance group.

    Args:
        client: Remote client
        inst: Instance whose socket is inspected

    Returns:
        Tuple of (ok, message); the message names the offending mode or group
    """
    result = client.run_command(f"stat -c '%a %G' {inst.socket}")
    if not result.ok:
        return False, f"stat failed: {result.stderr.strip()}"
    parts = result.stdout.split()
    if len(parts) != 2:
        return False, f"unexpected stat output: {result.stdout.strip()}"
    mode, group = parts
    if not mode.endswith("0"):
        return False, f"socket {inst.socket} is world-accessible (mode {mode})"
    if group != inst.account:
        return False, f"socket {inst.socket} group is {group!r}, want {inst.account!r}"
    return True, ""


def _start_nested_engine(
    client: RemoteClient, inst: Instance, name: str, sleep: Callable[[float], None]
) -> Tuple[bool, str]:
    """Start a docker-in-docker workload and wait for its inner daemon.

    A stale workload of the same name is removed first.

    Args:
        client: Remote client
        inst: Instance whose engine hosts the workload
        name: Workload name
        sleep: Sleep function used between readiness attempts

    Returns:
        Tuple of (ok, message)
    """
    client.run_command(commands.remove_workload(inst, name))
    result = client.run_command(
        commands.start_workload(inst, name, commands.NESTED_ENGINE_IMAGE)
    )
    if not result.ok:
        return False, f"start: {result.stderr.strip()}"
    try:
        ReadinessPoller(client, sleep=sleep).wait_for_command(
            commands.exec_in(inst, name, "docker info"),
            description=f"inner dockerd in {name}",
        )
    except ReadinessTimeout:
        limit = NESTED_ENGINE_ATTEMPTS * NESTED_ENGINE_INTERVAL
        return False, f"inner dockerd did not start within {limit:.0f}s"
    return True, ""


def _nested_echo(client: RemoteClient, inst: Instance, name: str) -> Tuple[bool, str]:
    result = client.run_command(
        commands.exec_in(inst, name, f"docker run --rm {commands.WORKLOAD_IMAGE} echo inner-hello")
    )
    if result.ok and "inner-hello" in result.stdout:
        return True, ""
    return False, result.stderr.strip() or f"exit {result.exit_code}"


def _nested_ping(client: RemoteClient, inst: Instance, name: str) -> Tuple[bool, str]:
    result = client.run_command(
        commands.exec_in(
            inst, name, f"docker run --rm {commands.WORKLOAD_IMAGE} ping -c3 {commands.PING_TARGET}"
        )
    )
    if result.ok and not commands.ping_lost(result.stdout):
        return True, ""
    return False, (result.stdout + result.stderr).strip()


# ---------------------------------------------------------------------------
# Phase bodies
# ---------------------------------------------------------------------------


def upload_artifact(ctx: RunContext) -> None:
    """Copy the provisioning tool to the host.

    Raises:
        UploadError: If the artifact cannot be read or written
    """
    ctx.client.copy_file(ctx.config.artifact, ctx.config.tool_path)


def gen_env_phase(inst: Instance) -> Callable[[RunContext], None]:
    """Return a phase body generating the environment file of ``inst``."""
    def run(ctx: RunContext) -> None:
        result = ctx.run(commands.gen_env(inst, ctx.tool))
        if not result.ok:
            raise PhaseFailure(result.stderr.strip() or f"gen-env exited {result.exit_code}")

    return run


def create_all(ctx: RunContext) -> None:
    """Create every instance concurrently, staggering the starts.

    Raises:
        PhaseFailure: If any create command fails
    """
    logger.info("Creating all instances concurrently (this takes a while)...")

    def probe(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
        result = client.run_command(commands.create(inst, ctx.tool))
        return result.ok, result.stderr.strip()

    _require_all(ctx, ctx.instances, probe, stagger=ctx.config.create_stagger)


def services_active(ctx: RunContext) -> None:
    _require_all(ctx, ctx.surviving, probe_service_active)


def workload_run(ctx: RunContext) -> None:
    _require_all(ctx, ctx.surviving, probe_workload_echo)


def outbound_ping(ctx: RunContext) -> None:
    _require_all(ctx, ctx.surviving, probe_outbound_ping)


def dns_resolution(ctx: RunContext) -> None:
    _require_all(ctx, ctx.surviving, probe_dns)


def nested_engine_start(ctx: RunContext) -> None:
    """Start one docker-in-docker workload per instance.

    Removal of the workloads is deferred to the next cleanup point, so the
    following phases can use them.
    """
    instances = list(ctx.instances)

    def remove_nested() -> None:
        for inst in instances:
            ctx.run(commands.remove_workload(inst, nested_engine_name(inst)))

    ctx.defer("remove nested engine workloads", remove_nested)
    _require_all(
        ctx,
        instances,
        lambda client, inst: _start_nested_engine(client, inst, nested_engine_name(inst), ctx.sleep),
    )


def nested_inner_workload(ctx: RunContext) -> None:
    _require_all(
        ctx, ctx.instances, lambda client, inst: _nested_echo(client, inst, nested_engine_name(inst))
    )


def nested_inner_networking(ctx: RunContext) -> None:
    _require_all(
        ctx, ctx.instances, lambda client, inst: _nested_ping(client, inst, nested_engine_name(inst))
    )


def isolation(ctx: RunContext) -> None:
    """Fail if any instance's engine lists another instance's container."""
    violations = check_isolation(ctx.client, ctx.instances)
    if violations:
        raise PhaseFailure(" | ".join(violations))


def restart_cycle(ctx: RunContext) -> None:
    """Stop and start the first instance's unit and run a container afterwards.

    Raises:
        PhaseFailure: If the unit survives the stop or the engine does not
            come back after the start
    """
    inst = ctx.instances[0]
    result = ctx.run(f"sudo systemctl stop {inst.service}")
    if not result.ok:
        raise PhaseFailure(f"stop failed: {result.stderr.strip()}")
    if ctx.run(commands.service_active(inst)).ok:
        raise PhaseFailure("service still active after stop")
    result = ctx.run(f"sudo systemctl start {inst.service}")
    if not result.ok:
        raise PhaseFailure(f"start failed: {result.stderr.strip()}")
    result = ctx.run(commands.run_workload(inst, "echo cycled"))
    if not result.ok or "cycled" not in result.stdout:
        raise PhaseFailure(f"container after restart: {result.stderr.strip()}")


def socket_permissions(ctx: RunContext) -> None:
    _require_all(ctx, ctx.instances, probe_socket_permissions)


def destroy_under_load(ctx: RunContext) -> None:
    """Destroy the first instance while a long-running container is up."""
    inst = ctx.instances[0]
    ctx.run(
        commands.start_workload(inst, LOAD_WORKLOAD, commands.WORKLOAD_IMAGE, "sleep 300")
        + " 2>/dev/null"
    )
    result = ctx.run(commands.destroy(inst, ctx.tool))
    ctx.surviving = [i for i in ctx.surviving if i.label != inst.label]
    if not result.ok:
        raise PhaseFailure(result.stderr.strip() or f"destroy exited {result.exit_code}")


def destroy_again(ctx: RunContext) -> None:
    result = ctx.run(commands.destroy(ctx.instances[0], ctx.tool))
    if not result.ok:
        raise PhaseFailure(result.stderr.strip() or f"destroy exited {result.exit_code}")


def _residual_state(ctx: RunContext, inst: Instance, full: bool) -> List[str]:
    """Describe what is left of ``inst`` on the host.

    Args:
        ctx: Run context
        inst: Instance that should be gone
        full: Also check data directories and the system account

    Returns:
        One message per leftover (empty when clean)
    """
    problems = []
    if ctx.run(commands.service_active(inst)).ok:
        problems.append("service still active")
    if ctx.run(f"ip link show {inst.bridge}").ok:
        problems.append("bridge still exists")
    if inst.prefix in ctx.run(commands.iptables_rules(inst.prefix)).stdout:
        problems.append("residual iptables rules")
    if not full:
        return problems

    if ctx.run(commands.dir_exists(inst.root)).stdout.strip() == "exists":
        problems.append(f"{inst.root} still exists")
    runtime_dir = f"{inst.root}/run/sysbox"
    if ctx.run(commands.dir_exists(runtime_dir)).stdout.strip() == "exists":
        problems.append(f"{runtime_dir} still exists")
    if ctx.run(f"getent passwd {inst.account}").ok:
        problems.append(f"system user {inst.account} still exists")
    if ctx.run(f"getent group {inst.account}").ok:
        problems.append(f"system group {inst.account} still exists")
    return problems


def first_instance_cleaned(ctx: RunContext) -> None:
    problems = _residual_state(ctx, ctx.instances[0], full=False)
    if problems:
        raise PhaseFailure(", ".join(problems))


def reboot_host(ctx: RunContext) -> None:
    """Reboot the host and replace the client with a fresh channel.

    Raises:
        PhaseFailure: If no connection manager is available or the new
            channel does not answer commands
        ReadinessTimeout: If SSH does not come back within the reboot wait
    """
    if ctx.connections is None:
        raise PhaseFailure("no connection manager available to reconnect")
    cfg = ctx.config

    logger.info("Rebooting host...")
    ctx.run("sudo reboot")
    ctx.client.close()
    ctx.sleep(cfg.reboot_settle)

    ctx.client = ctx.connections.reconnect(cfg.reboot_wait)
    ctx.sleep(cfg.post_boot_settle)
    if not ctx.client.is_alive():
        raise PhaseFailure("host does not answer commands after reconnect")


def post_reboot_nested_engine(ctx: RunContext) -> None:
    """Run the whole docker-in-docker check on each survivor after the reboot.

    Each workload is removed again whatever the outcome.
    """
    def probe(client: RemoteClient, inst: Instance) -> Tuple[bool, str]:
        name = nested_engine_name(inst, post_reboot=True)
        try:
            ok, message = _start_nested_engine(client, inst, name, ctx.sleep)
            if not ok:
                return ok, message
            ok, message = _nested_echo(client, inst, name)
            if not ok:
                return False, f"inner container: {message}"
            ok, message = _nested_ping(client, inst, name)
            if not ok:
                return False, f"inner networking: {message}"
            return True, ""
        finally:
            client.run_command(commands.remove_workload(inst, name))

    _require_all(ctx, ctx.surviving, probe)


def destroy_phase(inst: Instance) -> Callable[[RunContext], None]:
    def run(ctx: RunContext) -> None:
        result = ctx.run(commands.destroy(inst, ctx.tool))
        ctx.surviving = [i for i in ctx.surviving if i.label != inst.label]
        if not result.ok:
            raise PhaseFailure(result.stderr.strip() or f"destroy exited {result.exit_code}")

    return run


def full_cleanup(ctx: RunContext) -> None:
    """Verify that no instance left anything behind, the first one included."""
    failures = []
    for inst in ctx.instances:
        failures.extend(f"{inst.label}: {p}" for p in _residual_state(ctx, inst, full=True))
    if failures:
        raise PhaseFailure(" | ".join(failures))


def nested_root_lifecycle(ctx: RunContext) -> None:
    """Take an instance rooted deep under a scratch directory through its lifecycle.

    The scratch instance is cleaned before and after, pass or fail.
    """
    inst = NESTED_INSTANCE
    cleanup = commands.cleanup_nested(inst, ctx.tool, NESTED_SCRATCH_DIR)
    for cmd in cleanup + [commands.daemon_reload()]:
        ctx.run(cmd)

    try:
        result = ctx.run(commands.gen_env(inst, ctx.tool))
        if not result.ok:
            raise PhaseFailure(f"gen-env: {result.stderr.strip()}")
        result = ctx.run(commands.create(inst, ctx.tool))
        if not result.ok:
            raise PhaseFailure(f"create: {result.stderr.strip()}")
        result = ctx.run(commands.run_workload(inst, "echo nested-ok"))
        if not result.ok or "nested-ok" not in result.stdout:
            raise PhaseFailure(f"container run: {result.stderr.strip()}")
        result = ctx.run(commands.destroy(inst, ctx.tool))
        if not result.ok:
            raise PhaseFailure(f"destroy: {result.stderr.strip()}")
        if ctx.run(commands.dir_exists(inst.root)).stdout.strip() == "exists":
            raise PhaseFailure(f"{inst.root} still exists after destroy")
    finally:
        for cmd in cleanup:
            ctx.run(cmd)


# ---------------------------------------------------------------------------
# Phase table
# ---------------------------------------------------------------------------


def build_phase_table(instances: Sequence[Instance]) -> List[Phase]:
    """Return the ordered phase list for ``instances``.

    The first instance is the one torn down under load and the rest are the
    survivors carried through the reboot.
    """
    first, survivors = instances[0], list(instances[1:])
    everyone, rest = _labels(instances), _labels(survivors)

    phases = [Phase("upload provisioning tool", upload_artifact)]
    phases += [
        Phase(f"gen-env {inst.label} ({inst.root} / {inst.prefix})", gen_env_phase(inst))
        for inst in instances
    ]
    phases += [
        Phase(f"create all instances ({everyone} concurrent)", create_all),
        Phase("all instances: per-instance docker services active", services_active),
        Phase("all instances: container run", workload_run),
        Phase("all instances: outbound ping", outbound_ping),
        Phase("all instances: DNS resolution", dns_resolution),
        Phase("all instances: DinD start", nested_engine_start),
        Phase("all instances: DinD inner container", nested_inner_workload),
        Phase("all instances: DinD inner networking", nested_inner_networking),
        Phase("multi-instance isolation (all pairs)", isolation, cleanup_point=True),
        Phase(f"{first.label}: stop/start cycle", restart_cycle),
        Phase("socket permissions (not world-accessible, group-owned)", socket_permissions),
        Phase(f"{first.label}: destroy under load", destroy_under_load),
        Phase(f"{first.label}: double destroy idempotency", destroy_again),
        Phase(f"{first.label}: fully cleaned up (service+bridge+iptables)", first_instance_cleaned),
        Phase(f"{rest}: still healthy after {first.label} destroy", outbound_ping),
        Phase("reboot", reboot_host),
        Phase(f"post-reboot: {rest} services active", services_active),
        Phase(f"post-reboot: {rest} container run", workload_run),
        Phase(f"post-reboot: {rest} outbound networking", outbound_ping),
        Phase(f"post-reboot: {rest} DinD", post_reboot_nested_engine),
    ]
    phases += [Phase(f"destroy {inst.label}", destroy_phase(inst)) for inst in survivors]
    phases += [
        Phase("full cleanup: no services, bridges, iptables, data dirs, or users", full_cleanup),
        Phase("nested root lifecycle (gen-env + create + container run + destroy)",
              nested_root_lifecycle),
    ]
    return phases

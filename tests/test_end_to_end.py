"""Full run of the phase table against a stateful fake host."""

import re
import threading
from typing import Dict, Optional, Set

import pytest

from tests.conftest import FakeClient, result
from yardcheck.config import DEFAULT_INSTANCES, NESTED_INSTANCE, HarnessConfig, Instance
from yardcheck.core.orchestrator import PhaseSequencer
from yardcheck.core.phases import RunContext
from yardcheck.core.recorder import ResultRecorder


class FakeHost(FakeClient):
    """Remote client that keeps track of what exists on the host.

    Instances become present on ``create`` and disappear on ``destroy``;
    services stop and start with systemctl and come back after a reboot
    for every instance still present. Each container engine only lists
    the containers it started itself.
    """

    def __init__(self) -> None:
        super().__init__()
        self.known = list(DEFAULT_INSTANCES) + [NESTED_INSTANCE]
        self.created: Set[str] = set()
        self.running: Set[str] = set()
        self.containers: Dict[str, Set[str]] = {inst.label: set() for inst in self.known}
        self.reboots = 0
        self._state = threading.Lock()

        self.on("dockyard.sh create", self._create)
        self.on("destroy --yes", self._destroy)
        self.on("systemctl stop", self._stop)
        self.on("systemctl start", self._start)
        self.on("systemctl is-active", self._is_active)
        self.on("ip link show", self._present(exit_code=1))
        self.on("getent ", self._present(exit_code=2))
        self.on("iptables-save", self._iptables)
        self.on("[ -d ", self._dir_exists)
        self.on("stat -c", lambda cmd: result(stdout=f"660 {self._instance(cmd).account}\n"))
        self.on("docker run --rm", self._run_workload)
        self.on("docker run -d --name", self._start_container)
        self.on("docker rm -f", self._remove_container)
        self.on("ps -a --format", self._list_containers)
        self.on("sudo reboot", self._reboot)

    def _instance(self, command: str) -> Optional[Instance]:
        for inst in self.known:
            if inst.prefix in command or inst.env_file in command or inst.root in command:
                return inst
        return None

    def _create(self, command):
        label = self._instance(command).label
        with self._state:
            self.created.add(label)
            self.running.add(label)
        return result()

    def _destroy(self, command):
        label = self._instance(command).label
        with self._state:
            self.created.discard(label)
            self.running.discard(label)
            self.containers[label].clear()
        return result()

    def _stop(self, command):
        with self._state:
            self.running.discard(self._instance(command).label)
        return result()

    def _start(self, command):
        label = self._instance(command).label
        with self._state:
            if label not in self.created:
                return result(stderr=f"Unit {label} not found.", exit_code=5)
            self.running.add(label)
        return result()

    def _is_active(self, command):
        if self._instance(command).label in self.running:
            return result(stdout="active\n")
        return result(stdout="inactive\n", exit_code=3)

    def _present(self, exit_code):
        def answer(command):
            if self._instance(command).label in self.created:
                return result(stdout="present\n")
            return result(exit_code=exit_code)

        return answer

    def _iptables(self, command):
        inst = self._instance(command)
        if inst.label in self.created:
            return result(stdout=f"-A FORWARD -i {inst.bridge} -j ACCEPT\n")
        return result()

    def _dir_exists(self, command):
        present = self._instance(command).label in self.created
        return result(stdout="exists\n" if present else "gone\n")

    def _engine_down(self, inst):
        return inst.label not in self.running

    def _run_workload(self, command):
        inst = self._instance(command)
        if self._engine_down(inst):
            return result(stderr="Cannot connect to the Docker daemon", exit_code=125)
        if "ping -c3" in command:
            return result(stdout="3 packets transmitted, 3 received, 0% packet loss\n")
        if "nslookup" in command:
            return result(stdout="Name:\tgoogle.com\nAddress: 142.250.74.46\n")
        match = re.search(r"echo (\S+)$", command)
        return result(stdout=f"{match.group(1)}\n") if match else result()

    def _start_container(self, command):
        inst = self._instance(command)
        if self._engine_down(inst):
            return result(stderr="Cannot connect to the Docker daemon", exit_code=125)
        name = re.search(r"--name (\S+)", command).group(1)
        with self._state:
            self.containers[inst.label].add(name)
        return result(stdout="f00dfeed\n")

    def _remove_container(self, command):
        inst = self._instance(command)
        name = re.search(r"rm -f (\S+)", command).group(1)
        with self._state:
            self.containers[inst.label].discard(name)
        return result()

    def _list_containers(self, command):
        with self._state:
            names = sorted(self.containers[self._instance(command).label])
        return result(stdout="".join(f"{name}\n" for name in names))

    def _reboot(self, command):
        with self._state:
            self.reboots += 1
            self.running = set(self.created)
            for names in self.containers.values():
                names.clear()
        return result(exit_code=-1, stderr="connection closed by remote host")


class _Connections:
    def __init__(self, host):
        self.host = host
        self.waits = []

    def reconnect(self, max_wait):
        self.waits.append(max_wait)
        return self.host


@pytest.fixture
def host():
    return FakeHost()


def test_all_phases_pass_on_healthy_host(host, clock):
    """Every phase passes against a host that behaves, stagger included."""
    config = HarnessConfig(host="lab-host", user="tester")
    connections = _Connections(host)
    ctx = RunContext(config=config, client=host, connections=connections, sleep=clock.sleep)
    lines = []
    sequencer = PhaseSequencer(ctx, ResultRecorder(echo=lines.append, clock=clock), clock=clock)

    assert sequencer.run() is True

    assert len(lines) == 28
    assert all(line.startswith("[PASS]") for line in lines), "\n".join(lines)
    assert lines[0].startswith("[PASS] 01 upload provisioning tool")
    assert lines[-1].startswith("[PASS] 28 nested root lifecycle")
    summary = sequencer.summary()
    assert (summary.passed, summary.skipped) == (28, 0)

    assert config.create_stagger == 3
    assert sorted(clock.sleeps[:2]) == [3, 6]
    assert clock.sleeps[2:] == [15, 10]
    assert connections.waits == [240]
    assert host.reboots == 1

    assert host.created == set()
    assert all(not names for names in host.containers.values())
    assert len(host.ran("ps -a --format")) == 6


def test_isolation_breach_stops_the_run(host, clock):
    """An engine listing another instance's container fails the isolation phase."""
    original = host._list_containers

    def leaky(command):
        listing = original(command)
        if "/dy2/" in command:
            return result(stdout=listing.stdout + "iso-a-check\n")
        return listing

    host.on("ps -a --format", leaky)
    config = HarnessConfig(host="lab-host", user="tester", create_stagger=0)
    ctx = RunContext(config=config, client=host, connections=_Connections(host), sleep=clock.sleep)
    lines = []
    sequencer = PhaseSequencer(ctx, ResultRecorder(echo=lines.append, clock=clock), clock=clock)

    assert sequencer.run() is False

    assert lines[-1].startswith("[FAIL] 13 multi-instance isolation (all pairs)")
    assert "iso-a-check (from A) visible in B's docker ps" in lines[-1]
    assert sequencer.summary().skipped == 15
    assert not host.ran("sudo reboot")
    assert all(not names for names in host.containers.values())

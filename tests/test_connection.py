"""Tests for establishing the SSH channel against a loopback server."""

import threading

import paramiko
import pytest

from tests.conftest import FakeClock
from tests.sshd import FLOOD_BYTES, FLOOD_COMMAND, LoopbackSSHServer, free_port
from yardcheck.config import HarnessConfig, TrustPolicy
from yardcheck.core.poller import ReadinessTimeout
from yardcheck.remote.auth import sha256_fingerprint
from yardcheck.remote.base import AuthError, TransportError
from yardcheck.remote.ssh import ConnectionManager


@pytest.fixture(scope="module")
def host_key():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="module")
def client_key():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(autouse=True)
def no_agent(monkeypatch):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)


@pytest.fixture
def key_file(tmp_path, client_key):
    path = tmp_path / "id_rsa"
    client_key.write_private_key_file(str(path))
    return str(path)


@pytest.fixture
def server(host_key, client_key):
    sshd = LoopbackSSHServer(host_key, client_key)
    yield sshd
    sshd.close()


def _config(port, key_file, **overrides):
    return HarnessConfig(
        host="127.0.0.1",
        user="tester",
        port=port,
        key_path=key_file,
        connect_timeout=5,
        **overrides,
    )


def test_connect_and_run_command(server, key_file):
    client = ConnectionManager(_config(server.port, key_file)).connect()
    try:
        result = client.run_command("echo hi")
        assert result.ok
        assert result.stdout == "hi\n"
        assert client.is_alive()

        missing = client.run_command("no-such-tool")
        assert missing.exit_code == 127
        assert "command not found" in missing.stderr
    finally:
        client.close()


def test_connect_with_pinned_host_key(server, key_file, host_key):
    config = _config(
        server.port,
        key_file,
        trust_policy=TrustPolicy.PIN,
        host_fingerprint=sha256_fingerprint(host_key),
    )

    client = ConnectionManager(config).connect()
    client.close()


def test_connect_rejects_unpinned_host_key(server, key_file):
    config = _config(
        server.port, key_file, trust_policy=TrustPolicy.PIN, host_fingerprint="SHA256:other"
    )

    with pytest.raises(TransportError, match="expected pinned"):
        ConnectionManager(config).connect()


def test_connect_with_rejected_key(host_key, client_key, key_file):
    other = paramiko.RSAKey.generate(2048)
    sshd = LoopbackSSHServer(host_key, other)
    try:
        with pytest.raises(AuthError, match="rejected"):
            ConnectionManager(_config(sshd.port, key_file)).connect()
    finally:
        sshd.close()


def test_connect_to_closed_port(key_file):
    with pytest.raises(TransportError, match="dial 127.0.0.1"):
        ConnectionManager(_config(free_port(), key_file)).connect()


def test_large_stderr_does_not_stall_session(server, key_file):
    client = ConnectionManager(_config(server.port, key_file)).connect()
    outcome = {}

    def run():
        outcome["result"] = client.run_command(FLOOD_COMMAND)

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    worker.join(timeout=60)
    client.close()

    assert not worker.is_alive(), "session stalled on a full stderr stream"
    result = outcome["result"]
    assert result.ok
    assert result.stdout == "done\n"
    assert len(result.stderr) == FLOOD_BYTES


def test_reconnect_waits_for_port(host_key, client_key, key_file):
    port = free_port()
    clock = FakeClock()
    started = []

    def sleep(seconds):
        clock.sleep(seconds)
        if not started:
            started.append(LoopbackSSHServer(host_key, client_key, port=port))

    manager = ConnectionManager(_config(port, key_file), sleep=sleep, clock=clock)
    try:
        client = manager.reconnect(max_wait=60)
        assert client.run_command("echo back").stdout == "back\n"
        client.close()
    finally:
        for sshd in started:
            sshd.close()

    assert clock.sleeps == [5]


def test_reconnect_gives_up_at_deadline(key_file, clock):
    manager = ConnectionManager(_config(free_port(), key_file), sleep=clock.sleep, clock=clock)

    with pytest.raises(ReadinessTimeout, match="did not come back within 20s"):
        manager.reconnect(max_wait=20)

    assert clock.sleeps == [5, 5, 5, 5]

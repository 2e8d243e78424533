"""Tests for credential discovery and host key trust policies."""

import paramiko
import pytest

from yardcheck.config import HarnessConfig, TrustPolicy
from yardcheck.remote.auth import (
    agent_credentials,
    file_credentials,
    gather_credentials,
    open_agent,
    sha256_fingerprint,
    verify_host_key,
)
from yardcheck.remote.base import AuthError, TransportError
from yardcheck.remote.ssh import ConnectionManager


@pytest.fixture(scope="module")
def rsa_key():
    return paramiko.RSAKey.generate(2048)


def test_file_credentials_skips_missing_garbage_and_encrypted_keys(tmp_path, rsa_key):
    good = tmp_path / "id_rsa"
    rsa_key.write_private_key_file(str(good))
    encrypted = tmp_path / "id_protected"
    rsa_key.write_private_key_file(str(encrypted), password="hunter2")
    garbage = tmp_path / "id_garbage"
    garbage.write_text("not a private key\n")

    credentials = file_credentials(
        [str(tmp_path / "missing"), str(garbage), str(encrypted), str(good)]
    )

    assert [c.source for c in credentials] == [str(good)]
    assert credentials[0].key.asbytes() == rsa_key.asbytes()


def test_agent_ignored_without_socket(monkeypatch):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)

    assert open_agent() is None
    assert agent_credentials(None) == []


class _Agent:
    def __init__(self, keys):
        self.keys = keys
        self.closed = False

    def get_keys(self):
        return tuple(self.keys)

    def close(self):
        self.closed = True


def test_agent_keys_come_first(tmp_path, rsa_key):
    key_file = tmp_path / "id_rsa"
    rsa_key.write_private_key_file(str(key_file))
    agent_key = paramiko.RSAKey.generate(1024)

    credentials = gather_credentials([str(key_file)], _Agent([agent_key]))

    assert [c.source for c in credentials] == ["agent:ssh-rsa", str(key_file)]


def test_agent_closed_after_failed_connect(monkeypatch, tmp_path):
    agent = _Agent([])
    monkeypatch.setattr("yardcheck.remote.ssh.open_agent", lambda: agent)
    config = HarnessConfig(host="lab-host", user="tester", key_path=str(tmp_path / "none"))

    with pytest.raises(AuthError, match="no auth methods available"):
        ConnectionManager(config).connect()

    assert agent.closed


def test_connect_without_credentials_raises_auth_error(monkeypatch, tmp_path):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
    config = HarnessConfig(host="lab-host", user="tester", key_path=str(tmp_path / "none"))

    with pytest.raises(AuthError, match="no auth methods available"):
        ConnectionManager(config).connect()


def test_fingerprint_format(rsa_key):
    fingerprint = sha256_fingerprint(rsa_key)

    assert fingerprint.startswith("SHA256:")
    assert not fingerprint.endswith("=")
    assert len(fingerprint) == len("SHA256:") + 43


def test_no_verification_accepts_any_key(rsa_key):
    verify_host_key(TrustPolicy.NONE, "lab-host", 22, rsa_key)


def test_pinned_fingerprint(rsa_key):
    fingerprint = sha256_fingerprint(rsa_key)

    verify_host_key(TrustPolicy.PIN, "lab-host", 22, rsa_key, fingerprint=fingerprint)
    with pytest.raises(TransportError, match="expected pinned"):
        verify_host_key(TrustPolicy.PIN, "lab-host", 22, rsa_key, fingerprint="SHA256:other")


def test_strict_policy_uses_known_hosts(tmp_path, rsa_key):
    known_hosts = tmp_path / "known_hosts"
    known_hosts.write_text(
        f"lab-host {rsa_key.get_name()} {rsa_key.get_base64()}\n"
        f"[lab-host]:2222 {rsa_key.get_name()} {rsa_key.get_base64()}\n"
    )

    verify_host_key(TrustPolicy.STRICT, "lab-host", 22, rsa_key, known_hosts=str(known_hosts))
    verify_host_key(TrustPolicy.STRICT, "lab-host", 2222, rsa_key, known_hosts=str(known_hosts))
    with pytest.raises(TransportError, match="not found"):
        verify_host_key(
            TrustPolicy.STRICT, "other-host", 22, rsa_key, known_hosts=str(known_hosts)
        )


def test_strict_policy_rejects_changed_key(tmp_path, rsa_key):
    other = paramiko.RSAKey.generate(2048)
    known_hosts = tmp_path / "known_hosts"
    known_hosts.write_text(f"lab-host {other.get_name()} {other.get_base64()}\n")

    with pytest.raises(TransportError, match="mismatch"):
        verify_host_key(TrustPolicy.STRICT, "lab-host", 22, rsa_key, known_hosts=str(known_hosts))

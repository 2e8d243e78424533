"""Shared fixtures: a scripted remote client and fake time sources."""

import threading
from typing import Callable, List, Optional, Tuple, Union

import pytest

from yardcheck.config import HarnessConfig
from yardcheck.remote.base import CommandResult, RemoteClient, UploadError


Response = Union[CommandResult, Callable[[str], CommandResult]]

OK = CommandResult("", "", 0)


def result(stdout: str = "", stderr: str = "", exit_code: int = 0) -> CommandResult:
    return CommandResult(stdout, stderr, exit_code)


class FakeClient(RemoteClient):
    """Remote client answering commands from substring rules.

    The most recently added matching rule wins; unmatched commands succeed
    with empty output.
    """

    def __init__(self) -> None:
        super().__init__("fake-host", "tester")
        self.rules: List[Tuple[str, Response]] = []
        self.commands: List[str] = []
        self.uploads: List[Tuple[str, str]] = []
        self.upload_error: Optional[str] = None
        self.closed = False
        self._lock = threading.Lock()
        self.on("echo alive", result(stdout="alive\n"))

    def on(self, fragment: str, response: Response) -> "FakeClient":
        self.rules.append((fragment, response))
        return self

    def ran(self, fragment: str) -> List[str]:
        return [cmd for cmd in self.commands if fragment in cmd]

    def run_command(self, command: str) -> CommandResult:
        with self._lock:
            self.commands.append(command)
        for fragment, response in reversed(self.rules):
            if fragment in command:
                return response(command) if callable(response) else response
        return OK

    def copy_file(self, local_path: str, remote_name: str) -> None:
        if self.upload_error:
            raise UploadError(self.upload_error)
        self.uploads.append((local_path, remote_name))

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> HarnessConfig:
    return HarnessConfig(host="lab-host", user="tester", create_stagger=0)

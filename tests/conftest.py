from __future__ import annotations

import subprocess
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Tuple

import pytest

from local_models import ManagerConfig, ModelDefinition

TEST_CATALOG = (
    ModelDefinition(id="m-small", display_name="Small", hub_repository="org/small", parameter_label="1B"),
    ModelDefinition(
        id="m-large",
        display_name="Large",
        hub_repository="org/large",
        parameter_label="8B",
        subdirectory="model",
        recommended=True,
    ),
)


class FakeRun:
    """Stand-in for ``subprocess.run`` replaying queued results.

    Each response is ``(returncode, stdout, stderr)`` or an exception to raise.
    """

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Tuple[List[str], Dict[str, Any]]] = []

    def __call__(self, command, **kwargs):
        self.calls.append((list(command), kwargs))
        if not self.responses:
            raise AssertionError(f"unexpected subprocess call: {command}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        returncode, stdout, stderr = response
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    @property
    def commands(self) -> List[List[str]]:
        return [command for command, _ in self.calls]


@pytest.fixture
def catalog() -> Tuple[ModelDefinition, ...]:
    return TEST_CATALOG


@pytest.fixture
def config(tmp_path: Path) -> ManagerConfig:
    return ManagerConfig(state_dir=tmp_path / "state", poll_interval=0.01, health_timeout=1.0)


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeRun]:
    def install(*responses: Any) -> FakeRun:
        fake = FakeRun(list(responses))
        monkeypatch.setattr(subprocess, "run", fake)
        return fake

    return install


class StubServer:
    """A local HTTP server whose handler is supplied by the test."""

    def __init__(self, handle: Callable[[BaseHTTPRequestHandler], None]) -> None:
        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                handle(self)

            def do_POST(self) -> None:  # noqa: N802
                handle(self)

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.port = self.httpd.server_address[1]
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def __enter__(self) -> "StubServer":
        self.thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def stub_server() -> Iterator[Callable[[Callable[[BaseHTTPRequestHandler], None]], StubServer]]:
    servers: List[StubServer] = []

    def start(handle: Callable[[BaseHTTPRequestHandler], None]) -> StubServer:
        server = StubServer(handle).__enter__()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.__exit__(None, None, None)

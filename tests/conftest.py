"""Pytest configuration and fixtures for monocle tests."""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional, Tuple

import pytest

from monocle.config import SearchRetryPolicy, Settings, Timeouts
from monocle.models import SymbolLocation, SymbolSearchResult, Workspace, WorkspaceKind, path_to_uri

SAMPLE_SWIFT = """import Foundation

/// A shape that can be drawn.
public struct Widget {
    public let name: String

    public func render() -> String {
        return name
    }
}
"""


FAKE_SERVER_BODY = r'''
import json
import sys
import time


def read():
    length = None
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.decode("ascii").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    return json.loads(sys.stdin.buffer.read(length))


def send(message):
    body = json.dumps(message).encode("utf-8")
    sys.stdout.buffer.write(b"Content-Length: " + str(len(body)).encode("ascii") + b"\r\n\r\n" + body)
    sys.stdout.buffer.flush()


while True:
    message = read()
    if message is None:
        break
    method = message.get("method")
    if MODE == "silent":
        continue
    if method == "initialize":
        send({"jsonrpc": "2.0", "id": message["id"],
              "result": {"capabilities": {}, "serverInfo": {"name": "fake-sourcekit", "version": "1.0"}}})
    elif method == "shutdown":
        if MODE == "hang-on-shutdown":
            time.sleep(60)
        send({"jsonrpc": "2.0", "id": message["id"], "result": None})
    elif method == "exit":
        break
'''


def write_fake_server(directory: Path, mode: str = "normal") -> str:
    """Write an executable script that speaks just enough LSP for supervision tests.

    ``mode`` is ``normal``, ``silent`` (never answers) or ``hang-on-shutdown``.
    """
    script = directory / f"fake-lsp-{mode}"
    script.write_text(f"#!{sys.executable}\nMODE = {mode!r}\n{FAKE_SERVER_BODY}", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


class FakeRpc:
    """Stands in for a JSON-RPC connection; answers requests through a handler."""

    def __init__(self, handler: Callable[[str, Any], Any]) -> None:
        self.handler = handler
        self.requests: List[Tuple[str, Any, Optional[float]]] = []
        self.notifications: List[Tuple[str, Any]] = []
        self.is_closed = False

    def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        self.requests.append((method, params, timeout))
        return self.handler(method, params)

    def notify(self, method: str, params: Any = None) -> None:
        self.notifications.append((method, params))

    def close(self) -> None:
        self.is_closed = True


class FakeConnection:
    def __init__(self, rpc: FakeRpc, generation: int) -> None:
        self.rpc = rpc
        self.generation = generation
        self.process = None

    @property
    def is_alive(self) -> bool:
        return not self.rpc.is_closed


class FakeService:
    """Scripted replacement for ``SourceKitService``.

    Every launch creates a fresh ``FakeRpc`` sharing the same handler, so
    tests can observe what each connection generation received.
    """

    def __init__(self, handler: Callable[[str, Any], Any]) -> None:
        self.handler = handler
        self.connections: List[FakeConnection] = []
        self.force_terminations = 0
        self.shutdowns = 0
        self._current: Optional[FakeConnection] = None

    @property
    def launches(self) -> int:
        return len(self.connections)

    def acquire_connection(self, workspace, toolchain=None) -> FakeConnection:
        if self._current is None or not self._current.is_alive:
            self._current = FakeConnection(FakeRpc(self.handler), generation=100 + len(self.connections))
            self.connections.append(self._current)
        return self._current

    def force_terminate(self) -> None:
        self.force_terminations += 1
        if self._current is not None:
            self._current.rpc.close()
        self._current = None

    def shutdown(self, timeout: float = 5.0) -> None:
        self.shutdowns += 1
        if self._current is not None:
            self._current.rpc.close()
        self._current = None


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def swift_package(temp_dir: Path) -> Path:
    """A minimal SwiftPM package with one source file."""
    root = temp_dir / "Example"
    sources = root / "Sources" / "Example"
    sources.mkdir(parents=True)
    (root / "Package.swift").write_text("// swift-tools-version:5.9\n", encoding="utf-8")
    (sources / "Widget.swift").write_text(SAMPLE_SWIFT, encoding="utf-8")
    return root.resolve()


@pytest.fixture
def package_workspace(swift_package: Path) -> Workspace:
    return Workspace(root_path=str(swift_package), kind=WorkspaceKind.SWIFT_PACKAGE)


@pytest.fixture
def widget_file(swift_package: Path) -> Path:
    return swift_package / "Sources" / "Example" / "Widget.swift"


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short budgets so failure paths finish quickly."""
    return Settings(
        timeouts=Timeouts(initialize=1.0, open_document=1.0, definition=1.0, hover=1.0, workspace_symbol=1.0),
        search_retry=SearchRetryPolicy(package_attempts=12, package_delay=1.0, ide_attempts=4, ide_delay=0.5),
        shutdown_timeout=1.0,
    )


@pytest.fixture
def isolated_home(temp_dir: Path, monkeypatch) -> Path:
    """Point every state path at a temporary MONOCLE_HOME."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setattr("monocle.config.BASE_DIR", home)
    monkeypatch.setattr("monocle.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.setattr("monocle.config.SOCKET_PATH", home / "daemon.sock")
    monkeypatch.setattr("monocle.config.SPAWN_LOCK_PATH", home / "daemon.lock")
    monkeypatch.setattr("monocle.config.LOG_FILE", home / "daemon.log")
    for name in ("MONOCLE_IDLE_TIMEOUT", "MONOCLE_SOURCEKIT_PATH", "MONOCLE_DEVELOPER_DIR", "MONOCLE_DISABLE_DAEMON"):
        monkeypatch.delenv(name, raising=False)
    return home


def make_result(name: str, path: str, line: int = 1, kind: Optional[str] = None) -> SymbolSearchResult:
    """Build a search result located at ``path:line``."""
    uri = path_to_uri(path) if path.startswith("/") else path
    location = SymbolLocation(uri=uri, start_line=line, start_character=1, end_line=line, end_character=10)
    return SymbolSearchResult(name=name, kind=kind, location=location, document_uri=uri)

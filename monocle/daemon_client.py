"""Client side of the daemon socket, including on-demand daemon start."""

from __future__ import annotations

import fcntl
import itertools
import json
import logging
import socket
import subprocess
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from . import config
from .errors import DaemonError, error_from_dict
from .models import DaemonStatus, SymbolInfo, SymbolSearchResult

logger = logging.getLogger(__name__)

# Covers the longest request budget plus a full restart-and-retry.
DEFAULT_REQUEST_TIMEOUT = 120.0
START_POLL_INTERVAL = 0.1


class DaemonClient:
    """Sends one envelope per connection and rebuilds typed errors from replies."""

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.socket_path = Path(socket_path or config.SOCKET_PATH)
        self.timeout = timeout
        self._ids = itertools.count(1)

    def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a daemon method.

        Raises:
            DaemonError: The socket is unreachable or the reply is malformed.
            MonocleError: The daemon reported a domain error (rebuilt by code).
        """
        request_id = str(next(self._ids))
        payload = json.dumps({"id": request_id, "method": method, "params": params or {}}).encode("utf-8") + b"\n"

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(str(self.socket_path))
                sock.sendall(payload)
                reply = _read_line(sock)
        except socket.timeout as exc:
            raise DaemonError(f"No reply from daemon within {self.timeout:g}s.") from exc
        except OSError as exc:
            raise DaemonError(f"Could not reach daemon at {self.socket_path}: {exc}") from exc

        try:
            envelope = json.loads(reply.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DaemonError(f"Malformed daemon reply: {exc}") from exc

        if envelope.get("error") is not None:
            raise error_from_dict(envelope["error"])
        return envelope.get("result")

    def is_running(self) -> bool:
        if not self.socket_path.exists():
            return False
        try:
            self.send("ping")
        except DaemonError:
            return False
        return True

    def status(self) -> DaemonStatus:
        return DaemonStatus.from_dict(self.send("status"))

    def stop(self) -> bool:
        """Ask the daemon to exit; ``False`` when none was running."""
        if not self.is_running():
            return False
        self.send("shutdown")
        return True

    def inspect(self, workspace_root: str, file: str, line: int, column: int, method: str = "inspect") -> SymbolInfo:
        params = {"workspaceRootPath": workspace_root, "filePath": file, "line": line, "column": column}
        return SymbolInfo.from_dict(self.send(method, params))

    def search(self, workspace_root: str, query: str, limit: int, enrich: bool) -> List[SymbolSearchResult]:
        params = {"workspaceRootPath": workspace_root, "query": query, "limit": limit, "enrich": enrich}
        return [SymbolSearchResult.from_dict(item) for item in self.send("symbolSearch", params) or []]

    def ensure_running(self, start_timeout: float = config.DEFAULT_DAEMON_START_TIMEOUT) -> None:
        """Start the daemon unless one already answers.

        Concurrent callers serialise on an exclusive lock file: the first one
        spawns the daemon and waits for its socket, the others block on the
        lock and then find the daemon running.
        """
        if self.is_running():
            return
        with spawn_lock(config.SPAWN_LOCK_PATH):
            if self.is_running():
                return
            spawn_daemon()
            self.wait_until_running(start_timeout)

    def wait_until_running(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.is_running():
                return
            time.sleep(START_POLL_INTERVAL)
        raise DaemonError(f"Daemon did not start within {timeout:g}s; see {config.LOG_FILE}.")


class DaemonSymbolBackend:
    """Symbol search backend that routes every call through the daemon."""

    def __init__(self, client: DaemonClient) -> None:
        self.client = client

    def search_symbols(self, root_path: str, query: str, limit: int, enrich: bool) -> List[SymbolSearchResult]:
        return self.client.search(root_path, query, limit, enrich)

    def inspect_symbol(self, root_path: str, file: str, line: int, column: int) -> SymbolInfo:
        return self.client.inspect(root_path, file, line, column)


@contextmanager
def spawn_lock(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def spawn_daemon() -> subprocess.Popen:
    """Start ``python -m monocle daemon serve`` detached from this process."""
    command = [sys.executable, "-m", "monocle", "daemon", "serve"]
    logger.info("Starting daemon: %s", " ".join(command))
    try:
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise DaemonError(f"Could not start daemon: {exc}") from exc


def _read_line(sock: socket.socket) -> bytes:
    data = b""
    while b"\n" not in data:
        chunk = sock.recv(65536)
        if not chunk:
            break
        data += chunk
    if not data:
        raise DaemonError("Daemon closed the connection without replying.")
    return data.split(b"\n", 1)[0]

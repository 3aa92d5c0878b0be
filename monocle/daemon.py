"""Long-running daemon that keeps one warm LSP session per workspace.

Clients talk to the daemon over a Unix domain socket using newline-delimited
JSON envelopes::

    -> {"id": "1", "method": "inspect", "params": {...}}
    <- {"id": "1", "result": {...}}
    <- {"id": "1", "error": {"code": "timeout", "message": "...", "seconds": 15}}

Each accepted connection is served on its own thread. Requests for the same
workspace are serialised by the pool entry lock; different workspaces run in
parallel.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import signal
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, ValidationError

from . import config
from .config import Settings
from .errors import DaemonError, MonocleError
from .models import DaemonSessionSummary, DaemonStatus, Workspace
from .session import LspSession
from .workspace import WorkspaceLocator

logger = logging.getLogger(__name__)

MAX_REQUEST_SIZE = 10 * 1024 * 1024
ACCEPT_POLL_INTERVAL = 1.0
CLIENT_READ_TIMEOUT = 300.0

INVALID_REQUEST = "invalid_request"
INVALID_PARAMS = "invalid_params"
UNKNOWN_METHOD = "unknown_method"
INTERNAL_ERROR = "internal_error"


# ═══════════════════════════════════════════════════════════════
# Request parameters
# ═══════════════════════════════════════════════════════════════

class PositionParams(BaseModel):
    workspaceRootPath: str = Field(..., min_length=1, description="Workspace root or container path")
    filePath: str = Field(..., min_length=1, description="Swift source file")
    line: int = Field(..., ge=1, description="One-based line")
    column: int = Field(..., ge=1, description="One-based column")


class SymbolSearchParams(BaseModel):
    workspaceRootPath: str = Field(..., min_length=1, description="Workspace root or container path")
    query: str = Field(..., min_length=1, description="Symbol name query")
    limit: int = Field(default=20, ge=0, description="Maximum results; 0 keeps all")
    enrich: bool = Field(default=False, description="Attach hover data to each result")


# ═══════════════════════════════════════════════════════════════
# Session pool
# ═══════════════════════════════════════════════════════════════

@dataclass
class PoolEntry:
    session: LspSession
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_used: float = 0.0
    last_used_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self, now: float) -> None:
        self.last_used = now
        self.last_used_wall = datetime.now(timezone.utc)


class SessionPool:
    """Workspace-keyed map of live sessions with idle eviction.

    The pool lock only guards the map. Each entry's lock serialises the
    requests for that workspace, and the sweeper skips entries whose lock is
    held, so a busy session is never evicted mid-request.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[Callable[[Workspace], LspSession]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self._session_factory = session_factory or (lambda workspace: LspSession(workspace, settings=self.settings))
        self._clock = clock
        self._entries: Dict[Workspace, PoolEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @contextmanager
    def lease(self, workspace: Workspace) -> Iterator[LspSession]:
        """Hold the workspace's session exclusively for one request."""
        while True:
            with self._lock:
                entry = self._entries.get(workspace)
                if entry is None:
                    logger.info("Creating session for %s (%s)", workspace.root_path, workspace.kind.value)
                    entry = PoolEntry(session=self._session_factory(workspace), last_used=self._clock())
                    self._entries[workspace] = entry
            entry.lock.acquire()
            with self._lock:
                current = self._entries.get(workspace) is entry
            if current:
                break
            # Evicted while we waited for the lock.
            entry.lock.release()

        try:
            entry.touch(self._clock())
            yield entry.session
        finally:
            entry.touch(self._clock())
            entry.lock.release()

    def sweep(self) -> List[Workspace]:
        """Shut down sessions idle for longer than ``idle_timeout``."""
        now = self._clock()
        evicted: List[tuple] = []
        with self._lock:
            for workspace, entry in list(self._entries.items()):
                if now - entry.last_used < self.settings.idle_timeout:
                    continue
                if not entry.lock.acquire(blocking=False):
                    continue
                del self._entries[workspace]
                evicted.append((workspace, entry))

        for workspace, entry in evicted:
            logger.info("Evicting idle session for %s", workspace.root_path)
            try:
                self.shutdown_session(entry.session)
            finally:
                entry.lock.release()
        return [workspace for workspace, _ in evicted]

    def shutdown_session(self, session: LspSession) -> None:
        """Gracefully stop a session, force-terminating it if that takes too long."""
        timeout = self.settings.shutdown_timeout
        worker = threading.Thread(
            target=self._graceful_shutdown,
            args=(session, timeout),
            name="monocle-session-shutdown",
            daemon=True,
        )
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            logger.warning("Session for %s did not stop within %.1fs; killing it",
                           session.workspace.root_path, timeout)
            session.force_terminate()

    @staticmethod
    def _graceful_shutdown(session: LspSession, timeout: float) -> None:
        try:
            session.shutdown(timeout=timeout)
        except MonocleError as exc:
            logger.warning("Shutdown of %s failed: %s", session.workspace.root_path, exc)
            session.force_terminate()

    def summaries(self) -> List[DaemonSessionSummary]:
        with self._lock:
            items = sorted(self._entries.items(), key=lambda item: item[0].root_path)
        return [
            DaemonSessionSummary(
                workspace_root_path=workspace.root_path,
                kind=workspace.kind,
                last_used_iso8601=entry.last_used_wall.isoformat(timespec="seconds"),
            )
            for workspace, entry in items
        ]

    def start_sweeper(self) -> None:
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="monocle-sweeper", daemon=True)
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.settings.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")

    def close(self) -> None:
        """Stop the sweeper and shut down every session."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.settings.sweep_interval)
            self._sweeper = None
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            self.shutdown_session(entry.session)


# ═══════════════════════════════════════════════════════════════
# Request dispatch
# ═══════════════════════════════════════════════════════════════

class RequestHandler:
    """Maps envelope methods to pool operations."""

    def __init__(
        self,
        pool: SessionPool,
        socket_path: Path,
        log_file: Path,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self.pool = pool
        self.socket_path = socket_path
        self.log_file = log_file
        self._on_shutdown = on_shutdown
        self._methods: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "ping": self._ping,
            "status": self._status,
            "shutdown": self._shutdown,
            "inspect": self._inspect,
            "definition": self._definition,
            "hover": self._hover,
            "symbolSearch": self._symbol_search,
        }

    def handle_line(self, line: bytes) -> Dict[str, Any]:
        try:
            envelope = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            return _error_envelope(None, INVALID_REQUEST, f"Invalid request: {exc}")
        if not isinstance(envelope, dict):
            return _error_envelope(None, INVALID_REQUEST, "Request must be a JSON object.")
        return self.handle(envelope)

    def handle(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        request_id = envelope.get("id")
        method = envelope.get("method")
        params = envelope.get("params") or {}

        handler = self._methods.get(method) if isinstance(method, str) else None
        if handler is None:
            return _error_envelope(request_id, UNKNOWN_METHOD, f"Unknown method: {method}")
        if not isinstance(params, dict):
            return _error_envelope(request_id, INVALID_PARAMS, "params must be an object.")

        try:
            return {"id": request_id, "result": handler(params)}
        except ValidationError as exc:
            return _error_envelope(request_id, INVALID_PARAMS, _validation_message(exc))
        except MonocleError as exc:
            logger.info("%s failed: %s", method, exc)
            payload = exc.to_dict()
            return {"id": request_id, "error": payload}
        except ValueError as exc:
            return _error_envelope(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure handling %s", method)
            return _error_envelope(request_id, INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")

    def _ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"ok": True}

    def _status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        status = DaemonStatus(
            socket_path=str(self.socket_path),
            daemon_process_identifier=os.getpid(),
            idle_session_timeout_seconds=int(self.pool.settings.idle_timeout),
            log_file_path=str(self.log_file),
            active_sessions=self.pool.summaries(),
        )
        return status.to_dict()

    def _shutdown(self, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Shutdown requested by client")
        if self._on_shutdown is not None:
            self._on_shutdown()
        return {"ok": True}

    def _inspect(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = PositionParams.model_validate(params)
        with self.pool.lease(_workspace_for(request.workspaceRootPath)) as session:
            return session.inspect_symbol(request.filePath, request.line, request.column).to_dict()

    def _definition(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = PositionParams.model_validate(params)
        with self.pool.lease(_workspace_for(request.workspaceRootPath)) as session:
            return session.definition(request.filePath, request.line, request.column).to_dict()

    def _hover(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = PositionParams.model_validate(params)
        with self.pool.lease(_workspace_for(request.workspaceRootPath)) as session:
            return session.hover(request.filePath, request.line, request.column).to_dict()

    def _symbol_search(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        request = SymbolSearchParams.model_validate(params)
        with self.pool.lease(_workspace_for(request.workspaceRootPath)) as session:
            results = session.search_symbols(request.query, limit=request.limit, enrich=request.enrich)
        return [result.to_dict() for result in results]


def _workspace_for(root_path: str) -> Workspace:
    return WorkspaceLocator.locate(root_path, root_path)


def _error_envelope(request_id: Any, code: str, message: str) -> Dict[str, Any]:
    return {"id": request_id, "error": {"code": code, "message": message}}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "Invalid params: " + "; ".join(parts)


# ═══════════════════════════════════════════════════════════════
# Socket server
# ═══════════════════════════════════════════════════════════════

class MonocleDaemon:
    """Unix socket server in front of a :class:`SessionPool`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        socket_path: Optional[Path] = None,
        log_file: Optional[Path] = None,
        pool: Optional[SessionPool] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.socket_path = Path(socket_path or config.SOCKET_PATH)
        self.log_file = Path(log_file or config.LOG_FILE)
        self.pool = pool or SessionPool(self.settings)
        self.handler = RequestHandler(self.pool, self.socket_path, self.log_file, on_shutdown=self.request_shutdown)
        self._socket: Optional[socket.socket] = None
        self._shutdown_requested = threading.Event()

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    def bind(self) -> socket.socket:
        """Bind the listening socket, replacing a stale socket file if no daemon answers on it."""
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self.socket_path))
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                sock.close()
                raise
            if _socket_is_live(self.socket_path):
                sock.close()
                raise DaemonError(f"Another monocle daemon is already listening on {self.socket_path}.")
            logger.info("Removing stale socket %s", self.socket_path)
            self.socket_path.unlink()
            sock.bind(str(self.socket_path))
        os.chmod(self.socket_path, 0o600)
        sock.listen(16)
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self._socket = sock
        logger.info("Listening on %s", self.socket_path)
        return sock

    def serve_forever(self) -> None:
        if self._socket is None:
            self.bind()
        self.pool.start_sweeper()
        logger.info("monocle daemon started (pid %d, idle timeout %.0fs)", os.getpid(), self.settings.idle_timeout)
        try:
            while not self._shutdown_requested.is_set():
                try:
                    conn, _ = self._socket.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._shutdown_requested.is_set():
                        break
                    raise
                threading.Thread(
                    target=self._serve_connection,
                    args=(conn,),
                    name="monocle-client",
                    daemon=True,
                ).start()
        finally:
            self.close()

    def _serve_connection(self, conn: socket.socket) -> None:
        conn.settimeout(CLIENT_READ_TIMEOUT)
        buffer = b""
        try:
            while True:
                chunk = conn.recv(65536)
                if not chunk:
                    break
                buffer += chunk
                if len(buffer) > MAX_REQUEST_SIZE:
                    conn.sendall(_encode(_error_envelope(None, INVALID_REQUEST, "Request too large.")))
                    break
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    conn.sendall(_encode(self.handler.handle_line(line)))
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Client disconnected before receiving response")
        except socket.timeout:
            logger.debug("Client connection timed out")
        finally:
            conn.close()

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.pool.close()
        logger.info("monocle daemon stopped")


def _encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8") + b"\n"


def _socket_is_live(path: Path) -> bool:
    client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        client.connect(str(path))
        return True
    except (ConnectionRefusedError, FileNotFoundError):
        return False
    finally:
        client.close()


def configure_file_logging(log_file: Path, level: int = logging.INFO) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("monocle")
    root.addHandler(handler)
    root.setLevel(level)
    return handler


def run_daemon(settings: Optional[Settings] = None) -> None:
    """Entry point for ``monocle daemon serve``."""
    settings = settings or config.load_settings()
    config.ensure_base_dirs()
    configure_file_logging(config.LOG_FILE)
    daemon = MonocleDaemon(settings)

    def _on_signal(signum: int, frame: Any) -> None:
        daemon.request_shutdown()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    daemon.serve_forever()

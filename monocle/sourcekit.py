"""Launches and supervises one SourceKit-LSP process per workspace."""

from __future__ import annotations

import itertools
import locale
import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .config import DEFAULT_SOURCEKIT_COMMAND
from .errors import InitializationFailed, MonocleError, ProcessLaunchFailed, Timeout
from .jsonrpc import JsonRpcConnection
from .models import ToolchainConfiguration, Workspace, WorkspaceKind, path_to_uri

logger = logging.getLogger(__name__)

CLIENT_NAME = "monocle"

CLIENT_CAPABILITIES = {
    "textDocument": {
        "hover": {"dynamicRegistration": False, "contentFormat": ["markdown", "plaintext"]},
        "definition": {"dynamicRegistration": False, "linkSupport": True},
    },
}

_generations = itertools.count(1)


@dataclass
class ExecutionParameters:
    """Everything needed to spawn SourceKit-LSP for one workspace."""

    command: List[str]
    environment: Dict[str, str]
    cwd: str


@dataclass
class ServerConnection:
    """An initialized JSON-RPC connection plus the process behind it."""

    rpc: JsonRpcConnection
    process: Optional[subprocess.Popen]
    generation: int
    server_info: Optional[dict] = None

    @property
    def is_alive(self) -> bool:
        if self.rpc.is_closed:
            return False
        return self.process is None or self.process.poll() is None


def make_execution_parameters(
    workspace: Workspace,
    toolchain: Optional[ToolchainConfiguration] = None,
    base_environment: Optional[Dict[str, str]] = None,
) -> ExecutionParameters:
    """Build the command line and environment for a workspace."""
    if toolchain is not None and toolchain.sourcekit_path:
        command = [toolchain.sourcekit_path]
    else:
        command = list(DEFAULT_SOURCEKIT_COMMAND)

    root = Path(workspace.root_path)
    if workspace.kind is WorkspaceKind.SWIFT_PACKAGE:
        command += [
            "--default-workspace-type", "swiftPM",
            "--scratch-path", str(root / ".sourcekit-lsp-scratch"),
            "--build-path", str(root / ".build"),
            "--configuration", "debug",
        ]
    elif should_prefer_build_server(workspace):
        command += ["--default-workspace-type", "buildServer"]

    environment = dict(os.environ if base_environment is None else base_environment)
    if toolchain is not None and toolchain.developer_directory:
        environment["DEVELOPER_DIR"] = toolchain.developer_directory
    if workspace.kind is WorkspaceKind.SWIFT_PACKAGE:
        environment["HOME"] = workspace.root_path
        environment["SWIFTPM_CACHE_PATH"] = str(root / ".swiftpm-cache")

    return ExecutionParameters(command=command, environment=environment, cwd=workspace.root_path)


def should_prefer_build_server(workspace: Workspace) -> bool:
    """Xcode workspaces use build-server mode when ``buildServer.json`` is present."""
    if workspace.kind is WorkspaceKind.SWIFT_PACKAGE:
        return False
    return (Path(workspace.root_path) / "buildServer.json").exists()


def initialize_params(workspace: Workspace) -> dict:
    root_uri = path_to_uri(workspace.root_path)
    return {
        "processId": os.getpid(),
        "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        "locale": locale.getlocale()[0] or "en_US",
        "rootPath": workspace.root_path,
        "rootUri": root_uri,
        "initializationOptions": None,
        "capabilities": CLIENT_CAPABILITIES,
        "trace": "off",
        "workspaceFolders": [{"uri": root_uri, "name": Path(workspace.root_path).name}],
    }


class SourceKitService:
    """Owns the SourceKit-LSP subprocess for a single workspace.

    ``acquire_connection`` is idempotent: while the process is alive the
    same connection is returned. A process that exits on its own is noticed
    by the JSON-RPC reader and the next acquire relaunches it.
    """

    def __init__(self, initialize_timeout: float = 30.0) -> None:
        self._initialize_timeout = initialize_timeout
        self._connection: Optional[ServerConnection] = None
        self._closing: Optional[ServerConnection] = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> Optional[ServerConnection]:
        return self._connection

    def acquire_connection(
        self,
        workspace: Workspace,
        toolchain: Optional[ToolchainConfiguration] = None,
    ) -> ServerConnection:
        with self._lock:
            if self._connection is not None and self._connection.is_alive:
                return self._connection
            if self._connection is not None:
                logger.info("SourceKit-LSP generation %d exited, relaunching", self._connection.generation)
                self._discard(self._connection)
            self._connection = self._launch(workspace, toolchain)
            return self._connection

    def force_terminate(self) -> None:
        """Kill the process unconditionally, including one that is mid-shutdown."""
        with self._lock:
            connections = [c for c in (self._connection, self._closing) if c is not None]
            self._connection = None
            self._closing = None
        for connection in connections:
            logger.info("Force-terminating SourceKit-LSP generation %d", connection.generation)
            self._discard(connection)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Send ``shutdown``/``exit``, falling back to a kill if the server hangs."""
        with self._lock:
            connection, self._connection = self._connection, None
            self._closing = connection
        if connection is None:
            return
        try:
            connection.rpc.request("shutdown", None, timeout=timeout)
            connection.rpc.notify("exit")
            if connection.process is not None:
                connection.process.wait(timeout=timeout)
        except (MonocleError, subprocess.TimeoutExpired) as exc:
            logger.warning("Graceful SourceKit-LSP shutdown failed: %s", exc)
        finally:
            with self._lock:
                if self._closing is connection:
                    self._closing = None
            self._discard(connection)

    def _launch(self, workspace: Workspace, toolchain: Optional[ToolchainConfiguration]) -> ServerConnection:
        parameters = make_execution_parameters(workspace, toolchain)
        logger.info("Launching %s in %s", " ".join(parameters.command), parameters.cwd)
        try:
            process = subprocess.Popen(
                parameters.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                env=parameters.environment,
                cwd=parameters.cwd,
            )
        except OSError as exc:
            raise ProcessLaunchFailed(f"Could not start {parameters.command[0]}: {exc}") from exc

        generation = next(_generations)
        rpc = JsonRpcConnection(process.stdout, process.stdin, name=f"sourcekit-lsp[{generation}]")
        connection = ServerConnection(rpc=rpc, process=process, generation=generation)
        try:
            connection.server_info = self.handshake(rpc, workspace)
        except (MonocleError, OSError) as exc:
            self._discard(connection)
            if isinstance(exc, Timeout):
                raise InitializationFailed(f"initialize did not complete within {exc.seconds:g}s") from exc
            raise InitializationFailed(str(exc)) from exc
        logger.info("SourceKit-LSP generation %d ready for %s", generation, workspace.root_path)
        return connection

    def handshake(self, rpc: JsonRpcConnection, workspace: Workspace) -> Optional[dict]:
        result = rpc.request("initialize", initialize_params(workspace), timeout=self._initialize_timeout)
        rpc.notify("initialized", {})
        return (result or {}).get("serverInfo")

    @staticmethod
    def _discard(connection: ServerConnection) -> None:
        connection.rpc.close()
        process = connection.process
        if process is not None and process.poll() is None:
            process.kill()
            try:
                process.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                logger.warning("SourceKit-LSP pid %d did not exit after kill", process.pid)


def detect_sourcekit_version(command: Optional[List[str]] = None) -> str:
    """Run ``sourcekit-lsp --version`` and return its trimmed output."""
    argv = list(command or DEFAULT_SOURCEKIT_COMMAND) + ["--version"]
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ProcessLaunchFailed(f"Could not run {argv[0]}: {exc}") from exc
    if completed.returncode != 0:
        raise ProcessLaunchFailed("sourcekit-lsp --version returned non-zero exit code")
    return completed.stdout.strip() or "unknown"

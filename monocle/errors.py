"""Error taxonomy shared by the session, search, and daemon layers.

Every error carries a stable ``code`` so the daemon can put it on the wire
and the client can rebuild the same exception type on the other side.
"""

from __future__ import annotations

from typing import Dict, Optional, Type


class MonocleError(Exception):
    """Base class for all domain errors."""

    code = "monocle_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    def default_message(self) -> str:
        return "monocle failed."

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code, "message": self.message}


class WorkspaceNotFound(MonocleError):
    code = "workspace_not_found"

    def default_message(self) -> str:
        return "No Package.swift, .xcodeproj, or .xcworkspace found."


class ProcessLaunchFailed(MonocleError):
    code = "lsp_launch_failed"

    def default_message(self) -> str:
        return "Failed to launch SourceKit-LSP."


class InitializationFailed(MonocleError):
    code = "lsp_initialization_failed"

    def default_message(self) -> str:
        return "SourceKit-LSP initialization failed."


class SessionClosed(InitializationFailed):
    """Raised when an operation is attempted on a session that was shut down."""

    code = "session_closed"

    def default_message(self) -> str:
        return "The LSP session has been shut down."


class SymbolNotFound(MonocleError):
    code = "symbol_not_found"

    def default_message(self) -> str:
        return "No symbol information found at the given position."


class MonocleIOError(MonocleError):
    code = "io_error"


class Timeout(MonocleError):
    """An operation exceeded its time budget."""

    code = "timeout"

    def __init__(self, seconds: float, operation: Optional[str] = None) -> None:
        self.seconds = seconds
        self.operation = operation
        label = f"{operation} timed out" if operation else "Timed out"
        super().__init__(f"{label} after {seconds:g}s.")

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code, "message": self.message, "seconds": self.seconds}


class UnsupportedWorkspaceKind(MonocleError):
    code = "unsupported_workspace_kind"

    def default_message(self) -> str:
        return "Unsupported workspace kind."


class ConnectionClosed(MonocleError):
    """The JSON-RPC stream to the language server is gone."""

    code = "connection_closed"

    def default_message(self) -> str:
        return "Connection to SourceKit-LSP closed."


class LspResponseError(MonocleError):
    """The language server answered a request with a JSON-RPC error."""

    code = "lsp_error"

    def __init__(self, rpc_code: int, message: str, data: object = None) -> None:
        self.rpc_code = rpc_code
        self.data = data
        super().__init__(f"SourceKit-LSP error {rpc_code}: {message}")

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code, "message": self.message, "rpcCode": self.rpc_code}


class DaemonError(MonocleError):
    code = "daemon_error"


_ERRORS_BY_CODE: Dict[str, Type[MonocleError]] = {
    cls.code: cls
    for cls in (
        WorkspaceNotFound,
        ProcessLaunchFailed,
        InitializationFailed,
        SessionClosed,
        SymbolNotFound,
        MonocleIOError,
        UnsupportedWorkspaceKind,
        ConnectionClosed,
        DaemonError,
    )
}


def error_from_dict(payload: Dict[str, object]) -> MonocleError:
    """Rebuild a typed error from a daemon error envelope."""
    code = str(payload.get("code", ""))
    message = str(payload.get("message", ""))
    if code == Timeout.code:
        seconds = payload.get("seconds")
        timeout = Timeout(float(seconds) if isinstance(seconds, (int, float)) else 0.0)
        timeout.message = message or timeout.message
        timeout.args = (timeout.message,)
        return timeout
    if code == LspResponseError.code:
        rpc_code = payload.get("rpcCode")
        rpc_error = LspResponseError(int(rpc_code) if isinstance(rpc_code, int) else -1, message)
        rpc_error.message = message
        rpc_error.args = (message,)
        return rpc_error
    cls = _ERRORS_BY_CODE.get(code, DaemonError)
    return cls(message)

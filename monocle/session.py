"""LSP session: request execution with timeouts, retries, and crash recovery.

Every operation goes through :meth:`LspSession._execute`:

1. acquire a connection (a new connection generation invalidates opened documents),
2. open the target document if it is not open in the current generation,
3. run the request under its time budget,
4. on a transient transport failure, restart SourceKit-LSP once and retry.

``workspace/symbol`` additionally retries empty results, because SourceKit-LSP
answers with nothing until build settings are loaded and never signals when
that happens. The two retry loops are bounded independently.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from .config import Settings
from .errors import (
    ConnectionClosed,
    LspResponseError,
    MonocleError,
    MonocleIOError,
    SessionClosed,
    SymbolNotFound,
    Timeout,
)
from .lsp_helpers import (
    extract_snippet,
    first_definition_target,
    identifier_at,
    render_hover,
    to_location,
    to_lsp_position,
    workspace_symbol_results,
)
from .models import (
    SymbolInfo,
    SymbolSearchResult,
    ToolchainConfiguration,
    Workspace,
    path_to_uri,
)
from .sourcekit import ServerConnection, SourceKitService

logger = logging.getLogger(__name__)

T = TypeVar("T")

LANGUAGE_ID = "swift"

# Substrings seen in SourceKit-LSP / sourcekitd failures that mean the
# connection is unusable. Version-specific; see DESIGN.md.
TRANSIENT_FAILURE_MARKERS = (
    "stream closed",
    "connection reset",
    "broken pipe",
    "connection closed",
    "service is invalid",
    "sourcekitd service",
    "fatal error",
    "process exited",
)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACQUIRING = "acquiring"
    READY = "ready"
    IN_FLIGHT = "inFlight"
    RESTARTING = "restarting"
    SHUT_DOWN = "shutDown"


def is_transient_failure(error: BaseException) -> bool:
    """Return True when an error means the SourceKit-LSP connection is broken."""
    if isinstance(error, (Timeout, ConnectionClosed, BrokenPipeError, ConnectionResetError)):
        return True
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_FAILURE_MARKERS)


@dataclass
class CallChain:
    """Restart budget shared by everything one logical request does."""

    restarted: bool = False


class LspSession:
    """Stateful handle to one SourceKit-LSP connection for one workspace.

    Not thread-safe: callers serialize access (the daemon pool holds one
    lock per workspace).
    """

    def __init__(
        self,
        workspace: Workspace,
        toolchain: Optional[ToolchainConfiguration] = None,
        settings: Optional[Settings] = None,
        service: Optional[SourceKitService] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workspace = workspace
        self.settings = settings or Settings()
        self.toolchain = toolchain or self.settings.toolchain
        self._service = service or SourceKitService(initialize_timeout=self.settings.timeouts.initialize)
        self._sleep = sleep
        self.state = SessionState.UNINITIALIZED
        self.generation = 0
        self.restart_count = 0
        self._connection_identity: Optional[int] = None
        # path -> generation it was opened under
        self._opened: Dict[str, int] = {}
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="monocle-open")

    @property
    def opened_documents(self) -> Set[str]:
        return {path for path, generation in self._opened.items() if generation == self.generation}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def inspect_symbol(self, file: str, line: int, column: int) -> SymbolInfo:
        """Combined definition and hover view of the symbol at a position."""
        chain = CallChain()
        definition: Optional[SymbolInfo] = None
        hover: Optional[SymbolInfo] = None
        try:
            definition = self._definition(file, line, column, chain)
        except SymbolNotFound:
            logger.debug("No definition at %s:%d:%d", file, line, column)
        try:
            hover = self._hover(file, line, column, chain)
        except SymbolNotFound:
            logger.debug("No hover at %s:%d:%d", file, line, column)

        if definition is None and hover is None:
            raise SymbolNotFound(f"No symbol information at {file}:{line}:{column}.")
        if definition is None:
            return hover  # type: ignore[return-value]
        if hover is None:
            return definition
        return definition.merged_with_hover(hover)

    def definition(self, file: str, line: int, column: int) -> SymbolInfo:
        return self._definition(file, line, column, CallChain())

    def hover(self, file: str, line: int, column: int) -> SymbolInfo:
        return self._hover(file, line, column, CallChain())

    def search_symbols(self, query: str, limit: int = 0, enrich: bool = False) -> List[SymbolSearchResult]:
        """Run ``workspace/symbol``, retrying empty answers while the index warms up.

        Args:
            query: Symbol name query.
            limit: Maximum number of results to keep; ``0`` keeps everything.
            enrich: Add hover signature and documentation to each kept result.

        Returns:
            Raw, unranked results. Empty when nothing matched after all attempts.
        """
        chain = CallChain()
        attempts, delay = self._empty_result_budget()
        timeout = self.settings.timeouts.workspace_symbol
        results: List[SymbolSearchResult] = []
        for attempt in range(1, attempts + 1):
            payload = self._execute(
                "workspace/symbol",
                lambda connection: connection.rpc.request("workspace/symbol", {"query": query}, timeout=timeout),
                chain=chain,
            )
            results = workspace_symbol_results(payload)
            if results:
                break
            if attempt < attempts:
                logger.debug(
                    "workspace/symbol for %r empty (attempt %d/%d), retrying in %.1fs",
                    query, attempt, attempts, delay,
                )
                self._sleep(delay)

        if limit > 0:
            results = results[:limit]
        if enrich:
            results = [self._enrich(result, chain) for result in results]
        return results

    def restart(self) -> None:
        """Kill the current connection; the next operation relaunches it."""
        self.state = SessionState.RESTARTING
        self.restart_count += 1
        self._service.force_terminate()
        self._opened.clear()

    def force_terminate(self) -> None:
        self.state = SessionState.SHUT_DOWN
        self._service.force_terminate()
        self._opened.clear()
        self._executor.shutdown(wait=False)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Gracefully stop SourceKit-LSP. The session cannot be reused afterwards."""
        if self.state is SessionState.SHUT_DOWN:
            return
        self.state = SessionState.SHUT_DOWN
        self._service.shutdown(timeout=self.settings.shutdown_timeout if timeout is None else timeout)
        self._opened.clear()
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------

    def _definition(self, file: str, line: int, column: int, chain: CallChain) -> SymbolInfo:
        path = self._document_path(file, line, column)
        params = self._position_params(path, line, column)
        timeout = self.settings.timeouts.definition
        result = self._execute(
            "textDocument/definition",
            lambda connection: connection.rpc.request("textDocument/definition", params, timeout=timeout),
            document=path,
            chain=chain,
        )
        target = first_definition_target(result)
        if target is None:
            raise SymbolNotFound(f"No definition found at {file}:{line}:{column}.")
        snippet = self._read_source(extract_snippet, target["uri"], target["range"])
        return SymbolInfo(
            symbol=self._read_source(identifier_at, path, line, column),
            definition=to_location(target["uri"], target["range"], snippet),
        )

    def _hover(self, file: str, line: int, column: int, chain: CallChain) -> SymbolInfo:
        path = self._document_path(file, line, column)
        params = self._position_params(path, line, column)
        timeout = self.settings.timeouts.hover
        result = self._execute(
            "textDocument/hover",
            lambda connection: connection.rpc.request("textDocument/hover", params, timeout=timeout),
            document=path,
            chain=chain,
        )
        render = render_hover((result or {}).get("contents"))
        if render.signature is None and render.documentation is None:
            raise SymbolNotFound(f"No hover information at {file}:{line}:{column}.")
        return SymbolInfo(
            symbol=render.symbol or self._read_source(identifier_at, path, line, column),
            kind=render.kind,
            module=render.module,
            signature=render.signature,
            documentation=render.documentation,
        )

    def _enrich(self, result: SymbolSearchResult, chain: CallChain) -> SymbolSearchResult:
        location = result.location
        path = location.path if location else None
        if location is None or path is None:
            return result
        try:
            info = self._hover(path, location.start_line, location.start_character, chain)
        except (SymbolNotFound, LspResponseError, MonocleIOError) as exc:
            logger.debug("Skipping enrichment of %s: %s", result.name, exc)
            return result
        result.signature = info.signature or result.signature
        result.documentation = info.documentation or result.documentation
        result.module = info.module or result.module
        return result

    # ------------------------------------------------------------------
    # Execution protocol
    # ------------------------------------------------------------------

    def _execute(
        self,
        label: str,
        operation: Callable[[ServerConnection], T],
        document: Optional[str] = None,
        chain: Optional[CallChain] = None,
    ) -> T:
        chain = chain or CallChain()
        while True:
            try:
                connection = self._ready_connection()
                if document is not None:
                    self._ensure_document_open(connection, document)
                self.state = SessionState.IN_FLIGHT
                try:
                    return operation(connection)
                finally:
                    if self.state is SessionState.IN_FLIGHT:
                        self.state = SessionState.READY
            except SessionClosed:
                raise
            except (MonocleError, OSError) as exc:
                if chain.restarted or not is_transient_failure(exc):
                    raise
                chain.restarted = True
                logger.warning("%s failed (%s); restarting SourceKit-LSP and retrying once", label, exc)
                self.restart()

    def _ready_connection(self) -> ServerConnection:
        if self.state is SessionState.SHUT_DOWN:
            raise SessionClosed()
        self.state = SessionState.ACQUIRING
        try:
            connection = self._service.acquire_connection(self.workspace, self.toolchain)
        except MonocleError:
            self.state = SessionState.UNINITIALIZED
            raise
        if connection.generation != self._connection_identity:
            self._connection_identity = connection.generation
            self.generation += 1
            self._opened.clear()
            logger.debug("Session for %s now on generation %d", self.workspace.root_path, self.generation)
        self.state = SessionState.READY
        return connection

    def _ensure_document_open(self, connection: ServerConnection, path: str) -> None:
        if self._opened.get(path) == self.generation:
            return

        def open_document() -> None:
            try:
                text = Path(path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise MonocleIOError(f"Could not read {path}: {exc}") from exc
            connection.rpc.notify("textDocument/didOpen", {
                "textDocument": {
                    "uri": path_to_uri(path),
                    "languageId": LANGUAGE_ID,
                    "version": 1,
                    "text": text,
                },
            })

        budget = self.settings.timeouts.open_document
        future = self._executor.submit(open_document)
        try:
            future.result(timeout=budget)
        except concurrent.futures.TimeoutError:
            raise Timeout(budget, "textDocument/didOpen") from None
        self._opened[path] = self.generation

    def _read_source(self, reader: Callable[..., T], *args: Any) -> T:
        """Run a source file read under the document-open budget."""
        budget = self.settings.timeouts.open_document
        future = self._executor.submit(reader, *args)
        try:
            return future.result(timeout=budget)
        except concurrent.futures.TimeoutError:
            raise Timeout(budget, "source read") from None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _empty_result_budget(self) -> Tuple[int, float]:
        policy = self.settings.search_retry
        if self.workspace.is_package:
            return max(policy.package_attempts, 1), policy.package_delay
        return max(policy.ide_attempts, 1), policy.ide_delay

    @staticmethod
    def _document_path(file: str, line: int, column: int) -> str:
        if line < 1 or column < 1:
            raise ValueError("line and column are one-based and must be >= 1")
        return str(Path(file).expanduser().resolve())

    @staticmethod
    def _position_params(path: str, line: int, column: int) -> Dict[str, Any]:
        return {
            "textDocument": {"uri": path_to_uri(path)},
            "position": to_lsp_position(line, column),
        }

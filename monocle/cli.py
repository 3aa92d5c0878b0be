"""Typer-based CLI for monocle Swift symbol inspection."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from . import __version__, config
from .config import Settings
from .daemon import run_daemon
from .daemon_client import DaemonClient, DaemonSymbolBackend
from .dependencies import PackageCheckoutLocator
from .errors import DaemonError, MonocleError, ProcessLaunchFailed
from .models import SymbolInfo, SymbolSearchScope, SymbolSearchSourcePreference, Workspace
from .printer import (
    print_daemon_status,
    print_package_checkouts,
    print_symbol_info,
    print_symbol_search_results,
)
from .session import LspSession
from .sourcekit import detect_sourcekit_version
from .symbol_search import LocalSymbolBackend, SearchRequest, SymbolBackend, SymbolSearchService
from .workspace import WorkspaceLocator

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)

app = typer.Typer(
    help="Inspect Swift symbols through SourceKit-LSP.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

daemon_app = typer.Typer(
    help="Manage the background session daemon.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(daemon_app, name="daemon")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"monocle {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", help="Log debug output to the console."),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """monocle: definition, hover and symbol search for Swift workspaces."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
        )


# ── helpers ──────────────────────────────────────────────────

def _fail(exc: MonocleError) -> None:
    err_console.print(f"[red]Error:[/red] {exc.message}", markup=True, highlight=False)
    raise typer.Exit(code=1)


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _daemon_client(settings: Settings) -> Optional[DaemonClient]:
    """A running daemon client, or ``None`` to work in-process."""
    if settings.daemon_disabled:
        return None
    client = DaemonClient()
    try:
        client.ensure_running()
    except DaemonError as exc:
        logger.warning("Daemon unavailable, running in-process: %s", exc)
        return None
    return client


def _session_factory(settings: Settings) -> Callable[[Workspace], LspSession]:
    return lambda workspace: LspSession(workspace, settings=settings)


def _position_command(method: str, file: Path, line: int, column: int, workspace: Optional[Path]) -> SymbolInfo:
    settings = config.load_settings()
    resolved = WorkspaceLocator.locate(str(workspace) if workspace else None, str(file))
    client = _daemon_client(settings)
    if client is not None:
        return client.inspect(resolved.root_path, str(file), line, column, method=method)

    session = LspSession(resolved, settings=settings)
    try:
        if method == "definition":
            return session.definition(str(file), line, column)
        if method == "hover":
            return session.hover(str(file), line, column)
        return session.inspect_symbol(str(file), line, column)
    finally:
        session.shutdown()


def _run_position(method: str, file: Path, line: int, column: int, workspace: Optional[Path], as_json: bool) -> None:
    try:
        info = _position_command(method, file, line, column, workspace)
    except MonocleError as exc:
        _fail(exc)
        return
    if as_json:
        _emit_json(info.to_dict())
    else:
        print_symbol_info(info)


FILE_OPTION = typer.Option(..., "--file", "-f", exists=True, dir_okay=False, help="Swift source file.")
LINE_OPTION = typer.Option(..., "--line", "-l", min=1, help="One-based line number.")
COLUMN_OPTION = typer.Option(..., "--column", "-c", min=1, help="One-based column number.")
WORKSPACE_OPTION = typer.Option(None, "--workspace", "-w", help="Workspace root, .xcodeproj or .xcworkspace.")
JSON_OPTION = typer.Option(False, "--json", help="Print JSON instead of human-readable output.")


# ── symbol commands ──────────────────────────────────────────

@app.command("inspect")
def inspect(
    file: Path = FILE_OPTION,
    line: int = LINE_OPTION,
    column: int = COLUMN_OPTION,
    workspace: Optional[Path] = WORKSPACE_OPTION,
    as_json: bool = JSON_OPTION,
):
    """Show definition, signature and documentation for the symbol at a position."""
    _run_position("inspect", file, line, column, workspace, as_json)


@app.command("definition")
def definition(
    file: Path = FILE_OPTION,
    line: int = LINE_OPTION,
    column: int = COLUMN_OPTION,
    workspace: Optional[Path] = WORKSPACE_OPTION,
    as_json: bool = JSON_OPTION,
):
    """Show where the symbol at a position is defined."""
    _run_position("definition", file, line, column, workspace, as_json)


@app.command("hover")
def hover(
    file: Path = FILE_OPTION,
    line: int = LINE_OPTION,
    column: int = COLUMN_OPTION,
    workspace: Optional[Path] = WORKSPACE_OPTION,
    as_json: bool = JSON_OPTION,
):
    """Show the signature and documentation of the symbol at a position."""
    _run_position("hover", file, line, column, workspace, as_json)


@app.command("symbol")
def symbol(
    query: str = typer.Option(..., "--query", "-q", help="Symbol name to search for."),
    workspace: Optional[Path] = WORKSPACE_OPTION,
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of results."),
    enrich: bool = typer.Option(False, "--enrich", help="Attach signature and documentation to results."),
    exact: bool = typer.Option(False, "--exact", help="Only keep exact name matches."),
    scope: str = typer.Option("all", "--scope", help="all, project, or package (alias: dependency)."),
    prefer: str = typer.Option("project", "--prefer", help="project, package, or none."),
    context_lines: int = typer.Option(0, "--context-lines", min=0, help="Source lines of context per result."),
    as_json: bool = JSON_OPTION,
):
    """Search workspace symbols, including checked-out package dependencies."""
    try:
        request = SearchRequest(
            query=query,
            limit=limit,
            enrich=enrich,
            scope=SymbolSearchScope.parse(scope),
            preference=SymbolSearchSourcePreference.parse(prefer),
            exact=exact,
            context_lines=context_lines,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    settings = config.load_settings()
    local: Optional[LocalSymbolBackend] = None
    try:
        resolved = WorkspaceLocator.locate(str(workspace) if workspace else None, str(Path.cwd()))
        client = _daemon_client(settings)
        backend: SymbolBackend
        if client is not None:
            backend = DaemonSymbolBackend(client)
        else:
            local = LocalSymbolBackend(_session_factory(settings))
            backend = local
        ranked = SymbolSearchService(backend).search(resolved, request)
    except MonocleError as exc:
        _fail(exc)
        return
    finally:
        if local is not None:
            local.close()

    if as_json:
        _emit_json({
            "results": [entry.result.to_dict() for entry in ranked],
            "ranked": [entry.to_dict() for entry in ranked],
        })
    else:
        print_symbol_search_results(ranked)


@app.command("packages")
def packages(
    workspace: Optional[Path] = WORKSPACE_OPTION,
    as_json: bool = JSON_OPTION,
):
    """List checked-out Swift package dependencies of a workspace."""
    try:
        resolved = WorkspaceLocator.locate(str(workspace) if workspace else None, str(Path.cwd()))
        checkouts = PackageCheckoutLocator().checked_out_packages(resolved)
    except MonocleError as exc:
        _fail(exc)
        return

    if as_json:
        _emit_json({"workspace": resolved.to_dict(), "packages": [item.to_dict() for item in checkouts]})
    else:
        print_package_checkouts(checkouts, resolved)


@app.command("version")
def version(
    as_json: bool = JSON_OPTION,
):
    """Show monocle and SourceKit-LSP versions."""
    settings = config.load_settings()
    command: Optional[List[str]] = None
    if settings.toolchain is not None and settings.toolchain.sourcekit_path:
        command = [settings.toolchain.sourcekit_path]
    try:
        sourcekit = detect_sourcekit_version(command)
    except ProcessLaunchFailed as exc:
        logger.debug("sourcekit-lsp version unavailable: %s", exc)
        sourcekit = "unavailable"

    if as_json:
        _emit_json({"monocle": __version__, "sourcekitLsp": sourcekit})
    else:
        typer.echo(f"monocle {__version__}")
        typer.echo(f"sourcekit-lsp {sourcekit}")


# ── daemon commands ──────────────────────────────────────────

@daemon_app.command("start")
def daemon_start():
    """Start the daemon in the background if it is not running."""
    client = DaemonClient()
    try:
        client.ensure_running()
    except DaemonError as exc:
        _fail(exc)
        return
    typer.echo(f"Daemon running at {client.socket_path}")


@daemon_app.command("stop")
def daemon_stop():
    """Ask a running daemon to shut down."""
    try:
        stopped = DaemonClient().stop()
    except MonocleError as exc:
        _fail(exc)
        return
    typer.echo("Daemon stopped." if stopped else "Daemon is not running.")


@daemon_app.command("status")
def daemon_status(
    as_json: bool = JSON_OPTION,
):
    """Show daemon socket, pid and active sessions."""
    client = DaemonClient()
    if not client.is_running():
        typer.echo("Daemon is not running.")
        raise typer.Exit(code=1)
    try:
        status = client.status()
    except MonocleError as exc:
        _fail(exc)
        return
    if as_json:
        _emit_json(status.to_dict())
    else:
        print_daemon_status(status)


@daemon_app.command("serve")
def daemon_serve():
    """Run the daemon in the foreground."""
    try:
        run_daemon()
    except MonocleError as exc:
        _fail(exc)


if __name__ == "__main__":
    app()

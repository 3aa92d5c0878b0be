"""Human-readable rendering of monocle results."""

from __future__ import annotations

from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .models import (
    DaemonStatus,
    PackageCheckout,
    RankedSymbolSearchResult,
    SymbolInfo,
    SymbolSearchSource,
    SymbolSearchSourceKind,
    Workspace,
    uri_to_path,
)

console = Console(highlight=False)


def print_symbol_info(info: SymbolInfo, out: Optional[Console] = None) -> None:
    out = out or console
    if info.symbol:
        out.print(f"[bold]Symbol:[/bold] {escape(info.symbol)}")
    if info.kind:
        out.print(f"[bold]Kind:[/bold] {escape(info.kind)}")
    if info.module:
        out.print(f"[bold]Module:[/bold] {escape(info.module)}")
    if info.signature:
        out.print("\n[bold]Signature:[/bold]")
        out.print(escape(info.signature))
    if info.definition:
        definition = info.definition
        out.print(
            f"\n[bold]Definition:[/bold] {escape(definition.uri)}:{definition.start_line}-{definition.end_line}"
        )
        if definition.snippet:
            out.print("\n[bold]Snippet:[/bold]")
            out.print(escape(definition.snippet))
    if info.documentation:
        out.print("\n[bold]Documentation:[/bold]")
        out.print(escape(info.documentation))


def source_label(source: SymbolSearchSource) -> Optional[str]:
    if source.kind is SymbolSearchSourceKind.PROJECT:
        return "project"
    if source.kind is SymbolSearchSourceKind.PACKAGE:
        return f"package:{source.package_name}" if source.package_name else "package"
    return None


def print_symbol_search_results(results: List[RankedSymbolSearchResult], out: Optional[Console] = None) -> None:
    out = out or console
    if not results:
        out.print("[yellow]No symbols found.[/yellow]")
        return

    for index, ranked in enumerate(results, start=1):
        result = ranked.result
        header = f"[cyan][{index}][/cyan] [bold]{escape(result.name)}[/bold]"
        if result.container_name:
            header += f" ({escape(result.container_name)})"
        if result.kind:
            header += f" - {escape(result.kind)}"
        label = source_label(ranked.source)
        if label:
            header += f" [dim]\\[{escape(label)}][/dim]"
        out.print(header)

        if result.location is not None:
            location = result.location
            path = uri_to_path(location.uri) or location.uri
            out.print(f"    {escape(path)}:{location.start_line}")
            if location.snippet:
                for line in location.snippet.split("\n"):
                    out.print(f"    {escape(line)}")
        elif result.document_uri:
            out.print(f"    {escape(uri_to_path(result.document_uri) or result.document_uri)}")
        if result.signature:
            out.print(f"    {escape(result.signature)}")
        if result.documentation:
            out.print(f"    [dim]{escape(result.documentation)}[/dim]")


def print_package_checkouts(
    packages: List[PackageCheckout],
    workspace: Workspace,
    out: Optional[Console] = None,
) -> None:
    out = out or console
    out.print(f"[bold]Workspace:[/bold] {escape(workspace.root_path)} \\[{workspace.kind.value}]")
    if not packages:
        out.print("Checked-out packages: none")
        return

    table = Table(title=f"Checked-out packages ({len(packages)})", show_header=True)
    table.add_column("Package", style="cyan")
    table.add_column("Checkout")
    table.add_column("README", style="dim")
    for package in packages:
        table.add_row(package.package_name, package.checkout_path, package.readme_path or "")
    out.print(table)


def print_daemon_status(status: DaemonStatus, out: Optional[Console] = None) -> None:
    out = out or console
    out.print(f"Daemon socket: {escape(status.socket_path)}")
    out.print(f"Daemon PID: {status.daemon_process_identifier}")
    out.print(f"Idle session timeout: {status.idle_session_timeout_seconds}s")
    out.print(f"Logs: {escape(status.log_file_path)}")
    if not status.active_sessions:
        out.print("Active sessions: none")
        return

    table = Table(title=f"Active sessions ({len(status.active_sessions)})", show_header=True)
    table.add_column("Workspace", style="cyan")
    table.add_column("Kind")
    table.add_column("Last used", style="dim")
    for session in status.active_sessions:
        table.add_row(session.workspace_root_path, session.kind.value, session.last_used_iso8601)
    out.print(table)

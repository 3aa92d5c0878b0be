"""Workspace symbol search with dependency augmentation.

In build-server mode SourceKit-LSP often answers ``workspace/symbol`` only
from the main target graph, so a type that lives in a package dependency is
missing. :class:`SymbolSearchService` fills the gap: it searches plausible
dependency checkouts as SwiftPM workspaces of their own, falls back to a
textual declaration scan, then deduplicates and ranks everything.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from .dependencies import PackageCheckoutLocator, local_package_root_paths
from .errors import MonocleError
from .models import (
    PackageCheckout,
    RankedSymbolSearchResult,
    SymbolInfo,
    SymbolLocation,
    SymbolSearchResult,
    SymbolSearchScope,
    SymbolSearchSourcePreference,
    Workspace,
    path_to_uri,
    uri_to_path,
)
from .ranking import SymbolSearchRanker
from .session import LspSession
from .workspace import WorkspaceLocator

logger = logging.getLogger(__name__)

TYPE_KINDS = frozenset({"class", "struct", "enum", "protocol"})
SKIPPED_DIRECTORIES = frozenset({".git", ".build", ".swiftpm"})
MAX_SCANNED_ENTRIES = 5000
MIN_FALLBACK_CANDIDATES = 5


class SymbolBackend(Protocol):
    """Something that can run searches and inspections rooted at a path."""

    def search_symbols(self, root_path: str, query: str, limit: int, enrich: bool) -> List[SymbolSearchResult]:
        ...

    def inspect_symbol(self, root_path: str, file: str, line: int, column: int) -> SymbolInfo:
        ...


@dataclass
class SearchRequest:
    query: str
    limit: int = 20
    enrich: bool = False
    scope: SymbolSearchScope = SymbolSearchScope.ALL
    preference: SymbolSearchSourcePreference = SymbolSearchSourcePreference.PROJECT
    exact: bool = False
    context_lines: int = 0


@dataclass
class TypeDeclaration:
    """A textual ``enum|struct|class|protocol <Name>`` match."""

    kind: str
    file_path: str
    line: int
    column: int
    line_snippet: str

    def location(self) -> SymbolLocation:
        return SymbolLocation(
            uri=path_to_uri(self.file_path),
            start_line=self.line,
            start_character=self.column,
            end_line=self.line,
            end_character=self.column,
            snippet=self.line_snippet,
        )


def candidate_limit(limit: int, enrich: bool) -> int:
    """How many raw results to request before ranking trims to ``limit``."""
    if enrich:
        return min(max(limit * 3, 20), 120)
    return min(max(limit * 20, 50), 500)


def package_search_limit(candidates: int) -> int:
    return min(max(candidates, 20), 50)


def is_type_kind(kind: Optional[str]) -> bool:
    return kind in TYPE_KINDS


def matches_type_query(name: str, query: str) -> bool:
    """Case-insensitive name equality, or a qualified name ending in ``.query``."""
    normalized_name = name.lower()
    normalized_query = query.lower()
    return normalized_name == normalized_query or normalized_name.endswith("." + normalized_query)


def contains_exact_type_match(results: List[SymbolSearchResult], query: str) -> bool:
    return any(matches_type_query(result.name, query) and is_type_kind(result.kind) for result in results)


def deduplicate(results: List[SymbolSearchResult]) -> List[SymbolSearchResult]:
    """Drop later results sharing (name, uri, start line) with an earlier one."""
    seen = set()
    unique = []
    for result in results:
        key = result.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def _walk_limited(root: Path) -> Iterator[Path]:
    """Yield entries under ``root``, skipping build/VCS folders, capped at MAX_SCANNED_ENTRIES."""
    scanned = 0
    for directory, dirnames, filenames in os.walk(root):
        dirnames.sort()
        kept = []
        for name in dirnames:
            scanned += 1
            if scanned > MAX_SCANNED_ENTRIES:
                return
            if name not in SKIPPED_DIRECTORIES:
                kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            scanned += 1
            if scanned > MAX_SCANNED_ENTRIES:
                return
            yield Path(directory) / name


def has_likely_declaration(symbol_name: str, package_root: str) -> bool:
    """Cheap check that a dependency might declare ``symbol_name``."""
    root = Path(package_root)
    sources = root / "Sources"
    search_root = sources if sources.exists() else root
    preferred = f"{symbol_name}.swift"
    lowered = symbol_name.lower()

    for path in _walk_limited(search_root):
        if path.name == preferred:
            return True
        if path.suffix != ".swift" or lowered not in path.name.lower():
            continue
        try:
            contents = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if f" {symbol_name}" in contents:
            return True
    return False


def find_type_declarations(type_name: str, package_root: str, maximum: int) -> List[TypeDeclaration]:
    """Scan ``Sources/`` for the first type declaration of ``type_name`` in each file."""
    sources = Path(package_root) / "Sources"
    if maximum <= 0 or not sources.exists():
        return []
    pattern = re.compile(r"\b(enum|struct|class|protocol)\s+" + re.escape(type_name) + r"\b")

    declarations: List[TypeDeclaration] = []
    for directory, dirnames, filenames in os.walk(sources):
        dirnames[:] = sorted(name for name in dirnames if name not in SKIPPED_DIRECTORIES)
        for name in sorted(filenames):
            if not name.endswith(".swift"):
                continue
            path = Path(directory) / name
            try:
                contents = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            match = pattern.search(contents)
            if match is None:
                continue
            name_offset = match.start() + match.group(0).rindex(type_name)
            line = contents.count("\n", 0, name_offset) + 1
            line_start = contents.rfind("\n", 0, name_offset) + 1
            line_end = contents.find("\n", name_offset)
            snippet = contents[line_start:line_end if line_end >= 0 else len(contents)]
            declarations.append(TypeDeclaration(
                kind=match.group(1),
                file_path=str(path),
                line=line,
                column=name_offset - line_start + 1,
                line_snippet=snippet,
            ))
            if len(declarations) >= maximum:
                return declarations
    return declarations


def context_snippet(file_path: str, line: int, context_lines: int) -> Optional[str]:
    """Lines ``line - N .. line + N`` prefixed with right-aligned numbers and ``" | "``."""
    if context_lines < 0:
        return None
    try:
        lines = Path(file_path).read_text(encoding="utf-8").split("\n")
    except (OSError, UnicodeDecodeError):
        return None
    if line < 1 or line > len(lines):
        return None
    start = max(line - context_lines - 1, 0)
    end = min(line + context_lines - 1, len(lines) - 1)
    width = len(str(end + 1))
    return "\n".join(f"{index + 1:>{width}} | {lines[index]}" for index in range(start, end + 1))


def apply_context_lines(
    ranked: List[RankedSymbolSearchResult],
    context_lines: int,
) -> List[RankedSymbolSearchResult]:
    updated = []
    for entry in ranked:
        location = entry.result.location
        path = uri_to_path(location.uri) if location else None
        snippet = context_snippet(path, location.start_line, context_lines) if location and path else None
        if snippet is None:
            updated.append(entry)
            continue
        result = replace(entry.result, location=replace(location, snippet=snippet))
        updated.append(entry.with_result(result))
    return updated


class SymbolSearchService:
    """Ranked symbol search for a workspace, augmented with dependency results."""

    def __init__(
        self,
        backend: SymbolBackend,
        checkout_locator: Optional[PackageCheckoutLocator] = None,
    ) -> None:
        self.backend = backend
        self.checkout_locator = checkout_locator or PackageCheckoutLocator()

    def search(self, workspace: Workspace, request: SearchRequest) -> List[RankedSymbolSearchResult]:
        if request.limit <= 0:
            return []

        candidates = candidate_limit(request.limit, request.enrich)
        base = self.backend.search_symbols(workspace.root_path, request.query, candidates, request.enrich)
        merged = self.augment(workspace, request, base, candidates)

        ranker = SymbolSearchRanker(
            query=request.query,
            scope=request.scope,
            preference=request.preference,
            require_exact_match=request.exact,
        )
        ranked = ranker.rank(merged, workspace.root_path)[:request.limit]
        if request.context_lines > 0:
            ranked = apply_context_lines(ranked, request.context_lines)
        return ranked

    def augment(
        self,
        workspace: Workspace,
        request: SearchRequest,
        results: List[SymbolSearchResult],
        candidates: int,
    ) -> List[SymbolSearchResult]:
        """Add dependency results when the workspace index alone looks incomplete."""
        unique = deduplicate(results)
        if request.scope is SymbolSearchScope.PROJECT:
            return unique
        if request.scope is not SymbolSearchScope.PACKAGE and contains_exact_type_match(unique, request.query):
            return unique

        packages = self.dependency_packages(workspace)
        if packages is None:
            return unique
        plausible = [
            package for package in packages
            if has_likely_declaration(request.query, package.checkout_path)
        ]
        if not plausible:
            return unique
        logger.debug("Searching %d dependency package(s) for %r", len(plausible), request.query)

        additional: List[SymbolSearchResult] = []
        per_package = package_search_limit(candidates)
        for package in plausible:
            found = self.backend.search_symbols(package.checkout_path, request.query, per_package, request.enrich)
            additional.extend(result for result in found if matches_type_query(result.name, request.query))
            if any(is_type_kind(result.kind) for result in additional):
                break

        if not contains_exact_type_match(additional, request.query):
            additional.extend(self.declarations_in_packages(plausible, request))

        return deduplicate(unique + additional)

    def dependency_packages(self, workspace: Workspace) -> Optional[List[PackageCheckout]]:
        """Checkouts plus local lockfile packages, or ``None`` when discovery failed."""
        try:
            checkouts = self.checkout_locator.checked_out_packages(workspace)
        except MonocleError as exc:
            logger.warning("Skipping dependency search: %s", exc)
            return None
        local = [
            PackageCheckout(package_name=Path(root).name, checkout_path=root)
            for root in local_package_root_paths(workspace)
        ]
        return checkouts + local

    def declarations_in_packages(
        self,
        packages: List[PackageCheckout],
        request: SearchRequest,
    ) -> List[SymbolSearchResult]:
        results: List[SymbolSearchResult] = []
        for package in packages:
            declarations = find_type_declarations(
                request.query,
                package.checkout_path,
                max(request.limit, MIN_FALLBACK_CANDIDATES),
            )
            for declaration in declarations:
                results.append(self._declaration_result(package, declaration, request))
                if len(results) >= request.limit:
                    return results
        return results

    def _declaration_result(
        self,
        package: PackageCheckout,
        declaration: TypeDeclaration,
        request: SearchRequest,
    ) -> SymbolSearchResult:
        location = declaration.location()
        info: Optional[SymbolInfo] = None
        if request.enrich:
            info = self.backend.inspect_symbol(
                package.checkout_path,
                declaration.file_path,
                declaration.line,
                declaration.column,
            )
            location = info.definition or location
        return SymbolSearchResult(
            name=request.query,
            kind=declaration.kind,
            module=info.module if info else None,
            location=location,
            document_uri=location.uri,
            signature=info.signature if info else None,
            documentation=info.documentation if info else None,
        )


class LocalSymbolBackend:
    """Runs searches in-process with one :class:`LspSession` per root path."""

    def __init__(self, session_factory: Callable[[Workspace], LspSession] = LspSession) -> None:
        self._session_factory = session_factory
        self._sessions: Dict[str, LspSession] = {}

    def _session(self, root_path: str) -> LspSession:
        if root_path not in self._sessions:
            workspace = WorkspaceLocator.locate(root_path, root_path)
            self._sessions[root_path] = self._session_factory(workspace)
        return self._sessions[root_path]

    def search_symbols(self, root_path: str, query: str, limit: int, enrich: bool) -> List[SymbolSearchResult]:
        return self._session(root_path).search_symbols(query, limit=limit, enrich=enrich)

    def inspect_symbol(self, root_path: str, file: str, line: int, column: int) -> SymbolInfo:
        return self._session(root_path).inspect_symbol(file, line, column)

    def close(self) -> None:
        for session in self._sessions.values():
            session.shutdown()
        self._sessions.clear()

"""Conversions between LSP payloads and monocle models."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from lsprotocol.types import SymbolKind

from .models import SymbolLocation, SymbolSearchResult, uri_to_path

_FENCE = re.compile(r"^```[\w-]*\s*$")
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# Swift protocols are reported as LSP interfaces.
_KIND_OVERRIDES = {SymbolKind.Interface: "protocol"}


@dataclass
class HoverRender:
    signature: Optional[str] = None
    documentation: Optional[str] = None
    symbol: Optional[str] = None
    kind: Optional[str] = None
    module: Optional[str] = None


def symbol_kind_name(kind: Any) -> Optional[str]:
    """Map an LSP ``SymbolKind`` number to a lower-camel kind name."""
    if kind is None:
        return None
    try:
        member = SymbolKind(int(kind))
    except (TypeError, ValueError):
        return None
    if member in _KIND_OVERRIDES:
        return _KIND_OVERRIDES[member]
    return member.name[0].lower() + member.name[1:]


def to_location(uri: str, lsp_range: Dict[str, Any], snippet: Optional[str] = None) -> SymbolLocation:
    """Convert a zero-based LSP range into a one-based location."""
    start = lsp_range.get("start", {})
    end = lsp_range.get("end", start)
    return SymbolLocation(
        uri=uri,
        start_line=int(start.get("line", 0)) + 1,
        start_character=int(start.get("character", 0)) + 1,
        end_line=int(end.get("line", 0)) + 1,
        end_character=int(end.get("character", 0)) + 1,
        snippet=snippet,
    )


def to_lsp_position(line: int, column: int) -> Dict[str, int]:
    """Convert one-based API coordinates to a zero-based LSP position."""
    return {"line": line - 1, "character": column - 1}


def first_definition_target(result: Any) -> Optional[Dict[str, Any]]:
    """Normalize ``Location | Location[] | LocationLink[]`` to ``{uri, range}``."""
    if not result:
        return None
    entry = result[0] if isinstance(result, list) else result
    if not isinstance(entry, dict):
        return None
    if "targetUri" in entry:
        return {
            "uri": entry["targetUri"],
            "range": entry.get("targetSelectionRange") or entry.get("targetRange") or {},
        }
    if "uri" in entry:
        return {"uri": entry["uri"], "range": entry.get("range") or {}}
    return None


def extract_snippet(uri: str, lsp_range: Dict[str, Any]) -> Optional[str]:
    """Return the source lines covered by a zero-based range, if readable."""
    path = uri_to_path(uri)
    if path is None:
        return None
    try:
        contents = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    lines = contents.split("\n")
    start = int(lsp_range.get("start", {}).get("line", 0))
    end = int(lsp_range.get("end", {}).get("line", start))
    if start >= len(lines) or end >= len(lines):
        return None
    return "\n".join(lines[start:end + 1])


def hover_text(contents: Any) -> str:
    """Flatten ``MarkupContent``, ``MarkedString`` or a list of them."""
    if contents is None:
        return ""
    if isinstance(contents, str):
        return contents
    if isinstance(contents, list):
        return "\n\n".join(hover_text(item) for item in contents)
    if isinstance(contents, dict):
        return str(contents.get("value", ""))
    return str(contents)


def render_hover(contents: Any) -> HoverRender:
    """Split hover text into a signature block and documentation.

    The first paragraph is treated as the signature; everything after the
    first blank line is documentation.
    """
    value = hover_text(contents).strip()
    if not value:
        return HoverRender()
    blocks = value.split("\n\n")
    signature = _strip_fences(blocks[0]) or None
    rest = [block for block in blocks[1:] if block.strip() not in ("---", "***")]
    documentation = "\n\n".join(rest).strip() or None
    return HoverRender(
        signature=signature,
        documentation=documentation,
        symbol=symbol_name_from_signature(signature),
        kind=symbol_kind_from_signature(signature),
    )


_SIGNATURE_KINDS = {
    "class": "class",
    "struct": "struct",
    "enum": "enum",
    "protocol": "protocol",
    "actor": "class",
    "func": "function",
    "var": "variable",
    "let": "constant",
    "case": "enumMember",
    "init": "constructor",
    "typealias": "typeParameter",
    "extension": "namespace",
}


def symbol_kind_from_signature(signature: Optional[str]) -> Optional[str]:
    if not signature:
        return None
    for token in _IDENTIFIER.findall(signature.split("\n")[0]):
        if token in _SIGNATURE_KINDS:
            return _SIGNATURE_KINDS[token]
    return None


def symbol_name_from_signature(signature: Optional[str]) -> Optional[str]:
    """Best-effort declared name from a Swift signature line."""
    if not signature:
        return None
    keywords = {
        "func", "var", "let", "class", "struct", "enum", "protocol", "actor",
        "typealias", "case", "init", "subscript", "extension", "associatedtype",
    }
    tokens = _IDENTIFIER.findall(signature.split("\n")[0])
    for index, token in enumerate(tokens):
        if token in keywords:
            if token in ("init", "subscript"):
                return token
            if index + 1 < len(tokens):
                return tokens[index + 1]
    return None


def identifier_at(path: str, line: int, column: int) -> Optional[str]:
    """Return the identifier covering a one-based position in a file."""
    try:
        lines = Path(path).read_text(encoding="utf-8").split("\n")
    except (OSError, UnicodeDecodeError):
        return None
    if line < 1 or line > len(lines):
        return None
    text = lines[line - 1]
    for match in _IDENTIFIER.finditer(text):
        if match.start() <= column - 1 < match.end():
            return match.group(0)
    return None


def workspace_symbol_results(payload: Any) -> List[SymbolSearchResult]:
    """Map ``SymbolInformation[]`` / ``WorkspaceSymbol[]`` to search results."""
    results: List[SymbolSearchResult] = []
    for item in payload or []:
        if not isinstance(item, dict) or "name" not in item:
            continue
        raw_location = item.get("location") or {}
        uri = raw_location.get("uri")
        location = None
        if uri and "range" in raw_location:
            location = to_location(uri, raw_location["range"])
        results.append(SymbolSearchResult(
            name=item["name"],
            kind=symbol_kind_name(item.get("kind")),
            container_name=item.get("containerName") or None,
            location=location,
            document_uri=uri,
        ))
    return results


def _strip_fences(block: str) -> str:
    lines = [line for line in block.strip().split("\n") if not _FENCE.match(line.strip())]
    return "\n".join(lines).strip()

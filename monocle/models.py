"""Core data models shared by the session, ranking, and daemon layers.

All models serialise to camelCase dictionaries, which is the shape used on the
daemon socket and by ``--json`` output.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from .errors import UnsupportedWorkspaceKind


class WorkspaceKind(str, Enum):
    SWIFT_PACKAGE = "swiftPackage"
    XCODE_PROJECT = "xcodeProject"
    XCODE_WORKSPACE = "xcodeWorkspace"

    @classmethod
    def parse(cls, value: str) -> "WorkspaceKind":
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedWorkspaceKind(f"Unsupported workspace kind: {value!r}.") from None


class SymbolSearchScope(str, Enum):
    ALL = "all"
    PROJECT = "project"
    PACKAGE = "package"

    @classmethod
    def parse(cls, value: str) -> "SymbolSearchScope":
        normalized = value.strip().lower()
        if normalized == "dependency":
            return cls.PACKAGE
        return cls(normalized)


class SymbolSearchSourcePreference(str, Enum):
    PROJECT = "project"
    PACKAGE = "package"
    NONE = "none"

    @classmethod
    def parse(cls, value: str) -> "SymbolSearchSourcePreference":
        normalized = value.strip().lower()
        if normalized == "dependency":
            return cls.PACKAGE
        return cls(normalized)


class SymbolSearchSourceKind(str, Enum):
    PROJECT = "project"
    PACKAGE = "package"
    OTHER = "other"


def path_to_uri(path: str) -> str:
    """Convert a filesystem path to a ``file://`` URI."""
    return Path(path).absolute().as_uri()


def uri_to_path(uri: str) -> Optional[str]:
    """Return the filesystem path of a ``file://`` URI, or ``None`` for other schemes."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    return unquote(parsed.path)


@dataclass(frozen=True)
class Workspace:
    """A workspace root plus the project system that describes it."""

    root_path: str
    kind: WorkspaceKind

    @property
    def is_package(self) -> bool:
        return self.kind is WorkspaceKind.SWIFT_PACKAGE

    def to_dict(self) -> Dict[str, Any]:
        return {"rootPath": self.root_path, "kind": self.kind.value}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Workspace":
        return cls(root_path=payload["rootPath"], kind=WorkspaceKind.parse(payload["kind"]))


@dataclass(frozen=True)
class ToolchainConfiguration:
    """Optional override of the SourceKit-LSP binary or developer directory."""

    developer_directory: Optional[str] = None
    sourcekit_path: Optional[str] = None


@dataclass
class SymbolLocation:
    """A source range with one-based lines and columns."""

    uri: str
    start_line: int
    start_character: int
    end_line: int
    end_character: int
    snippet: Optional[str] = None

    @property
    def path(self) -> Optional[str]:
        return uri_to_path(self.uri)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "uri": self.uri,
            "startLine": self.start_line,
            "startCharacter": self.start_character,
            "endLine": self.end_line,
            "endCharacter": self.end_character,
        }
        if self.snippet is not None:
            payload["snippet"] = self.snippet
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SymbolLocation":
        return cls(
            uri=payload["uri"],
            start_line=int(payload["startLine"]),
            start_character=int(payload["startCharacter"]),
            end_line=int(payload["endLine"]),
            end_character=int(payload["endCharacter"]),
            snippet=payload.get("snippet"),
        )


@dataclass
class SymbolInfo:
    """Definition and hover information for one symbol position."""

    symbol: Optional[str] = None
    kind: Optional[str] = None
    module: Optional[str] = None
    definition: Optional[SymbolLocation] = None
    signature: Optional[str] = None
    documentation: Optional[str] = None

    def merged_with_hover(self, hover: "SymbolInfo") -> "SymbolInfo":
        """Overlay hover-derived fields; hover wins for signature and documentation."""
        return SymbolInfo(
            symbol=hover.symbol or self.symbol,
            kind=hover.kind or self.kind,
            module=hover.module or self.module,
            definition=self.definition or hover.definition,
            signature=hover.signature or self.signature,
            documentation=hover.documentation or self.documentation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "symbol": self.symbol,
            "kind": self.kind,
            "module": self.module,
            "definition": self.definition.to_dict() if self.definition else None,
            "signature": self.signature,
            "documentation": self.documentation,
        })

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SymbolInfo":
        definition = payload.get("definition")
        return cls(
            symbol=payload.get("symbol"),
            kind=payload.get("kind"),
            module=payload.get("module"),
            definition=SymbolLocation.from_dict(definition) if definition else None,
            signature=payload.get("signature"),
            documentation=payload.get("documentation"),
        )


@dataclass
class SymbolSearchResult:
    """A raw, unranked workspace symbol match."""

    name: str
    kind: Optional[str] = None
    container_name: Optional[str] = None
    module: Optional[str] = None
    location: Optional[SymbolLocation] = None
    document_uri: Optional[str] = None
    signature: Optional[str] = None
    documentation: Optional[str] = None

    @property
    def path(self) -> Optional[str]:
        """Filesystem path of the result, falling back to the raw URI."""
        uri = self.location.uri if self.location else self.document_uri
        if uri is None:
            return None
        return uri_to_path(uri) or uri

    def dedup_key(self) -> tuple:
        uri = self.location.uri if self.location else self.document_uri
        start_line = self.location.start_line if self.location else None
        return (self.name, uri, start_line)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "kind": self.kind,
            "containerName": self.container_name,
            "module": self.module,
            "location": self.location.to_dict() if self.location else None,
            "documentURI": self.document_uri,
            "signature": self.signature,
            "documentation": self.documentation,
        })

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SymbolSearchResult":
        location = payload.get("location")
        return cls(
            name=payload["name"],
            kind=payload.get("kind"),
            container_name=payload.get("containerName"),
            module=payload.get("module"),
            location=SymbolLocation.from_dict(location) if location else None,
            document_uri=payload.get("documentURI"),
            signature=payload.get("signature"),
            documentation=payload.get("documentation"),
        )


@dataclass(frozen=True)
class SymbolSearchSource:
    kind: SymbolSearchSourceKind
    package_name: Optional[str] = None
    is_derived_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "kind": self.kind.value,
            "packageName": self.package_name,
            "isDerivedData": self.is_derived_data,
        })


@dataclass
class RankedSymbolSearchResult:
    result: SymbolSearchResult
    source: SymbolSearchSource
    score: int
    is_exact_match: bool

    def with_result(self, result: SymbolSearchResult) -> "RankedSymbolSearchResult":
        return replace(self, result=result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.to_dict(),
            "source": self.source.to_dict(),
            "score": self.score,
            "isExactMatch": self.is_exact_match,
        }


@dataclass
class PackageCheckout:
    """A locally materialised Swift package dependency."""

    package_name: str
    checkout_path: str
    readme_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "packageName": self.package_name,
            "checkoutPath": self.checkout_path,
            "readmePath": self.readme_path,
        })


@dataclass
class DaemonSessionSummary:
    workspace_root_path: str
    kind: WorkspaceKind
    last_used_iso8601: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspaceRootPath": self.workspace_root_path,
            "kind": self.kind.value,
            "lastUsedISO8601": self.last_used_iso8601,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DaemonSessionSummary":
        return cls(
            workspace_root_path=payload["workspaceRootPath"],
            kind=WorkspaceKind.parse(payload["kind"]),
            last_used_iso8601=payload["lastUsedISO8601"],
        )


@dataclass
class DaemonStatus:
    socket_path: str
    daemon_process_identifier: int
    idle_session_timeout_seconds: int
    log_file_path: str
    active_sessions: List[DaemonSessionSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "socketPath": self.socket_path,
            "daemonProcessIdentifier": self.daemon_process_identifier,
            "idleSessionTimeoutSeconds": self.idle_session_timeout_seconds,
            "logFilePath": self.log_file_path,
            "activeSessions": [session.to_dict() for session in self.active_sessions],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DaemonStatus":
        return cls(
            socket_path=payload["socketPath"],
            daemon_process_identifier=int(payload["daemonProcessIdentifier"]),
            idle_session_timeout_seconds=int(payload["idleSessionTimeoutSeconds"]),
            log_file_path=payload["logFilePath"],
            active_sessions=[
                DaemonSessionSummary.from_dict(item) for item in payload.get("activeSessions", [])
            ],
        )


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}

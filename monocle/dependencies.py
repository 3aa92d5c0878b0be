"""Discovery of Swift package dependencies that exist on disk.

Two sources are consulted:

* checkouts materialised by SwiftPM (``<root>/.build/checkouts``) or by Xcode
  (``DerivedData/<Project>-<hash>/SourcePackages/checkouts``), and
* local package paths pinned in an Xcode ``Package.resolved`` lockfile.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set

from .errors import MonocleIOError
from .models import PackageCheckout, Workspace, WorkspaceKind, uri_to_path

logger = logging.getLogger(__name__)

DEFAULT_DERIVED_DATA = Path.home() / "Library" / "Developer" / "Xcode" / "DerivedData"
PACKAGE_RESOLVED = "Package.resolved"
README_NAMES = ("README.md", "README.markdown", "README", "Readme.md", "readme.md")


def derived_data_root() -> Path:
    override = os.environ.get("MONOCLE_DERIVED_DATA")
    return Path(override).expanduser() if override else DEFAULT_DERIVED_DATA


def _children_with_suffix(directory: Path, suffix: str) -> List[Path]:
    try:
        return sorted(
            child for child in directory.iterdir()
            if child.suffix == suffix and not child.name.startswith(".")
        )
    except OSError:
        return []


def package_resolved_path(workspace: Workspace) -> Optional[Path]:
    """Return the Xcode lockfile for a workspace, if exactly one container holds it."""
    root = Path(workspace.root_path)
    if workspace.kind is WorkspaceKind.XCODE_WORKSPACE:
        containers = _children_with_suffix(root, ".xcworkspace")
        relative = Path("xcshareddata") / "swiftpm" / PACKAGE_RESOLVED
    elif workspace.kind is WorkspaceKind.XCODE_PROJECT:
        containers = _children_with_suffix(root, ".xcodeproj")
        relative = Path("project.xcworkspace") / "xcshareddata" / "swiftpm" / PACKAGE_RESOLVED
    else:
        return None

    if len(containers) != 1:
        return None
    candidate = containers[0] / relative
    return candidate if candidate.exists() else None


def read_package_resolved(path: Path) -> Optional[Dict]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        logger.debug("Could not read %s: %s", path, exc)
        return None


def pinned_locations(payload: Dict) -> List[str]:
    """Pin locations from a version 2/3 (``pins[].location``) or 1 lockfile."""
    if isinstance(payload.get("pins"), list):
        return [pin["location"] for pin in payload["pins"] if isinstance(pin, dict) and pin.get("location")]
    pins = (payload.get("object") or {}).get("pins")
    if isinstance(pins, list):
        return [pin["repositoryURL"] for pin in pins if isinstance(pin, dict) and pin.get("repositoryURL")]
    return []


def pinned_identities(payload: Dict) -> Set[str]:
    """Lower-cased package identities named by a lockfile."""
    identities: Set[str] = set()
    pins = payload.get("pins")
    if not isinstance(pins, list):
        pins = (payload.get("object") or {}).get("pins") or []
    for pin in pins:
        if not isinstance(pin, dict):
            continue
        identity = pin.get("identity") or pin.get("package")
        if not identity:
            location = pin.get("location") or pin.get("repositoryURL") or ""
            identity = location.rstrip("/").split("/")[-1]
            if identity.endswith(".git"):
                identity = identity[:-4]
        if identity:
            identities.add(identity.lower())
    return identities


def local_package_root_paths(workspace: Workspace) -> List[str]:
    """Absolute roots of local (path-based) package dependencies of an Xcode workspace."""
    lockfile = package_resolved_path(workspace)
    if lockfile is None:
        return []
    payload = read_package_resolved(lockfile)
    if payload is None:
        return []

    roots: Set[str] = set()
    for location in pinned_locations(payload):
        if location.startswith("file://"):
            path = uri_to_path(location)
        elif location.startswith("/"):
            path = location
        else:
            continue
        if path is None:
            continue
        absolute = os.path.normpath(os.path.abspath(path))
        if Path(absolute, "Package.swift").exists():
            roots.add(absolute)
    return sorted(roots)


def find_readme(checkout: Path) -> Optional[str]:
    for name in README_NAMES:
        candidate = checkout / name
        if candidate.is_file():
            return str(candidate)
    return None


class PackageCheckoutLocator:
    """Lists dependency checkouts for a workspace."""

    def __init__(self, derived_data: Optional[Path] = None) -> None:
        self.derived_data = derived_data or derived_data_root()

    def checked_out_packages(self, workspace: Workspace) -> List[PackageCheckout]:
        """Return the dependency checkouts present on disk, sorted by name.

        Raises:
            MonocleIOError: A checkouts directory exists but cannot be listed.
        """
        if workspace.is_package:
            checkouts_dir: Optional[Path] = Path(workspace.root_path) / ".build" / "checkouts"
            identities: Set[str] = set()
        else:
            checkouts_dir = self.derived_data_checkouts(workspace)
            lockfile = package_resolved_path(workspace)
            payload = read_package_resolved(lockfile) if lockfile else None
            identities = pinned_identities(payload) if payload else set()

        if checkouts_dir is None or not checkouts_dir.is_dir():
            return []

        try:
            entries = sorted(checkouts_dir.iterdir())
        except OSError as exc:
            raise MonocleIOError(f"Could not list {checkouts_dir}: {exc}") from exc

        packages = []
        for entry in entries:
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if identities and entry.name.lower() not in identities:
                continue
            packages.append(PackageCheckout(
                package_name=entry.name,
                checkout_path=str(entry),
                readme_path=find_readme(entry),
            ))
        return packages

    def derived_data_checkouts(self, workspace: Workspace) -> Optional[Path]:
        """Most recently used ``SourcePackages/checkouts`` for an Xcode workspace."""
        suffix = ".xcworkspace" if workspace.kind is WorkspaceKind.XCODE_WORKSPACE else ".xcodeproj"
        containers = _children_with_suffix(Path(workspace.root_path), suffix)
        if not containers:
            return None
        prefix = containers[0].stem + "-"

        try:
            candidates = [
                entry / "SourcePackages" / "checkouts"
                for entry in self.derived_data.iterdir()
                if entry.name.startswith(prefix)
            ]
        except OSError:
            return None

        existing = [path for path in candidates if path.is_dir()]
        if not existing:
            return None
        return max(existing, key=lambda path: path.stat().st_mtime)

"""Workspace discovery from a source file or an explicit path."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .errors import WorkspaceNotFound
from .models import Workspace, WorkspaceKind

logger = logging.getLogger(__name__)

PACKAGE_MANIFEST = "Package.swift"
PROJECT_SUFFIX = ".xcodeproj"
WORKSPACE_SUFFIX = ".xcworkspace"


class WorkspaceLocator:
    """Finds the workspace root that owns a Swift source file.

    Walking up from the file, the nearest directory containing ``Package.swift``
    wins, then one holding an ``.xcodeproj``, then one holding an
    ``.xcworkspace``.
    """

    @classmethod
    def locate(cls, explicit_workspace_path: Optional[str], file_path: str) -> Workspace:
        if explicit_workspace_path:
            return cls.classify(explicit_workspace_path)

        start = Path(file_path).expanduser().absolute()
        current = start if start.is_dir() else start.parent
        while True:
            workspace = cls._workspace_at(current)
            if workspace is not None:
                logger.debug("Located %s workspace at %s", workspace.kind.value, workspace.root_path)
                return workspace
            if current.parent == current:
                raise WorkspaceNotFound(f"No Package.swift, .xcodeproj, or .xcworkspace above {file_path}.")
            current = current.parent

    @staticmethod
    def classify(path: str) -> Workspace:
        """Classify an explicit workspace path by extension or manifest."""
        candidate = Path(path).expanduser().absolute()
        if candidate.suffix == PROJECT_SUFFIX:
            return Workspace(root_path=str(candidate.parent), kind=WorkspaceKind.XCODE_PROJECT)
        if candidate.suffix == WORKSPACE_SUFFIX:
            return Workspace(root_path=str(candidate.parent), kind=WorkspaceKind.XCODE_WORKSPACE)
        if (candidate / PACKAGE_MANIFEST).exists():
            return Workspace(root_path=str(candidate), kind=WorkspaceKind.SWIFT_PACKAGE)
        if candidate.is_dir():
            if _first_child_with_suffix(candidate, PROJECT_SUFFIX) is not None:
                return Workspace(root_path=str(candidate), kind=WorkspaceKind.XCODE_PROJECT)
            if _first_child_with_suffix(candidate, WORKSPACE_SUFFIX) is not None:
                return Workspace(root_path=str(candidate), kind=WorkspaceKind.XCODE_WORKSPACE)
        raise WorkspaceNotFound(f"{path} is not a Swift package, Xcode project, or Xcode workspace.")

    @staticmethod
    def _workspace_at(directory: Path) -> Optional[Workspace]:
        if (directory / PACKAGE_MANIFEST).exists():
            return Workspace(root_path=str(directory), kind=WorkspaceKind.SWIFT_PACKAGE)
        if _first_child_with_suffix(directory, PROJECT_SUFFIX) is not None:
            return Workspace(root_path=str(directory), kind=WorkspaceKind.XCODE_PROJECT)
        if _first_child_with_suffix(directory, WORKSPACE_SUFFIX) is not None:
            return Workspace(root_path=str(directory), kind=WorkspaceKind.XCODE_WORKSPACE)
        return None


def _first_child_with_suffix(directory: Path, suffix: str) -> Optional[Path]:
    try:
        children = sorted(directory.iterdir())
    except OSError:
        return None
    for child in children:
        if child.suffix == suffix:
            return child
    return None

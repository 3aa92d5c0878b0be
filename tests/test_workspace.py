"""Tests for workspace discovery."""

import pytest

from monocle.errors import WorkspaceNotFound
from monocle.models import WorkspaceKind
from monocle.workspace import WorkspaceLocator


class TestLocate:
    """Tests for WorkspaceLocator.locate."""

    def test_file_inside_package(self, swift_package, widget_file):
        workspace = WorkspaceLocator.locate(None, str(widget_file))
        assert workspace.kind is WorkspaceKind.SWIFT_PACKAGE
        assert workspace.root_path == str(swift_package)

    def test_nearest_package_wins(self, swift_package):
        nested = swift_package / "Plugins" / "Inner"
        (nested / "Sources").mkdir(parents=True)
        (nested / "Package.swift").write_text("", encoding="utf-8")
        source = nested / "Sources" / "Inner.swift"
        source.write_text("struct Inner {}\n", encoding="utf-8")

        assert WorkspaceLocator.locate(None, str(source)).root_path == str(nested)

    def test_project_preferred_over_workspace(self, temp_dir):
        root = temp_dir.resolve() / "App"
        (root / "App.xcodeproj").mkdir(parents=True)
        (root / "App.xcworkspace").mkdir()
        (root / "Sources").mkdir()
        source = root / "Sources" / "AppModel.swift"
        source.write_text("", encoding="utf-8")

        workspace = WorkspaceLocator.locate(None, str(source))

        assert workspace.kind is WorkspaceKind.XCODE_PROJECT
        assert workspace.root_path == str(root)

    def test_workspace_only(self, temp_dir):
        root = temp_dir.resolve() / "App"
        (root / "App.xcworkspace").mkdir(parents=True)
        source = root / "main.swift"
        source.write_text("", encoding="utf-8")
        assert WorkspaceLocator.locate(None, str(source)).kind is WorkspaceKind.XCODE_WORKSPACE

    def test_directory_argument_is_checked_itself(self, swift_package):
        assert WorkspaceLocator.locate(None, str(swift_package)).root_path == str(swift_package)

    def test_explicit_path_takes_precedence(self, swift_package, temp_dir):
        other = temp_dir.resolve() / "Other"
        (other / "Other.xcodeproj").mkdir(parents=True)
        widget = swift_package / "Sources" / "Example" / "Widget.swift"

        workspace = WorkspaceLocator.locate(str(other), str(widget))

        assert workspace.kind is WorkspaceKind.XCODE_PROJECT
        assert workspace.root_path == str(other)


class TestClassify:
    """Tests for WorkspaceLocator.classify."""

    def test_xcodeproj_path_uses_parent(self, temp_dir):
        project = temp_dir.resolve() / "App" / "App.xcodeproj"
        project.mkdir(parents=True)
        workspace = WorkspaceLocator.classify(str(project))
        assert workspace.kind is WorkspaceKind.XCODE_PROJECT
        assert workspace.root_path == str(project.parent)

    def test_xcworkspace_path_uses_parent(self, temp_dir):
        container = temp_dir.resolve() / "App" / "App.xcworkspace"
        container.mkdir(parents=True)
        assert WorkspaceLocator.classify(str(container)).kind is WorkspaceKind.XCODE_WORKSPACE

    def test_package_directory(self, swift_package):
        assert WorkspaceLocator.classify(str(swift_package)).kind is WorkspaceKind.SWIFT_PACKAGE

    def test_unrecognised_directory(self, temp_dir):
        with pytest.raises(WorkspaceNotFound) as excinfo:
            WorkspaceLocator.classify(str(temp_dir))
        assert excinfo.value.code == "workspace_not_found"
        assert str(temp_dir) in excinfo.value.message

"""Tests for LspSession request execution, retries and crash recovery."""

import threading

import pytest
from conftest import FakeService

from monocle.config import SearchRetryPolicy, Settings, Timeouts
from monocle.errors import (
    ConnectionClosed,
    InitializationFailed,
    LspResponseError,
    MonocleIOError,
    ProcessLaunchFailed,
    SessionClosed,
    SymbolNotFound,
    Timeout,
)
from monocle.models import Workspace, WorkspaceKind, path_to_uri
from monocle.session import LspSession, SessionState, is_transient_failure

HOVER = {"contents": {"kind": "markdown", "value": "```swift\npublic struct Widget\n```\n\nA shape that can be drawn."}}


def widget_definition(widget_file):
    return [{
        "uri": path_to_uri(str(widget_file)),
        "range": {"start": {"line": 3, "character": 14}, "end": {"line": 3, "character": 20}},
    }]


def make_session(workspace, handler, settings, sleeps=None):
    service = FakeService(handler)
    recorded = sleeps if sleeps is not None else []
    session = LspSession(workspace, settings=settings, service=service, sleep=recorded.append)
    return session, service


class TestDefinitionAndHover:
    """Tests for definition, hover and inspect."""

    def test_definition_is_one_based(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: widget_definition(widget_file),
                                  fast_settings)
        info = session.definition(str(widget_file), 4, 16)

        assert info.definition.start_line == 4
        assert info.definition.start_character == 15
        assert info.definition.snippet == "public struct Widget {"
        assert info.symbol == "Widget"

    def test_position_is_sent_zero_based(self, package_workspace, widget_file, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: widget_definition(widget_file),
                                        fast_settings)
        session.definition(str(widget_file), 4, 16)

        method, params, timeout = service.connections[0].rpc.requests[0]
        assert method == "textDocument/definition"
        assert params["position"] == {"line": 3, "character": 15}
        assert timeout == fast_settings.timeouts.definition

    def test_location_link_prefers_selection_range(self, package_workspace, widget_file, fast_settings):
        link = [{
            "targetUri": path_to_uri(str(widget_file)),
            "targetRange": {"start": {"line": 2, "character": 0}, "end": {"line": 9, "character": 1}},
            "targetSelectionRange": {"start": {"line": 3, "character": 14}, "end": {"line": 3, "character": 20}},
        }]
        session, _ = make_session(package_workspace, lambda method, params: link, fast_settings)
        info = session.definition(str(widget_file), 4, 16)
        assert info.definition.start_line == 4
        assert info.definition.start_character == 15

    def test_missing_definition_raises(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: [], fast_settings)
        with pytest.raises(SymbolNotFound):
            session.definition(str(widget_file), 4, 16)

    def test_hover_splits_signature_and_documentation(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: HOVER, fast_settings)
        info = session.hover(str(widget_file), 4, 16)

        assert info.signature == "public struct Widget"
        assert info.documentation == "A shape that can be drawn."
        assert info.kind == "struct"
        assert info.symbol == "Widget"

    def test_inspect_merges_definition_and_hover(self, package_workspace, widget_file, fast_settings):
        def handler(method, params):
            if method == "textDocument/definition":
                return widget_definition(widget_file)
            return HOVER

        session, _ = make_session(package_workspace, handler, fast_settings)
        info = session.inspect_symbol(str(widget_file), 4, 16)

        assert info.definition is not None
        assert info.signature == "public struct Widget"
        assert info.documentation == "A shape that can be drawn."

    def test_inspect_tolerates_missing_definition(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(
            package_workspace,
            lambda method, params: None if method == "textDocument/definition" else HOVER,
            fast_settings,
        )
        info = session.inspect_symbol(str(widget_file), 4, 16)
        assert info.definition is None
        assert info.signature == "public struct Widget"

    def test_inspect_without_any_data_raises(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: None, fast_settings)
        with pytest.raises(SymbolNotFound):
            session.inspect_symbol(str(widget_file), 4, 16)

    def test_positions_must_be_one_based(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: None, fast_settings)
        with pytest.raises(ValueError):
            session.definition(str(widget_file), 0, 1)

    def test_unreadable_file_raises_io_error(self, package_workspace, swift_package, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: None, fast_settings)
        with pytest.raises(MonocleIOError):
            session.hover(str(swift_package / "Sources" / "Missing.swift"), 1, 1)
        assert service.force_terminations == 0


class TestDocumentCache:
    """Tests for per-generation didOpen tracking."""

    def test_document_opened_once_per_generation(self, package_workspace, widget_file, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: HOVER, fast_settings)
        session.hover(str(widget_file), 4, 16)
        session.hover(str(widget_file), 5, 5)

        opens = [name for name, _ in service.connections[0].rpc.notifications if name == "textDocument/didOpen"]
        assert len(opens) == 1
        _, params = service.connections[0].rpc.notifications[0]
        assert params["textDocument"]["languageId"] == "swift"
        assert params["textDocument"]["version"] == 1
        assert "struct Widget" in params["textDocument"]["text"]

    def test_document_open_timeout(self, package_workspace, widget_file):
        release = threading.Event()
        settings = Settings(timeouts=Timeouts(open_document=0.05))
        session, service = make_session(package_workspace, lambda method, params: HOVER, settings)
        original_acquire = service.acquire_connection

        def acquire(workspace, toolchain=None):
            connection = original_acquire(workspace, toolchain)
            connection.rpc.notify = lambda method, params=None: release.wait(2.0)
            return connection

        service.acquire_connection = acquire
        try:
            with pytest.raises(Timeout) as excinfo:
                session.hover(str(widget_file), 4, 16)
        finally:
            release.set()
        assert excinfo.value.seconds == 0.05
        assert excinfo.value.operation == "textDocument/didOpen"

    def test_slow_snippet_read_times_out(self, package_workspace, widget_file, monkeypatch):
        release = threading.Event()
        settings = Settings(timeouts=Timeouts(open_document=0.2))
        session, _ = make_session(package_workspace, lambda method, params: widget_definition(widget_file), settings)

        def stalled_read(uri, lsp_range):
            release.wait(2.0)

        monkeypatch.setattr("monocle.session.extract_snippet", stalled_read)
        try:
            with pytest.raises(Timeout) as excinfo:
                session.definition(str(widget_file), 4, 16)
        finally:
            release.set()
        assert excinfo.value.seconds == 0.2
        assert excinfo.value.operation == "source read"


class TestCrashRecovery:
    """Tests for the one-restart-per-call protocol."""

    def test_connection_reset_restarts_once(self, package_workspace, widget_file, fast_settings):
        calls = {"count": 0}

        def handler(method, params):
            calls["count"] += 1
            if calls["count"] == 1:
                raise ConnectionResetError("Connection reset by peer")
            return widget_definition(widget_file)

        session, service = make_session(package_workspace, handler, fast_settings)
        info = session.definition(str(widget_file), 4, 16)

        assert info.definition is not None
        assert service.force_terminations == 1
        assert service.launches == 2
        assert session.restart_count == 1

    def test_second_failure_propagates(self, package_workspace, widget_file, fast_settings):
        def handler(method, params):
            raise ConnectionResetError("Connection reset by peer")

        session, service = make_session(package_workspace, handler, fast_settings)
        with pytest.raises(ConnectionResetError):
            session.definition(str(widget_file), 4, 16)

        assert service.force_terminations == 1
        assert service.launches == 2

    def test_generation_increases_and_cache_clears(self, package_workspace, widget_file, fast_settings):
        state = {"fail": False}

        def handler(method, params):
            if state["fail"]:
                state["fail"] = False
                raise ConnectionClosed("Connection to sourcekit-lsp closed (stream closed).")
            return HOVER

        session, service = make_session(package_workspace, handler, fast_settings)
        session.hover(str(widget_file), 4, 16)
        before = session.generation
        assert session.opened_documents == {str(widget_file)}

        state["fail"] = True
        session.hover(str(widget_file), 4, 16)

        assert session.generation > before
        second_opens = [name for name, _ in service.connections[1].rpc.notifications]
        assert second_opens == ["textDocument/didOpen"]

    def test_restart_empties_opened_documents(self, package_workspace, widget_file, fast_settings):
        session, _ = make_session(package_workspace, lambda method, params: HOVER, fast_settings)
        session.hover(str(widget_file), 4, 16)
        session.restart()
        assert session.opened_documents == set()

    def test_non_transient_error_propagates_without_restart(self, package_workspace, widget_file, fast_settings):
        def handler(method, params):
            raise LspResponseError(-32601, "Unhandled method")

        session, service = make_session(package_workspace, handler, fast_settings)
        with pytest.raises(LspResponseError):
            session.hover(str(widget_file), 4, 16)
        assert service.force_terminations == 0

    def test_timeout_reports_configured_duration(self, package_workspace, widget_file, fast_settings):
        def handler(method, params):
            raise Timeout(fast_settings.timeouts.hover, method)

        session, service = make_session(package_workspace, handler, fast_settings)
        with pytest.raises(Timeout) as excinfo:
            session.hover(str(widget_file), 4, 16)

        assert excinfo.value.seconds == fast_settings.timeouts.hover
        assert "1s" in str(excinfo.value)
        assert service.force_terminations == 1


class TestWorkspaceSymbolRetries:
    """Tests for the empty-result retry loop."""

    def test_package_workspace_budget(self, package_workspace, fast_settings):
        sleeps = []
        session, service = make_session(package_workspace, lambda method, params: [], fast_settings, sleeps)

        assert session.search_symbols("Widget") == []
        assert len(service.connections[0].rpc.requests) == 12
        assert sleeps == [1.0] * 11

    def test_ide_workspace_budget(self, swift_package, fast_settings):
        workspace = Workspace(root_path=str(swift_package), kind=WorkspaceKind.XCODE_PROJECT)
        sleeps = []
        session, service = make_session(workspace, lambda method, params: [], fast_settings, sleeps)

        assert session.search_symbols("Widget") == []
        assert len(service.connections[0].rpc.requests) == 4
        assert sleeps == [0.5] * 3

    def test_retry_stops_at_first_results(self, package_workspace, widget_file, fast_settings):
        answers = [[], [], [{
            "name": "Widget",
            "kind": 23,
            "location": {
                "uri": path_to_uri(str(widget_file)),
                "range": {"start": {"line": 3, "character": 14}, "end": {"line": 3, "character": 20}},
            },
        }]]
        sleeps = []
        session, _ = make_session(package_workspace, lambda method, params: answers.pop(0), fast_settings, sleeps)

        results = session.search_symbols("Widget")
        assert [result.name for result in results] == ["Widget"]
        assert results[0].kind == "struct"
        assert results[0].location.start_line == 4
        assert len(sleeps) == 2

    def test_limit_and_enrich(self, package_workspace, widget_file, fast_settings):
        symbol = {
            "name": "Widget",
            "kind": 23,
            "location": {
                "uri": path_to_uri(str(widget_file)),
                "range": {"start": {"line": 3, "character": 14}, "end": {"line": 3, "character": 20}},
            },
        }

        def handler(method, params):
            if method == "workspace/symbol":
                return [symbol, dict(symbol, name="WidgetView")]
            return HOVER

        session, _ = make_session(package_workspace, handler, fast_settings)
        results = session.search_symbols("Widget", limit=1, enrich=True)

        assert len(results) == 1
        assert results[0].signature == "public struct Widget"
        assert results[0].documentation == "A shape that can be drawn."

    def test_transient_failure_inside_retry_loop_restarts_once(self, package_workspace, fast_settings):
        calls = {"count": 0}

        def handler(method, params):
            calls["count"] += 1
            if calls["count"] in (2, 4):
                raise ConnectionClosed("stream closed")
            return []

        session, service = make_session(package_workspace, handler, fast_settings)
        with pytest.raises(ConnectionClosed):
            session.search_symbols("Widget")
        assert service.force_terminations == 1


class TestLifecycle:
    """Tests for shutdown and state."""

    def test_operations_after_shutdown_raise(self, package_workspace, widget_file, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: HOVER, fast_settings)
        session.hover(str(widget_file), 4, 16)
        session.shutdown()

        assert service.shutdowns == 1
        assert session.state is SessionState.SHUT_DOWN
        with pytest.raises(SessionClosed) as excinfo:
            session.hover(str(widget_file), 4, 16)
        assert isinstance(excinfo.value, InitializationFailed)

    def test_shutdown_is_idempotent(self, package_workspace, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: None, fast_settings)
        session.shutdown()
        session.shutdown()
        assert service.shutdowns == 1

    def test_failed_launch_leaves_session_reusable(self, package_workspace, widget_file, fast_settings):
        session, service = make_session(package_workspace, lambda method, params: HOVER, fast_settings)
        launch = service.acquire_connection

        def missing_binary(workspace, toolchain=None):
            raise ProcessLaunchFailed("Could not start xcrun")

        service.acquire_connection = missing_binary
        with pytest.raises(ProcessLaunchFailed):
            session.hover(str(widget_file), 4, 16)
        assert session.state is SessionState.UNINITIALIZED
        assert service.force_terminations == 0

        service.acquire_connection = launch
        assert session.hover(str(widget_file), 4, 16).signature == "public struct Widget"
        assert session.state is SessionState.READY


class TestFailureClassification:
    """Tests for is_transient_failure."""

    @pytest.mark.parametrize("error", [
        Timeout(15.0),
        ConnectionClosed(),
        BrokenPipeError(),
        ConnectionResetError(),
        LspResponseError(-32001, "sourcekitd service is invalid"),
        RuntimeError("Fatal error: unexpectedly found nil"),
    ])
    def test_transient(self, error):
        assert is_transient_failure(error) is True

    @pytest.mark.parametrize("error", [
        LspResponseError(-32601, "Unhandled method"),
        SymbolNotFound(),
        ValueError("bad position"),
    ])
    def test_not_transient(self, error):
        assert is_transient_failure(error) is False


def test_default_settings_match_documented_budgets():
    """The default budgets and retry counts."""
    timeouts = Timeouts()
    policy = SearchRetryPolicy()
    assert (timeouts.open_document, timeouts.definition, timeouts.hover, timeouts.workspace_symbol) == (5, 15, 15, 30)
    assert (policy.package_attempts, policy.package_delay) == (12, 1.0)
    assert (policy.ide_attempts, policy.ide_delay) == (4, 0.5)

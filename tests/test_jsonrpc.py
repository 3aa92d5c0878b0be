"""Tests for Content-Length framing and the threaded JSON-RPC connection."""

import io
import json
import os
import threading

import pytest

from monocle.errors import ConnectionClosed, LspResponseError, Timeout
from monocle.jsonrpc import JsonRpcConnection, encode_message, read_message


class TestFraming:
    """Tests for encode_message and read_message."""

    def test_encode_uses_byte_length(self):
        frame = encode_message({"jsonrpc": "2.0", "method": "initialized", "params": {"name": "é"}})
        header, body = frame.split(b"\r\n\r\n", 1)
        assert header == f"Content-Length: {len(body)}".encode("ascii")
        assert json.loads(body.decode("utf-8"))["params"]["name"] == "é"

    def test_reads_consecutive_frames(self):
        stream = io.BytesIO(encode_message({"id": 1, "result": None}) + encode_message({"id": 2, "result": [1]}))
        assert read_message(stream) == {"id": 1, "result": None}
        assert read_message(stream) == {"id": 2, "result": [1]}
        assert read_message(stream) is None

    def test_ignores_extra_headers(self):
        body = b'{"id":7,"result":true}'
        raw = (
            b"Content-Type: application/vscode-jsonrpc; charset=utf-8\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
            + body
        )
        assert read_message(io.BytesIO(raw)) == {"id": 7, "result": True}

    def test_truncated_body_is_eof(self):
        assert read_message(io.BytesIO(b"Content-Length: 50\r\n\r\n{}")) is None


class FakeServer:
    """The far end of a pair of pipes, speaking framed JSON-RPC."""

    def __init__(self):
        client_read, server_write = os.pipe()
        server_read, client_write = os.pipe()
        self.client_reader = os.fdopen(client_read, "rb")
        self.client_writer = os.fdopen(client_write, "wb")
        self.reader = os.fdopen(server_read, "rb")
        self.writer = os.fdopen(server_write, "wb")

    def receive(self):
        return read_message(self.reader)

    def send(self, message):
        self.writer.write(encode_message(message))
        self.writer.flush()

    def close(self):
        for stream in (self.writer, self.reader):
            try:
                stream.close()
            except OSError:
                pass


@pytest.fixture
def server():
    fake = FakeServer()
    yield fake
    fake.close()


@pytest.fixture
def connection(server):
    conn = JsonRpcConnection(server.client_reader, server.client_writer, name="test-server")
    yield conn
    conn.close()


def respond_in_background(server, build_reply):
    def run():
        request = server.receive()
        if request is not None:
            server.send(build_reply(request))

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


class TestConnection:
    """Tests for JsonRpcConnection."""

    def test_request_receives_result(self, server, connection):
        respond_in_background(server, lambda request: {"jsonrpc": "2.0", "id": request["id"], "result": {"ok": 1}})
        assert connection.request("initialize", {"processId": 1}, timeout=2.0) == {"ok": 1}

    def test_error_response_raises(self, server, connection):
        respond_in_background(server, lambda request: {
            "jsonrpc": "2.0",
            "id": request["id"],
            "error": {"code": -32601, "message": "Unhandled method"},
        })
        with pytest.raises(LspResponseError) as excinfo:
            connection.request("bogus", timeout=2.0)
        assert excinfo.value.rpc_code == -32601
        assert "Unhandled method" in excinfo.value.message

    def test_timeout_reports_budget(self, server, connection):
        with pytest.raises(Timeout) as excinfo:
            connection.request("workspace/symbol", {"query": "x"}, timeout=0.1)
        assert excinfo.value.seconds == 0.1
        assert excinfo.value.operation == "workspace/symbol"

    def test_late_response_is_discarded(self, server, connection):
        with pytest.raises(Timeout):
            connection.request("slow", timeout=0.05)
        request = server.receive()
        server.send({"jsonrpc": "2.0", "id": request["id"], "result": "late"})

        respond_in_background(server, lambda req: {"jsonrpc": "2.0", "id": req["id"], "result": "fresh"})
        assert connection.request("fast", timeout=2.0) == "fresh"

    def test_eof_fails_pending_requests(self, server, connection):
        future = connection.send_request("textDocument/hover", {})
        server.receive()
        server.writer.close()

        with pytest.raises(ConnectionClosed):
            future.result(timeout=2.0)
        assert connection.is_closed
        with pytest.raises(ConnectionClosed):
            connection.request("textDocument/hover", {}, timeout=1.0)

    def test_answers_workspace_configuration(self, server, connection):
        server.send({
            "jsonrpc": "2.0",
            "id": 99,
            "method": "workspace/configuration",
            "params": {"items": [{"section": "a"}, {"section": "b"}]},
        })
        reply = server.receive()
        assert reply == {"jsonrpc": "2.0", "id": 99, "result": [{}, {}]}

    def test_notifications_are_recorded(self, server, connection):
        server.send({"jsonrpc": "2.0", "method": "window/logMessage", "params": {"message": "hi"}})
        respond_in_background(server, lambda request: {"jsonrpc": "2.0", "id": request["id"], "result": None})
        connection.request("ping", timeout=2.0)
        assert connection.notifications[0]["method"] == "window/logMessage"

"""JSON-RPC 2.0 over Content-Length framed byte streams.

The LSP wire format delimits JSON bodies with HTTP-style headers::

    Content-Length: 52\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}

A dedicated reader thread owns the input stream and resolves one
:class:`concurrent.futures.Future` per outstanding request, so callers can
bound every request with ``Future.result(timeout)``. Server-initiated
requests are answered inline, otherwise SourceKit-LSP blocks waiting on us.
"""

from __future__ import annotations

import concurrent.futures
import itertools
import json
import logging
import threading
from typing import IO, Any, Callable, Dict, List, Optional

from .errors import ConnectionClosed, LspResponseError, Timeout

logger = logging.getLogger(__name__)

HEADER_ENCODING = "ascii"


def encode_message(message: Dict[str, Any]) -> bytes:
    """Frame a JSON-RPC message with a Content-Length header."""
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body


def read_message(stream: IO[bytes]) -> Optional[Dict[str, Any]]:
    """Read one framed message; ``None`` means the stream reached EOF."""
    content_length: Optional[int] = None
    while True:
        line = stream.readline()
        if not line:
            return None
        text = line.decode(HEADER_ENCODING).rstrip("\r\n")
        if text == "":
            if content_length is None:
                # Stray blank line between frames.
                continue
            break
        name, _, value = text.partition(":")
        if name.strip().lower() == "content-length":
            content_length = int(value.strip())

    body = b""
    while len(body) < content_length:
        chunk = stream.read(content_length - len(body))
        if not chunk:
            return None
        body += chunk
    return json.loads(body.decode("utf-8"))


class JsonRpcConnection:
    """Bidirectional JSON-RPC endpoint over a pair of byte streams."""

    def __init__(
        self,
        reader: IO[bytes],
        writer: IO[bytes],
        on_close: Optional[Callable[[], None]] = None,
        name: str = "sourcekit-lsp",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._on_close = on_close
        self._name = name
        self._ids = itertools.count(1)
        self._pending: Dict[int, concurrent.futures.Future] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = threading.Event()
        self.notifications: List[Dict[str, Any]] = []
        self._thread = threading.Thread(target=self._read_loop, name=f"{name}-reader", daemon=True)
        self._thread.start()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def send_request(self, method: str, params: Optional[Any] = None) -> concurrent.futures.Future:
        """Send a request and return a future resolved by the reader thread."""
        request_id = next(self._ids)
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._pending_lock:
            if self.is_closed:
                raise ConnectionClosed(f"Connection to {self._name} is closed.")
            self._pending[request_id] = future
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._send(message)
        except ConnectionClosed:
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise
        logger.debug("-> request id=%d method=%s", request_id, method)
        return future

    def request(self, method: str, params: Optional[Any] = None, timeout: Optional[float] = None) -> Any:
        """Send a request and block for its result.

        Raises:
            Timeout: No response arrived within ``timeout`` seconds. The request
                is abandoned; a late response is discarded.
            LspResponseError: The server answered with an error object.
            ConnectionClosed: The stream closed before a response arrived.
        """
        future = self.send_request(method, params)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            self._abandon(future)
            raise Timeout(timeout or 0.0, method) from None

    def notify(self, method: str, params: Optional[Any] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._send(message)
        logger.debug("-> notification method=%s", method)

    def close(self) -> None:
        """Stop accepting requests and fail everything still outstanding.

        Only the write side is closed here; the reader thread owns the input
        stream and closes it once the peer hangs up.
        """
        self._mark_closed()
        with self._write_lock:
            try:
                self._writer.close()
            except OSError:
                pass

    def _abandon(self, future: concurrent.futures.Future) -> None:
        with self._pending_lock:
            for request_id, pending in list(self._pending.items()):
                if pending is future:
                    del self._pending[request_id]
                    break

    def _send(self, message: Dict[str, Any]) -> None:
        data = encode_message(message)
        with self._write_lock:
            if self.is_closed:
                raise ConnectionClosed(f"Connection to {self._name} is closed.")
            try:
                self._writer.write(data)
                self._writer.flush()
            except (OSError, ValueError) as exc:
                self._mark_closed()
                raise ConnectionClosed(f"Broken pipe while writing to {self._name}: {exc}") from exc

    def _read_loop(self) -> None:
        try:
            while True:
                message = read_message(self._reader)
                if message is None:
                    logger.info("%s closed its output stream", self._name)
                    break
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            if not self.is_closed:
                logger.warning("Reader for %s stopped: %s", self._name, exc)
        finally:
            self._mark_closed()
            try:
                self._reader.close()
            except OSError:
                pass

    def _dispatch(self, message: Dict[str, Any]) -> None:
        has_id = "id" in message
        has_method = "method" in message
        if has_id and has_method:
            self._answer_server_request(message)
        elif has_id:
            with self._pending_lock:
                future = self._pending.pop(message["id"], None)
            if future is None:
                logger.debug("Discarding response for abandoned id=%s", message["id"])
                return
            if "error" in message:
                error = message["error"] or {}
                future.set_exception(LspResponseError(
                    int(error.get("code", -1)),
                    str(error.get("message", "Unknown error")),
                    error.get("data"),
                ))
            else:
                logger.debug("<- response id=%s", message["id"])
                future.set_result(message.get("result"))
        else:
            logger.debug("<- notification method=%s", message.get("method", "?"))
            self.notifications.append(message)

    def _answer_server_request(self, message: Dict[str, Any]) -> None:
        method = message.get("method", "")
        result: Any = None
        if method == "workspace/configuration":
            items = (message.get("params") or {}).get("items", [])
            result = [{} for _ in items]
        logger.debug("<- server request id=%s method=%s", message["id"], method)
        try:
            self._send({"jsonrpc": "2.0", "id": message["id"], "result": result})
        except ConnectionClosed:
            logger.debug("Could not answer %s, connection closed", method)

    def _mark_closed(self) -> None:
        with self._pending_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ConnectionClosed(f"Connection to {self._name} closed (stream closed)."))
        if self._on_close is not None:
            self._on_close()

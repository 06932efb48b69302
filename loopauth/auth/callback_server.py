"""Single-shot loopback HTTP listener for OAuth2 redirect capture.

Binds ``127.0.0.1`` on an OS-assigned port, accepts exactly one
connection on a daemon thread, parses the request line of a
``GET /callback?...`` request, answers with a static HTML page and
resolves a :class:`concurrent.futures.Future`.

Only the request line is read (bounded by ``max_request_bytes``); headers
and body are ignored. Connections arriving after the first one are
accepted and closed unread.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import contextlib
import html
import logging
import re
import socket
import threading
import time

from concurrent.futures import Future, InvalidStateError
from urllib.parse import parse_qsl, urlsplit

from ..exceptions import ProtocolError, SocketAcceptError, SocketBindError
from ..log import redact_sensitive_data
from .types import CallbackRequest, ListenerResult, ListenerStatus


logger = logging.getLogger("loopauth.auth")

DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_REQUEST_BYTES = 8192

_HTTP_VERSION = re.compile(r"^HTTP/\d\.\d$")
_RECV_CHUNK = 4096
_DRAIN_LIMIT = 65536
_DRAIN_TIMEOUT = 0.5
_MIN_READ_TIMEOUT = 0.5

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Complete</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
</style></head>
<body><div class="card">
  <h1>&#x2705; Authentication Complete</h1>
  <p>You may close this tab and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Error</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: #cc0000; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>&#x274C; Authentication Failed</h1>
  <p>{error}</p>
  <p>You may close this tab and return to the application.</p>
</div></body></html>"""


def build_response(body: str) -> bytes:
    """Build the complete ``200 OK`` response for an HTML body."""
    encoded = body.encode("utf-8")
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(encoded)}\r\n"
        "Cache-Control: no-store\r\n"
        "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
        "X-Content-Type-Options: nosniff\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + encoded


def parse_request_line(line: bytes, callback_path: str = "/callback") -> CallbackRequest:
    """Parse an HTTP request line into a :class:`CallbackRequest`.

    Parameters
    ----------
    line : bytes
        The request line without its line terminator.
    callback_path : str
        The only path accepted.

    Returns
    -------
    CallbackRequest
        The decoded query parameters.

    Raises
    ------
    ProtocolError
        If the line is not ``GET <callback_path>?<query> HTTP/x.y`` or
        the query has neither ``code`` nor ``error``.
    """
    try:
        text = line.decode("ascii")
    except UnicodeDecodeError as exc:
        msg = "Request line is not ASCII"
        raise ProtocolError(msg) from exc

    parts = text.split(" ")
    if len(parts) != 3 or not _HTTP_VERSION.match(parts[2]):
        msg = "Malformed HTTP request line"
        raise ProtocolError(msg, request_line=text[:200])

    method, target, _version = parts
    if method != "GET":
        msg = f"Unsupported method {method!r}"
        raise ProtocolError(msg)
    if not target.startswith("/") or target.startswith("//"):
        msg = "Request target must be an absolute path"
        raise ProtocolError(msg, request_line=text[:200])

    try:
        split = urlsplit(target)
    except ValueError as exc:
        msg = f"Unparsable request target: {exc}"
        raise ProtocolError(msg, request_line=text[:200]) from exc
    if split.path != callback_path:
        msg = f"Unexpected callback path {split.path!r}"
        raise ProtocolError(msg)

    try:
        pairs = parse_qsl(
            split.query,
            keep_blank_values=True,
            errors="strict",
            max_num_fields=100,
        )
    except (UnicodeDecodeError, ValueError) as exc:
        msg = f"Unparsable callback query: {exc}"
        raise ProtocolError(msg) from exc

    params: dict[str, str] = {}
    for key, value in pairs:
        params.setdefault(key, value)

    if "code" not in params and "error" not in params:
        msg = "Callback carries neither 'code' nor 'error'"
        raise ProtocolError(msg)

    return CallbackRequest(params=params, path=split.path, query=split.query)


class LoopbackCallbackListener:
    """Ephemeral loopback listener that captures one OAuth2 redirect.

    One instance serves exactly one authentication attempt.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    callback_path : str
        Path the provider redirects to (default ``"/callback"``).
    max_request_bytes : int
        Upper bound on bytes read before the request line must end.
    read_timeout : float
        Seconds to wait for the request line once a client connected.
    poll_interval : float
        Granularity at which timeout and cancellation are observed.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        callback_path: str = "/callback",
        max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
        read_timeout: float = 10.0,
        poll_interval: float = 0.1,
    ) -> None:
        """Initialize the listener."""
        self._host = host
        self._callback_path = callback_path
        self._max_request_bytes = max_request_bytes
        self._read_timeout = read_timeout
        self._poll_interval = poll_interval

        self._sock: socket.socket | None = None
        self._sock_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._future: Future[ListenerResult] | None = None
        self._resolve_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._port: int = 0

    @property
    def port(self) -> int:
        """The bound port (``0`` before :meth:`listen`)."""
        return self._port

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI for this listener.

        Returns
        -------
        str
            The full redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        return f"http://{self._host}:{self._port}{self._callback_path}"

    @property
    def future(self) -> Future[ListenerResult] | None:
        """The result future, once listening."""
        return self._future

    @property
    def is_listening(self) -> bool:
        """Whether the listening socket is still open."""
        return self._sock is not None

    def listen(self, timeout: float = DEFAULT_TIMEOUT) -> tuple[int, Future[ListenerResult]]:
        """Bind, start the accept thread and return immediately.

        Parameters
        ----------
        timeout : float
            Seconds to wait for the browser's redirect.

        Returns
        -------
        tuple[int, Future[ListenerResult]]
            The bound port and a future that resolves to a
            :class:`ListenerResult`, or fails with
            :class:`SocketAcceptError` / :class:`ProtocolError`.

        Raises
        ------
        SocketBindError
            If the loopback socket cannot be bound.
        RuntimeError
            If this listener was already used.
        """
        if self._future is not None:
            msg = "Listener already used; create a new listener for each attempt"
            raise RuntimeError(msg)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self._host, 0))
            sock.listen(1)
        except OSError as exc:
            sock.close()
            msg = f"Failed to bind loopback listener: {exc}"
            raise SocketBindError(msg, host=self._host) from exc

        sock.settimeout(self._poll_interval)
        self._sock = sock
        self._port = sock.getsockname()[1]

        future: Future[ListenerResult] = Future()
        # A running future cannot be cancelled behind the listener's back.
        future.set_running_or_notify_cancel()
        self._future = future

        deadline = time.monotonic() + timeout
        self._thread = threading.Thread(
            target=self._serve,
            args=(sock, deadline),
            name=f"loopauth-callback-{self._port}",
            daemon=True,
        )
        self._thread.start()

        logger.debug("Callback listener started on %s (timeout %.1fs)", self.redirect_uri, timeout)
        return self._port, future

    def wait_for_callback(self, timeout: float | None = None) -> ListenerResult:
        """Block until the listener resolves.

        Parameters
        ----------
        timeout : float, optional
            Extra bound on the wait; the listener's own timeout applies anyway.

        Returns
        -------
        ListenerResult
            The received request, or a timed-out/cancelled status.

        Raises
        ------
        SocketAcceptError, ProtocolError
            As resolved by the listener thread.
        """
        if self._future is None:
            msg = "Listener is not started"
            raise RuntimeError(msg)
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Abort the wait: release the socket, then resolve as cancelled."""
        self._cancel_event.set()
        self._close_socket()
        self._resolve(ListenerResult(ListenerStatus.CANCELLED))
        self.stop()

    def stop(self) -> None:
        """Release the socket and join the accept thread. Idempotent."""
        self._cancel_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self._read_timeout + 1.0)
        self._close_socket()
        if self._future is not None and not self._future.done():
            self._resolve(ListenerResult(ListenerStatus.CANCELLED))

    def __enter__(self) -> LoopbackCallbackListener:
        """Return self for ``with`` usage."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Stop the listener."""
        self.stop()

    # ── accept thread ────────────────────────────────────────────────

    def _serve(self, sock: socket.socket, deadline: float) -> None:
        """Accept one connection, or time out, then close the socket and resolve.

        The listening socket is released before the future resolves, so a
        caller woken by the result can rebind the port straight away.
        """
        result: ListenerResult | None = None
        error: BaseException | None = None
        try:
            conn, result, error = self._accept_one(sock, deadline)
            if conn is not None:
                with conn:
                    result, error = self._handle_connection(conn, deadline)
        except OSError as exc:
            msg = f"Callback connection failed: {exc}"
            result, error = None, SocketAcceptError(msg, port=self._port)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Callback listener on port %d failed", self._port)
            msg = f"Callback request could not be processed: {exc}"
            result, error = None, ProtocolError(msg)
        finally:
            self._close_socket()
            logger.debug("Callback listener on port %d closed", self._port)

        if result is None and error is None:
            result = ListenerResult(ListenerStatus.CANCELLED)
        self._resolve(result, error)

    def _accept_one(
        self, sock: socket.socket, deadline: float
    ) -> tuple[socket.socket | None, ListenerResult | None, BaseException | None]:
        """Poll ``accept`` until a client connects, the deadline passes or cancel."""
        while True:
            if self._cancel_event.is_set():
                return None, ListenerResult(ListenerStatus.CANCELLED), None
            if time.monotonic() >= deadline:
                logger.debug("Callback listener on port %d timed out", self._port)
                return None, ListenerResult(ListenerStatus.TIMED_OUT), None
            try:
                conn, addr = sock.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._cancel_event.is_set():
                    return None, ListenerResult(ListenerStatus.CANCELLED), None
                msg = f"Failed to accept callback connection: {exc}"
                return None, None, SocketAcceptError(msg, port=self._port)
            logger.debug("Callback connection from %s:%d", addr[0], addr[1])
            return conn, None, None

    def _handle_connection(
        self, conn: socket.socket, deadline: float
    ) -> tuple[ListenerResult | None, ProtocolError | None]:
        """Read and parse the request line and always answer with a page."""
        # The read shares the listener's deadline, with a short grace period
        remaining = max(deadline - time.monotonic(), _MIN_READ_TIMEOUT)
        conn.settimeout(min(self._read_timeout, remaining))
        request: CallbackRequest | None = None
        error: ProtocolError | None = None
        try:
            request = parse_request_line(self._read_request_line(conn), self._callback_path)
        except ProtocolError as exc:
            error = exc
        finally:
            self._send_page(conn, request, error)

        if error is not None:
            logger.warning("Rejected callback request: %s", error)
            return None, error
        logger.debug("Callback params: %s", redact_sensitive_data(request.params))
        return ListenerResult(ListenerStatus.RECEIVED, request), None

    def _read_request_line(self, conn: socket.socket) -> bytes:
        """Read until the first line terminator, within the byte budget."""
        buf = bytearray()
        while True:
            newline = buf.find(b"\n")
            if newline >= 0:
                break
            if len(buf) >= self._max_request_bytes:
                msg = f"Request line exceeds {self._max_request_bytes} bytes"
                raise ProtocolError(msg)
            try:
                chunk = conn.recv(_RECV_CHUNK)
            except TimeoutError as exc:
                msg = "Timed out waiting for the request line"
                raise ProtocolError(msg) from exc
            except OSError as exc:
                msg = f"Connection failed before the request line was read: {exc}"
                raise ProtocolError(msg) from exc
            if not chunk:
                msg = "Connection closed before a complete request line was received"
                raise ProtocolError(msg)
            buf.extend(chunk)

        if newline > self._max_request_bytes:
            msg = f"Request line exceeds {self._max_request_bytes} bytes"
            raise ProtocolError(msg)
        return bytes(buf[:newline]).rstrip(b"\r")

    def _send_page(
        self,
        conn: socket.socket,
        request: CallbackRequest | None,
        error: ProtocolError | None,
    ) -> None:
        """Write the confirmation page and flush it before teardown."""
        if error is not None:
            page = _ERROR_HTML.format(error=html.escape(error.message, quote=True))
        elif request is not None and request.error:
            message = request.error_description or request.error
            page = _ERROR_HTML.format(error=html.escape(message, quote=True))
        else:
            page = _SUCCESS_HTML

        try:
            conn.sendall(build_response(page))
            conn.shutdown(socket.SHUT_WR)
            # Drain unread request bytes so close() does not reset the
            # connection before the browser has read the page.
            conn.settimeout(_DRAIN_TIMEOUT)
            drained = 0
            while drained < _DRAIN_LIMIT:
                chunk = conn.recv(_RECV_CHUNK)
                if not chunk:
                    break
                drained += len(chunk)
        except OSError as exc:
            logger.debug("Could not deliver confirmation page: %s", exc)

    def _resolve(
        self,
        result: ListenerResult | None = None,
        error: BaseException | None = None,
    ) -> bool:
        """Resolve the future once; later calls are no-ops."""
        future = self._future
        if future is None:
            return False
        with self._resolve_lock:
            if future.done():
                return False
            try:
                if error is not None:
                    future.set_exception(error)
                else:
                    future.set_result(result)
            except InvalidStateError:
                return False
        return True

    def _close_socket(self) -> None:
        """Close pending connections unread, then the listening socket."""
        with self._sock_lock:
            sock = self._sock
            self._sock = None
        if sock is None:
            return
        try:
            # accept() raises once the backlog is empty
            with contextlib.suppress(OSError):
                sock.setblocking(False)
                while True:
                    extra, _ = sock.accept()
                    extra.close()
                    logger.debug("Closed extra connection on port %d unread", self._port)
        finally:
            sock.close()

"""Tests for the single-shot loopback callback listener."""

# pylint: disable=protected-access

from __future__ import annotations

import contextlib
import socket
import threading
import time

from urllib.parse import urlencode
from urllib.request import urlopen

import pytest

from loopauth.auth.callback_server import (
    LoopbackCallbackListener,
    build_response,
    parse_request_line,
)
from loopauth.auth.types import ListenerStatus
from loopauth.exceptions import ProtocolError, SocketAcceptError, TransportError


# ── Helpers ──────────────────────────────────────────────────────────


def _exchange_raw(port: int, payload: bytes) -> bytes:
    """Connect, send ``payload`` and read until the server closes."""
    chunks: list[bytes] = []
    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        client.sendall(payload)
        with contextlib.suppress(OSError):
            while True:
                chunk = client.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
    return b"".join(chunks)


def _send_in_background(
    port: int, payload: bytes, delay: float = 0.1
) -> tuple[threading.Thread, dict[str, bytes]]:
    """Send ``payload`` from a thread; the response lands in the returned dict."""
    box: dict[str, bytes] = {}

    def _send() -> None:
        time.sleep(delay)
        with contextlib.suppress(OSError):
            box["response"] = _exchange_raw(port, payload)

    t = threading.Thread(target=_send, daemon=True)
    t.start()
    return t, box


def _get(target: str) -> bytes:
    return f"GET {target} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode("ascii")


# ── Listener ─────────────────────────────────────────────────────────


class TestLoopbackCallbackListener:
    """Tests for LoopbackCallbackListener."""

    def test_listen_binds_ephemeral_port(self) -> None:
        """listen() binds 127.0.0.1 on an OS-assigned port and returns at once."""
        listener = LoopbackCallbackListener()
        try:
            port, future = listener.listen(timeout=5)
            assert port > 0
            assert listener.port == port
            assert listener.redirect_uri == f"http://127.0.0.1:{port}/callback"
            assert listener.is_listening
            assert not future.done()
        finally:
            listener.stop()
        assert not listener.is_listening

    def test_callback_with_code(self) -> None:
        """A fake browser request resolves the future with the code."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            sender, box = _send_in_background(port, _get("/callback?code=abc&state=xyz"))
            result = future.result(timeout=5)
            assert result.status is ListenerStatus.RECEIVED
            assert result.request is not None
            assert result.request.code == "abc"
            assert result.request.state == "xyz"
            assert result.request.query == "code=abc&state=xyz"
        finally:
            listener.stop()

        sender.join(timeout=5)
        response = box["response"].decode("utf-8")
        assert response.startswith("HTTP/1.1 200 OK\r\n")
        assert "Connection: close" in response
        assert "You may close this tab" in response

    def test_callback_via_urlopen(self) -> None:
        """A real HTTP client receives the confirmation page."""
        listener = LoopbackCallbackListener()
        listener.listen(timeout=5)
        try:
            params = urlencode({"code": "4/0Ab_c-d", "state": "s t"})
            with urlopen(f"{listener.redirect_uri}?{params}", timeout=5) as resp:  # noqa: S310
                body = resp.read().decode("utf-8")
                assert resp.status == 200
                assert resp.headers["Cache-Control"] == "no-store"
            assert "Authentication Complete" in body

            result = listener.wait_for_callback(timeout=5)
            assert result.request is not None
            assert result.request.code == "4/0Ab_c-d"
            assert result.request.state == "s t"
        finally:
            listener.stop()

    def test_timeout_releases_port(self) -> None:
        """No connection within the timeout: TIMED_OUT and the port is free."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=0.3)
        result = future.result(timeout=5)
        assert result.status is ListenerStatus.TIMED_OUT
        assert result.request is None

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as rebind:
            rebind.bind(("127.0.0.1", port))
        listener.stop()

    def test_provider_error_is_received(self) -> None:
        """error=access_denied is captured, and the page reports it."""
        listener = LoopbackCallbackListener()
        port, _future = listener.listen(timeout=5)
        try:
            response = _exchange_raw(
                port, _get("/callback?error=access_denied&error_description=User+cancelled")
            )
            result = listener.wait_for_callback(timeout=5)
            assert result.status is ListenerStatus.RECEIVED
            assert result.request is not None
            assert result.request.error == "access_denied"
            assert result.request.error_description == "User cancelled"
            assert result.request.code is None
            assert b"Authentication Failed" in response
            assert b"User cancelled" in response
        finally:
            listener.stop()

    def test_error_description_escaped(self) -> None:
        """Provider text is HTML-escaped in the page."""
        listener = LoopbackCallbackListener()
        port, _future = listener.listen(timeout=5)
        try:
            params = urlencode({"error": "x", "error_description": "<script>alert(1)</script>"})
            response = _exchange_raw(port, _get(f"/callback?{params}"))
            assert b"<script>" not in response
            assert b"&lt;script&gt;" in response
        finally:
            listener.stop()

    @pytest.mark.parametrize(
        "payload",
        [
            b"POST /callback?code=abc HTTP/1.1\r\n\r\n",
            b"GET /favicon.ico HTTP/1.1\r\n\r\n",
            b"GET /callback?state=only HTTP/1.1\r\n\r\n",
            b"garbage\r\n\r\n",
            b"GET //[/callback?code=a HTTP/1.1\r\n\r\n",
            b"GET //host/callback?code=x HTTP/1.1\r\n\r\n",
        ],
    )
    def test_malformed_request_is_protocol_error(self, payload: bytes) -> None:
        """Malformed requests fail the future but still get a page."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            response = _exchange_raw(port, payload)
            with pytest.raises(ProtocolError):
                future.result(timeout=5)
            assert response.startswith(b"HTTP/1.1 200 OK")
        finally:
            listener.stop()

    def test_oversized_request_line(self) -> None:
        """A request line beyond the byte budget is rejected."""
        listener = LoopbackCallbackListener(max_request_bytes=1024)
        port, future = listener.listen(timeout=5)
        try:
            _exchange_raw(port, b"GET /callback?code=" + b"a" * 4000)
            with pytest.raises(ProtocolError, match="exceeds 1024 bytes"):
                future.result(timeout=5)
        finally:
            listener.stop()

    def test_client_disconnect_before_request_line(self) -> None:
        """A connection closed without a full line is a protocol error."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
                client.sendall(b"GET /callback?co")
            with pytest.raises(ProtocolError):
                future.result(timeout=5)
        finally:
            listener.stop()

    def test_only_first_connection_processed(self) -> None:
        """A second connection is closed unread and does not win."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            first = socket.create_connection(("127.0.0.1", port), timeout=5)
            time.sleep(0.3)
            second = socket.create_connection(("127.0.0.1", port), timeout=5)
            with contextlib.suppress(OSError):
                second.sendall(_get("/callback?code=second"))
            first.sendall(_get("/callback?code=first"))

            result = future.result(timeout=5)
            assert result.request is not None
            assert result.request.code == "first"

            listener.stop()
            with contextlib.suppress(OSError):
                assert second.recv(4096) == b""
            first.close()
            second.close()
        finally:
            listener.stop()

    def test_cancel_resolves_promptly(self) -> None:
        """cancel() resolves CANCELLED and closes the socket."""
        listener = LoopbackCallbackListener()
        _port, future = listener.listen(timeout=30)
        start = time.monotonic()
        listener.cancel()
        result = future.result(timeout=5)
        assert result.status is ListenerStatus.CANCELLED
        assert not listener.is_listening
        assert time.monotonic() - start < 5

    def test_stop_idempotent(self) -> None:
        """stop() can be called repeatedly."""
        listener = LoopbackCallbackListener()
        listener.listen(timeout=5)
        listener.stop()
        listener.stop()
        assert listener.future is not None
        assert listener.future.result(timeout=1).status is ListenerStatus.CANCELLED

    def test_context_manager_stops(self) -> None:
        """Leaving the with block releases the socket."""
        with LoopbackCallbackListener() as listener:
            listener.listen(timeout=5)
            assert listener.is_listening
        assert not listener.is_listening

    def test_listener_single_use(self) -> None:
        """A listener cannot be started twice."""
        listener = LoopbackCallbackListener()
        listener.listen(timeout=5)
        try:
            with pytest.raises(RuntimeError, match="already used"):
                listener.listen(timeout=5)
        finally:
            listener.stop()

    def test_wait_before_listen(self) -> None:
        """wait_for_callback() needs a started listener."""
        with pytest.raises(RuntimeError, match="not started"):
            LoopbackCallbackListener().wait_for_callback(timeout=0.1)

    def test_accept_failure_is_transport_error(self) -> None:
        """A broken listening socket resolves SocketAcceptError, not a timeout."""
        listener = LoopbackCallbackListener()
        _port, future = listener.listen(timeout=5)
        try:
            assert listener._sock is not None
            listener._sock.close()
            with pytest.raises(SocketAcceptError) as exc_info:
                future.result(timeout=5)
            assert isinstance(exc_info.value, TransportError)
        finally:
            listener.stop()

    def test_repeated_attempts_do_not_leak(self) -> None:
        """Many timed-out listeners in a row all release their sockets."""
        for _ in range(20):
            listener = LoopbackCallbackListener(poll_interval=0.01)
            _port, future = listener.listen(timeout=0.01)
            assert future.result(timeout=5).status is ListenerStatus.TIMED_OUT
            listener.stop()
            assert not listener.is_listening

    def test_port_free_once_resolved(self) -> None:
        """The socket is closed before the future resolves, on every attempt."""
        for _ in range(50):
            listener = LoopbackCallbackListener(poll_interval=0.005)
            port, future = listener.listen(timeout=0.005)
            assert future.result(timeout=5).status is ListenerStatus.TIMED_OUT
            assert not listener.is_listening
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as rebind:
                rebind.bind(("127.0.0.1", port))
            listener.stop()

    def test_port_free_once_callback_received(self) -> None:
        """A received callback also releases the port before resolving."""
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            _exchange_raw(port, _get("/callback?code=abc"))
            assert future.result(timeout=5).request.code == "abc"
            assert not listener.is_listening
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as rebind:
                rebind.bind(("127.0.0.1", port))
        finally:
            listener.stop()

    def test_stalled_client_bounded_by_deadline(self) -> None:
        """A client that connects and sends nothing cannot outlast the timeout."""
        listener = LoopbackCallbackListener(read_timeout=30)
        port, future = listener.listen(timeout=0.5)
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=5):
                start = time.monotonic()
                with pytest.raises(ProtocolError, match="Timed out"):
                    future.result(timeout=10)
                assert time.monotonic() - start < 5
        finally:
            listener.stop()

    def test_unexpected_failure_still_resolves(self, monkeypatch) -> None:
        """An unexpected error while handling resolves the future."""

        def _boom(line: bytes, callback_path: str = "/callback") -> None:
            raise RuntimeError("parser crashed")

        monkeypatch.setattr("loopauth.auth.callback_server.parse_request_line", _boom)
        listener = LoopbackCallbackListener()
        port, future = listener.listen(timeout=5)
        try:
            _exchange_raw(port, _get("/callback?code=abc"))
            with pytest.raises(ProtocolError, match="parser crashed"):
                future.result(timeout=5)
            assert not listener.is_listening
        finally:
            listener.stop()


# ── Request parsing ──────────────────────────────────────────────────


class TestParseRequestLine:
    """Tests for parse_request_line."""

    def test_decodes_params(self) -> None:
        """Query values are percent-decoded."""
        request = parse_request_line(b"GET /callback?code=a%2Fb&scope=openid+email HTTP/1.1")
        assert request.code == "a/b"
        assert request.params["scope"] == "openid email"
        assert request.path == "/callback"

    def test_first_occurrence_wins(self) -> None:
        """Repeated parameters keep their first value."""
        request = parse_request_line(b"GET /callback?code=one&code=two HTTP/1.1")
        assert request.code == "one"

    def test_absolute_form_rejected(self) -> None:
        """Only origin-form targets are accepted."""
        with pytest.raises(ProtocolError, match="absolute path"):
            parse_request_line(b"GET http://evil/callback?code=x HTTP/1.1")

    @pytest.mark.parametrize(
        "line",
        [
            b"GET //[/callback?code=a HTTP/1.1",
            b"GET //host/callback?code=x HTTP/1.1",
        ],
    )
    def test_authority_like_target_rejected(self, line: bytes) -> None:
        """A target beginning with // is refused as a ProtocolError."""
        with pytest.raises(ProtocolError, match="absolute path"):
            parse_request_line(line)

    def test_bad_version_rejected(self) -> None:
        """The request line must end in HTTP/x.y."""
        with pytest.raises(ProtocolError, match="Malformed"):
            parse_request_line(b"GET /callback?code=x SPDY/3")

    def test_non_ascii_rejected(self) -> None:
        """Raw non-ASCII bytes are refused."""
        with pytest.raises(ProtocolError, match="ASCII"):
            parse_request_line("GET /callback?code=é HTTP/1.1".encode())

    def test_custom_callback_path(self) -> None:
        """A configured path replaces /callback."""
        request = parse_request_line(b"GET /oauth2?code=x HTTP/1.0", callback_path="/oauth2")
        assert request.code == "x"


class TestBuildResponse:
    """Tests for build_response."""

    def test_headers(self) -> None:
        """Content-Length matches the UTF-8 body and security headers are set."""
        body = "<p>✅</p>"
        response = build_response(body)
        head, _, payload = response.partition(b"\r\n\r\n")
        assert payload == body.encode("utf-8")
        assert f"Content-Length: {len(body.encode('utf-8'))}".encode() in head
        assert b"X-Content-Type-Options: nosniff" in head
        assert b"Content-Security-Policy:" in head

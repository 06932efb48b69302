"""Blocking helpers for callers that drive the code exchange themselves.

``authenticate`` captures the loopback redirect and hands it back as a
``{scheme}://callback?{query}`` URL; the caller pulls the code out with
:func:`parse_callback_params` and pairs it with the verifier it made via
:func:`generate_code_verifier` / :func:`sha256_base64url`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .auth.browser import BrowserLauncher
from .auth.callback_server import LoopbackCallbackListener
from .auth.crypto import base64url_encode, sha256
from .auth.pkce import PKCEChallenge
from .auth.types import ListenerStatus


if TYPE_CHECKING:
    from .auth.crypto import RandomSource


def generate_code_verifier(random_source: RandomSource | None = None) -> str:
    """Return a fresh 43-character PKCE code verifier."""
    return PKCEChallenge.generate(random_source).verifier


def sha256_base64url(value: str) -> str:
    """Return ``base64url(sha256(value))`` without padding.

    Applied to a code verifier this is its S256 code challenge.
    """
    return base64url_encode(sha256(value.encode("utf-8")))


def parse_callback_params(callback_url: str) -> dict[str, str]:
    """Decode the query parameters of a captured callback URL.

    Parameters
    ----------
    callback_url : str
        URL such as ``com.example.app://callback?code=...&state=...``.

    Returns
    -------
    dict[str, str]
        Decoded parameters; the first occurrence of a repeated key wins.
        Empty when the URL has no query.
    """
    _, sep, query = callback_url.partition("?")
    if not sep:
        return {}
    query = query.split("#", 1)[0]
    params: dict[str, str] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        params.setdefault(key, value)
    return params


def _with_redirect_uri(url: str, redirect_uri: str) -> str:
    """Append ``redirect_uri`` to the query of ``url``."""
    split = urlsplit(url)
    extra = urlencode({"redirect_uri": redirect_uri})
    query = f"{split.query}&{extra}" if split.query else extra
    return urlunsplit(split._replace(query=query))


def authenticate(
    authorization_url: str,
    redirect_scheme: str,
    timeout: float | None = None,
    *,
    browser: BrowserLauncher | None = None,
    listener: LoopbackCallbackListener | None = None,
) -> str | None:
    """Open the browser and block until the loopback redirect arrives.

    Parameters
    ----------
    authorization_url : str
        Complete authorization URL except for ``redirect_uri``.
    redirect_scheme : str
        Scheme of the returned callback URL.
    timeout : float, optional
        Seconds to wait; ``listener.timeout_seconds`` from settings otherwise.
    browser : BrowserLauncher, optional
        Launcher to use instead of the system default.
    listener : LoopbackCallbackListener, optional
        Unused listener to use instead of one built from settings.

    Returns
    -------
    str or None
        ``"{redirect_scheme}://callback?{query}"`` with the raw query the
        browser sent, or ``None`` if the wait timed out or was cancelled.

    Raises
    ------
    SocketBindError, SocketAcceptError, BrowserLaunchError
        Transport failures.
    ProtocolError
        If the browser's request was not a valid callback.
    """
    from .config import get_settings

    settings = get_settings().listener
    if listener is None:
        listener = LoopbackCallbackListener(
            host=settings.host,
            callback_path=settings.callback_path,
            max_request_bytes=settings.max_request_bytes,
            read_timeout=settings.read_timeout_seconds,
        )
    _port, future = listener.listen(timeout if timeout is not None else settings.timeout_seconds)
    try:
        (browser or BrowserLauncher()).open(_with_redirect_uri(authorization_url, listener.redirect_uri))
        result = future.result()
    finally:
        listener.stop()

    if result.status is not ListenerStatus.RECEIVED or result.request is None:
        return None
    return f"{redirect_scheme}://callback?{result.request.query}"

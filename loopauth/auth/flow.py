"""OAuth2 authorization-code + PKCE flow over a loopback redirect.

:class:`AuthorizationBridge` ties together PKCE generation, the browser
launcher, the loopback listener and the token exchange. Each call to
:meth:`AuthorizationBridge.authenticate` is one attempt with its own
verifier and listener; nothing carries over between attempts and
nothing is retried.
"""

# pylint: disable=logging-too-many-args,protected-access

from __future__ import annotations

import asyncio
import logging
import secrets
import threading

from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    ProtocolError,
    TransportError,
)
from .browser import BrowserLauncher
from .callback_server import LoopbackCallbackListener
from .crypto import base64url_encode, random_bytes
from .pkce import PKCEChallenge
from .token_client import TokenExchangeClient
from .types import (
    AuthAttemptOutcome,
    AuthFlowState,
    ListenerResult,
    ListenerStatus,
    OutcomeKind,
    TokenSet,
)


if TYPE_CHECKING:
    from ..config import LoopAuthSettings
    from .browser import UrlOpener
    from .crypto import RandomSource


logger = logging.getLogger("loopauth.auth")

ListenerFactory = Callable[[], LoopbackCallbackListener]


class _AuthAttempt:
    """In-flight state of one authentication attempt."""

    def __init__(
        self,
        flow_id: str,
        pkce: PKCEChallenge,
        state: str | None,
        listener: LoopbackCallbackListener,
    ) -> None:
        self.flow_id = flow_id
        self.pkce = pkce
        self.state = state
        self.listener = listener
        self.redirect_uri = listener.redirect_uri
        self.flow_state = AuthFlowState.IN_PROGRESS
        self.future: Future[AuthAttemptOutcome] = Future()
        self.future.set_running_or_notify_cancel()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Close the listener early; the outcome becomes cancelled."""
        self.listener.cancel()

    def settle(
        self,
        kind: OutcomeKind,
        flow_state: AuthFlowState,
        result: ListenerResult | None = None,
        error: AuthenticationError | None = None,
    ) -> None:
        """Resolve the outcome future; the first resolution wins."""
        with self._lock:
            if self.future.done():
                return
            outcome = AuthAttemptOutcome(
                kind=kind,
                state=flow_state,
                flow_id=self.flow_id,
                redirect_uri=self.redirect_uri,
                callback=result.request if result else None,
                error=error,
                _verifier=self.pkce.verifier if kind is OutcomeKind.SUCCESS else None,
            )
            self.flow_state = flow_state
            try:
                self.future.set_result(outcome)
            except InvalidStateError:
                return
        logger.info("Auth flow %s finished: %s", self.flow_id, flow_state.value)

    def on_listener_done(self, fut: Future[ListenerResult]) -> None:
        """Classify the listener's result into an outcome."""
        try:
            result = fut.result()
        except ProtocolError as exc:
            self.settle(OutcomeKind.PROTOCOL_ERROR, AuthFlowState.FAILED, error=exc)
            return
        except TransportError as exc:
            self.settle(OutcomeKind.TRANSPORT_ERROR, AuthFlowState.FAILED, error=exc)
            return

        if result.status is ListenerStatus.TIMED_OUT:
            self.settle(OutcomeKind.CANCELLED_OR_TIMED_OUT, AuthFlowState.TIMED_OUT)
            return
        if result.status is ListenerStatus.CANCELLED or result.request is None:
            self.settle(OutcomeKind.CANCELLED_OR_TIMED_OUT, AuthFlowState.CANCELLED)
            return

        request = result.request
        error: ProtocolError | None = None
        if request.error:
            msg = f"Provider returned error: {request.error}"
            if request.error_description:
                msg = f"{msg} - {request.error_description}"
            error = ProtocolError(
                msg,
                error_code=request.error,
                error_description=request.error_description,
                flow_id=self.flow_id,
            )
        elif self.state is not None and not secrets.compare_digest(
            (request.state or "").encode("utf-8"), self.state.encode("ascii")
        ):
            msg = "State parameter mismatch (possible CSRF attack)"
            error = ProtocolError(msg, flow_id=self.flow_id)
        elif not request.code:
            msg = "No authorization code in callback"
            error = ProtocolError(msg, flow_id=self.flow_id)

        if error is not None:
            logger.warning("Auth flow %s rejected: %s", self.flow_id, error.message)
            self.settle(OutcomeKind.PROTOCOL_ERROR, AuthFlowState.FAILED, result, error)
        else:
            self.settle(OutcomeKind.SUCCESS, AuthFlowState.COMPLETED, result)


class AuthorizationBridge:
    """Orchestrates the loopback authorization-code flow with PKCE.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    authorize_url : str
        Default authorization endpoint for :meth:`sign_in`.
    scopes : list[str], optional
        Requested scopes.
    token_client : TokenExchangeClient, optional
        Client for the code exchange; required for :meth:`exchange`.
    browser : BrowserLauncher, optional
        Launcher for the authorization URL.
    listener_factory : callable, optional
        Builds a fresh :class:`LoopbackCallbackListener` per attempt.
    timeout : float
        Seconds to wait for the redirect (default ``60``).
    extra_params : dict[str, str], optional
        Additional authorization query parameters (e.g. ``prompt``).
    verify_state : bool
        Send a random ``state`` and reject callbacks that do not echo it.
    random_source : RandomSource, optional
        Byte source for the verifier and state; the OS CSPRNG by default.
    """

    def __init__(
        self,
        client_id: str,
        authorize_url: str = "",
        scopes: list[str] | None = None,
        token_client: TokenExchangeClient | None = None,
        browser: BrowserLauncher | None = None,
        listener_factory: ListenerFactory | None = None,
        timeout: float = 60.0,
        extra_params: dict[str, str] | None = None,
        *,
        verify_state: bool = True,
        random_source: RandomSource | None = None,
    ) -> None:
        """Initialize the bridge."""
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.scopes = scopes or []
        self.token_client = token_client
        self.browser = browser or BrowserLauncher()
        self.listener_factory = listener_factory or LoopbackCallbackListener
        self.timeout = timeout
        self.extra_params = extra_params or {}
        self.verify_state = verify_state
        self.random_source = random_source

        self._attempt: _AuthAttempt | None = None
        self._attempt_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: LoopAuthSettings | None = None,
        opener: UrlOpener | None = None,
        timeout: float | None = None,
    ) -> AuthorizationBridge:
        """Build a bridge from configuration.

        Parameters
        ----------
        settings : LoopAuthSettings, optional
            Settings to use; the cached global settings by default.
        opener : callable, optional
            URL opener for the browser launcher.
        timeout : float, optional
            Overrides ``listener.timeout_seconds``.
        """
        if settings is None:
            from ..config import get_settings

            settings = get_settings()

        oauth = settings.oauth
        listener = settings.listener

        def make_listener() -> LoopbackCallbackListener:
            return LoopbackCallbackListener(
                host=listener.host,
                callback_path=listener.callback_path,
                max_request_bytes=listener.max_request_bytes,
                read_timeout=listener.read_timeout_seconds,
            )

        return cls(
            client_id=oauth.client_id,
            authorize_url=oauth.authorize_url,
            scopes=oauth.scope_list,
            token_client=TokenExchangeClient(
                token_url=oauth.token_url,
                client_secret=oauth.client_secret,
                timeout=oauth.exchange_timeout_seconds,
            ),
            browser=BrowserLauncher(opener),
            listener_factory=make_listener,
            timeout=timeout if timeout is not None else listener.timeout_seconds,
            extra_params=oauth.extra_authorize_params(),
        )

    @property
    def flow_state(self) -> AuthFlowState:
        """State of the most recent attempt."""
        attempt = self._attempt
        return attempt.flow_state if attempt else AuthFlowState.PENDING

    def build_authorization_url(
        self,
        auth_url_template: str,
        redirect_uri: str,
        pkce: PKCEChallenge,
        state: str | None = None,
    ) -> str:
        """Append the PKCE and redirect parameters to an authorize URL.

        Query parameters already on the template are kept; the flow's own
        parameters take precedence over them and over ``extra_params``.

        Parameters
        ----------
        auth_url_template : str
            The provider's authorization endpoint, optionally with a query.
        redirect_uri : str
            The loopback redirect URI.
        pkce : PKCEChallenge
            The attempt's PKCE pair (only the challenge is used).
        state : str, optional
            CSRF nonce.

        Returns
        -------
        str
            The full authorization URL.
        """
        split = urlsplit(auth_url_template)
        params: dict[str, str] = dict(parse_qsl(split.query, keep_blank_values=True))
        params.update(self.extra_params)
        params.update(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "code_challenge": pkce.challenge,
                "code_challenge_method": pkce.method,
            }
        )
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        if state is not None:
            params["state"] = state
        return urlunsplit(split._replace(query=urlencode(params)))

    def authenticate(
        self,
        auth_url_template: str,
        redirect_scheme: str = "",
    ) -> Future[AuthAttemptOutcome]:
        """Start one authentication attempt.

        Generates the PKCE pair, starts the loopback listener, opens the
        browser and returns without waiting for the redirect.

        Parameters
        ----------
        auth_url_template : str
            The provider's authorization endpoint.
        redirect_scheme : str
            Scheme of the caller's redirect; only used for logging here
            (see :func:`loopauth.webauth.authenticate`).

        Returns
        -------
        Future[AuthAttemptOutcome]
            Resolves exactly once with the attempt's outcome.

        Raises
        ------
        ConfigurationError
            If no client ID is configured.
        RandomGenerationError
            If no secure random bytes are available.
        SocketBindError
            If the loopback listener cannot be bound.
        """
        if not self.client_id:
            msg = "OAuth2 client_id is not configured"
            raise ConfigurationError(msg)

        flow_id = secrets.token_urlsafe(8)
        pkce = PKCEChallenge.generate(self.random_source)
        state = base64url_encode(random_bytes(16, self.random_source)) if self.verify_state else None

        listener = self.listener_factory()
        _port, listener_future = listener.listen(self.timeout)
        attempt = _AuthAttempt(flow_id, pkce, state, listener)
        with self._attempt_lock:
            self._attempt = attempt

        logger.info(
            "Auth flow %s: callback listener at %s%s",
            flow_id,
            attempt.redirect_uri,
            f" (redirect scheme {redirect_scheme})" if redirect_scheme else "",
        )

        try:
            url = self.build_authorization_url(auth_url_template, attempt.redirect_uri, pkce, state)
            self.browser.open(url)
        except TransportError as exc:
            listener.stop()
            attempt.settle(OutcomeKind.TRANSPORT_ERROR, AuthFlowState.FAILED, error=exc)
            return attempt.future
        except BaseException:
            listener.stop()
            attempt.settle(OutcomeKind.CANCELLED_OR_TIMED_OUT, AuthFlowState.CANCELLED)
            raise

        listener_future.add_done_callback(attempt.on_listener_done)
        return attempt.future

    def cancel(self) -> None:
        """Cancel the in-flight attempt, releasing its listener."""
        with self._attempt_lock:
            attempt = self._attempt
        if attempt is not None and not attempt.future.done():
            logger.info("Auth flow %s cancelled", attempt.flow_id)
            attempt.cancel()

    async def exchange(self, outcome: AuthAttemptOutcome) -> TokenSet:
        """Exchange a successful outcome's code for tokens.

        The outcome's verifier is spent by this call; a second exchange of
        the same outcome fails.

        Raises
        ------
        AuthenticationError
            If the outcome did not succeed or was already exchanged.
        ExchangeError
            If the token endpoint rejects the exchange.
        ConfigurationError
            If no token client is configured.
        """
        if self.token_client is None:
            msg = "No token endpoint configured for the code exchange"
            raise ConfigurationError(msg)
        if not outcome.succeeded or outcome.code is None:
            outcome.raise_for_error()
            msg = "Authentication attempt did not produce an authorization code"
            raise AuthenticationError(msg, flow_id=outcome.flow_id)

        verifier = outcome._take_verifier()
        return await self.token_client.exchange(
            code=outcome.code,
            verifier=verifier,
            redirect_uri=outcome.redirect_uri,
            client_id=self.client_id,
        )

    async def sign_in(
        self,
        auth_url_template: str | None = None,
        redirect_scheme: str = "",
    ) -> TokenSet | None:
        """Run the whole flow: browser login, redirect capture, code exchange.

        Returns
        -------
        TokenSet or None
            The tokens, or ``None`` if the user cancelled or the wait
            timed out.

        Raises
        ------
        AuthenticationError
            Any typed failure of the attempt or the exchange.
        ConfigurationError
            If no client ID or authorization endpoint is configured.
        """
        template = auth_url_template or self.authorize_url
        if not template:
            msg = "OAuth2 authorize_url is not configured"
            raise ConfigurationError(msg)

        future = self.authenticate(template, redirect_scheme)
        try:
            outcome = await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            self.cancel()
            raise

        if outcome.cancelled:
            logger.info("Auth flow %s ended without sign-in (%s)", outcome.flow_id, outcome.state.value)
            return None
        outcome.raise_for_error()
        return await self.exchange(outcome)

    def sign_in_sync(
        self,
        auth_url_template: str | None = None,
        redirect_scheme: str = "",
    ) -> TokenSet | None:
        """Blocking :meth:`sign_in` for code without an event loop.

        Raises
        ------
        RuntimeError
            If called from inside a running event loop.
        """

        async def _run() -> TokenSet | None:
            try:
                return await self.sign_in(auth_url_template, redirect_scheme)
            finally:
                if self.token_client is not None:
                    await self.token_client.close()

        return asyncio.run(_run())


_bridge_instance: AuthorizationBridge | None = None
_bridge_lock = threading.Lock()


def get_bridge() -> AuthorizationBridge:
    """Get the process-wide bridge, built from settings on first use.

    Call ``reset_bridge()`` to drop the cached instance (e.g. in tests).
    """
    global _bridge_instance  # noqa: PLW0603

    with _bridge_lock:
        if _bridge_instance is None:
            _bridge_instance = AuthorizationBridge.from_settings()
        return _bridge_instance


def reset_bridge() -> None:
    """Reset the process-wide bridge instance."""
    global _bridge_instance  # noqa: PLW0603

    with _bridge_lock:
        if _bridge_instance is not None:
            _bridge_instance.cancel()
        _bridge_instance = None

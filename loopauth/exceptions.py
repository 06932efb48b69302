"""loopauth exception hierarchy.

All loopauth-specific exceptions inherit from LoopAuthException, enabling
catch-all handling while supporting specific error types.

Timeouts and user cancellation are not exceptions: they are a normal
terminal outcome of an authentication attempt
(see :class:`loopauth.auth.types.OutcomeKind`).
"""

from __future__ import annotations

from typing import Any


class LoopAuthException(Exception):
    """Base exception for all loopauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize loopauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (port, status, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(LoopAuthException):
    """Required configuration is missing or invalid.

    Raised at use time, e.g. when a sign-in is attempted without a
    client ID or token endpoint.
    """


class AuthenticationError(LoopAuthException):
    """Base exception for all authentication failures.

    Parameters
    ----------
    message : str
        Human-readable error message.
    provider : str, optional
        The OAuth2 provider name or host.
    flow_id : str, optional
        The unique identifier of the auth attempt that failed.
    **context : Any
        Additional context.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error."""
        if provider is not None:
            context["provider"] = provider
        if flow_id is not None:
            context["flow_id"] = flow_id
        super().__init__(message, **context)
        self.provider = provider
        self.flow_id = flow_id


class CryptoError(AuthenticationError):
    """A cryptographic primitive failed."""


class RandomGenerationError(CryptoError):
    """The platform's secure random number generator is unavailable.

    Never answered with a fallback to a non-cryptographic generator.
    """


class HashError(CryptoError):
    """SHA-256 hashing failed."""


class TransportError(AuthenticationError):
    """Local transport failure (socket or OS URL handler)."""


class SocketBindError(TransportError):
    """The loopback listener could not bind or listen.

    Parameters
    ----------
    message : str
        Human-readable error message.
    host : str, optional
        The address the bind was attempted on.
    **context : Any
        Additional context.
    """

    def __init__(self, message: str, host: str | None = None, **context: Any) -> None:
        """Initialize bind error."""
        super().__init__(message, host=host, **context)
        self.host = host


class SocketAcceptError(TransportError):
    """Accepting the browser connection failed before the timeout elapsed."""


class BrowserLaunchError(TransportError):
    """The OS default URL handler could not be invoked."""


class ProtocolError(AuthenticationError):
    """The callback request was malformed or the provider returned an error.

    Parameters
    ----------
    message : str
        Human-readable error message.
    error_code : str, optional
        The OAuth2 ``error`` parameter (e.g. ``"access_denied"``).
    error_description : str, optional
        The OAuth2 ``error_description`` parameter.
    **context : Any
        Additional context.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        error_description: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize protocol error."""
        if error_code is not None:
            context["error_code"] = error_code
        if error_description is not None:
            context["error_description"] = error_description
        super().__init__(message, **context)
        self.error_code = error_code
        self.error_description = error_description


class ExchangeError(AuthenticationError):
    """The code-for-token exchange failed.

    Carries the HTTP status and the raw response body verbatim so the
    provider's diagnostic reaches the caller unchanged.

    Parameters
    ----------
    message : str
        Human-readable error message.
    status : int or None
        HTTP status code, or ``None`` if no response was received.
    body : str
        The raw response body (empty when no response was received).
    **context : Any
        Additional context.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str = "",
        **context: Any,
    ) -> None:
        """Initialize exchange error."""
        super().__init__(message, status=status, **context)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        """Format exception with status and raw body."""
        base = super().__str__()
        if self.body:
            return f"{base}: {self.body}"
        return base

"""Data types shared by the listener, the bridge and the token client."""

from __future__ import annotations

import threading
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import AuthenticationError


class ListenerStatus(str, Enum):
    """How a loopback listener finished."""

    RECEIVED = "received"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallbackRequest:
    """The single request captured by the loopback listener.

    Attributes
    ----------
    params : dict[str, str]
        URL-decoded query parameters (first occurrence wins).
    path : str
        The request path without the query string.
    query : str
        The raw, still-encoded query string.
    """

    params: dict[str, str]
    path: str = "/callback"
    query: str = ""

    @property
    def code(self) -> str | None:
        """The authorization code, if present."""
        return self.params.get("code")

    @property
    def state(self) -> str | None:
        """The ``state`` nonce echoed by the provider."""
        return self.params.get("state")

    @property
    def error(self) -> str | None:
        """The provider ``error`` parameter."""
        return self.params.get("error")

    @property
    def error_description(self) -> str | None:
        """The provider ``error_description`` parameter."""
        return self.params.get("error_description")


@dataclass(frozen=True)
class ListenerResult:
    """Value a listener future resolves to when no error occurred."""

    status: ListenerStatus
    request: CallbackRequest | None = None


class AuthFlowState(str, Enum):
    """State of an authentication attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the attempt has finished."""
        return self not in (AuthFlowState.PENDING, AuthFlowState.IN_PROGRESS)


class OutcomeKind(str, Enum):
    """Tag of an :class:`AuthAttemptOutcome`."""

    SUCCESS = "success"
    CANCELLED_OR_TIMED_OUT = "cancelled_or_timed_out"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_ERROR = "protocol_error"


@dataclass
class AuthAttemptOutcome:
    """Result of one authentication attempt.

    Exactly one of ``callback`` (on success) or ``error`` (on failure)
    is set; both are ``None`` when the user cancelled or the wait timed out.

    Attributes
    ----------
    kind : OutcomeKind
        Which branch the caller must take.
    state : AuthFlowState
        The terminal state of the attempt.
    flow_id : str
        Identifier of the attempt, for logs.
    redirect_uri : str
        The loopback redirect URI sent to the provider.
    callback : CallbackRequest or None
        The captured callback on success.
    error : AuthenticationError or None
        The typed failure on ``TRANSPORT_ERROR`` / ``PROTOCOL_ERROR``.
    """

    kind: OutcomeKind
    state: AuthFlowState
    flow_id: str
    redirect_uri: str = ""
    callback: CallbackRequest | None = None
    error: AuthenticationError | None = None
    _verifier: str | None = field(default=None, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        """Whether an authorization code was received."""
        return self.kind is OutcomeKind.SUCCESS

    @property
    def cancelled(self) -> bool:
        """Whether the user cancelled or the wait timed out."""
        return self.kind is OutcomeKind.CANCELLED_OR_TIMED_OUT

    @property
    def code(self) -> str | None:
        """The authorization code on success."""
        return self.callback.code if self.callback else None

    def raise_for_error(self) -> None:
        """Raise the attempt's typed error, if it failed."""
        if self.error is not None:
            raise self.error

    def _take_verifier(self) -> str:
        """Hand out the verifier exactly once."""
        with self._lock:
            verifier = self._verifier
            self._verifier = None
        if verifier is None:
            msg = "Code verifier is unavailable or was already used for an exchange"
            raise AuthenticationError(msg, flow_id=self.flow_id)
        return verifier


class TokenSet(BaseModel):
    """Token endpoint response.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    expires_in : int
        Token lifetime in seconds from issuance.
    id_token : str or None
        OIDC ID token (JWT). Google and other OIDC providers always return
        one when ``openid`` is requested; plain OAuth2 providers omit it,
        so it is optional here. Callers that need it should check for
        ``None``.
    refresh_token : str or None
        Refresh token, if the provider issued one.
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    issued_at : float
        Unix timestamp when the response was received.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    expires_in: int = 3600
    id_token: str | None = None
    refresh_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
    issued_at: float = Field(default_factory=time.time)

    @classmethod
    def from_response(cls, raw: dict[str, Any]) -> TokenSet:
        """Build a token set from a decoded token endpoint response."""
        known = {k: raw[k] for k in cls.model_fields if k in raw and k not in ("raw", "issued_at")}
        return cls(**known, raw=raw)

    @property
    def expires_at(self) -> float:
        """Expiry timestamp of the access token."""
        return self.issued_at + self.expires_in

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        return time.time() > self.expires_at

    def __repr__(self) -> str:
        """Hide token values."""
        return (
            f"TokenSet(token_type={self.token_type!r}, expires_in={self.expires_in!r}, "
            f"scope={self.scope!r}, has_id_token={self.id_token is not None}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )

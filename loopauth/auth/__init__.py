"""OAuth2 authorization-code flow with PKCE over a loopback redirect.

Provides PKCE generation, the single-shot loopback listener, the browser
launcher, the token exchange client and the flow orchestration.
"""

from __future__ import annotations

from .browser import BrowserLauncher, print_url_opener
from .callback_server import LoopbackCallbackListener
from .flow import AuthorizationBridge, get_bridge, reset_bridge
from .pkce import PKCEChallenge
from .token_client import TokenExchangeClient
from .types import (
    AuthAttemptOutcome,
    AuthFlowState,
    CallbackRequest,
    ListenerResult,
    ListenerStatus,
    OutcomeKind,
    TokenSet,
)


__all__ = [
    "AuthAttemptOutcome",
    "AuthFlowState",
    "AuthorizationBridge",
    "BrowserLauncher",
    "CallbackRequest",
    "ListenerResult",
    "ListenerStatus",
    "LoopbackCallbackListener",
    "OutcomeKind",
    "PKCEChallenge",
    "TokenExchangeClient",
    "TokenSet",
    "get_bridge",
    "print_url_opener",
    "reset_bridge",
]

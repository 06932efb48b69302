"""loopauth - OAuth2 sign-in for desktop Python applications.

Runs the Authorization Code grant with PKCE: opens the system browser,
captures the redirect on a one-shot ``127.0.0.1`` listener and exchanges
the code for tokens.
"""

from .auth import (
    AuthAttemptOutcome,
    AuthFlowState,
    AuthorizationBridge,
    BrowserLauncher,
    CallbackRequest,
    LoopbackCallbackListener,
    OutcomeKind,
    PKCEChallenge,
    TokenExchangeClient,
    TokenSet,
    get_bridge,
    reset_bridge,
)
from .config import (
    ListenerSettings,
    LogSettings,
    LoopAuthSettings,
    OAuthSettings,
    clear_settings,
    get_settings,
    reload_settings,
)
from .exceptions import (
    AuthenticationError,
    BrowserLaunchError,
    ConfigurationError,
    CryptoError,
    ExchangeError,
    HashError,
    LoopAuthException,
    ProtocolError,
    RandomGenerationError,
    SocketAcceptError,
    SocketBindError,
    TransportError,
)
from .log import enable_debug, get_logger, set_level
from .webauth import (
    authenticate,
    generate_code_verifier,
    parse_callback_params,
    sha256_base64url,
)


__version__ = "0.1.0"

__all__ = [
    "AuthAttemptOutcome",
    "AuthFlowState",
    "AuthenticationError",
    "AuthorizationBridge",
    "BrowserLaunchError",
    "BrowserLauncher",
    "CallbackRequest",
    "ConfigurationError",
    "CryptoError",
    "ExchangeError",
    "HashError",
    "ListenerSettings",
    "LogSettings",
    "LoopAuthException",
    "LoopAuthSettings",
    "LoopbackCallbackListener",
    "OAuthSettings",
    "OutcomeKind",
    "PKCEChallenge",
    "ProtocolError",
    "RandomGenerationError",
    "SocketAcceptError",
    "SocketBindError",
    "TokenExchangeClient",
    "TokenSet",
    "TransportError",
    "__version__",
    "authenticate",
    "clear_settings",
    "enable_debug",
    "generate_code_verifier",
    "get_bridge",
    "get_logger",
    "get_settings",
    "parse_callback_params",
    "reload_settings",
    "reset_bridge",
    "set_level",
    "sha256_base64url",
]

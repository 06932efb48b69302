"""Authorization-code-for-token exchange.

One ``application/x-www-form-urlencoded`` POST to the provider's token
endpoint. Failures keep the HTTP status and the raw body verbatim.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import json
import logging

from typing import Any
from urllib.parse import urlsplit

import httpx

from pydantic import ValidationError

from ..exceptions import ExchangeError
from .types import TokenSet


logger = logging.getLogger("loopauth.auth")


class TokenExchangeClient:
    """Exchange an authorization code and PKCE verifier for tokens.

    Parameters
    ----------
    token_url : str
        The provider's token endpoint.
    client_secret : str
        Optional client secret for providers that issue one to
        installed applications.
    timeout : float
        Request timeout in seconds.
    http_client : httpx.AsyncClient, optional
        Client to use instead of an internally created one. Its lifecycle
        stays with the caller.
    """

    def __init__(
        self,
        token_url: str,
        client_secret: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the token exchange client."""
        self.token_url = token_url
        self.client_secret = client_secret
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def provider(self) -> str:
        """Host of the token endpoint, used to label errors."""
        return urlsplit(self.token_url).netloc or self.token_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> TokenExchangeClient:
        """Enter async context."""
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close on exit."""
        await self.close()

    async def exchange(
        self,
        code: str,
        verifier: str,
        redirect_uri: str,
        client_id: str,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the callback.
        verifier : str
            The PKCE code verifier matching the challenge that was sent.
        redirect_uri : str
            The exact redirect URI used in the authorization request.
        client_id : str
            The OAuth2 client ID.

        Returns
        -------
        TokenSet
            The parsed token response.

        Raises
        ------
        ExchangeError
            On a non-2xx status, an unparsable 2xx body, or a network
            failure (``status`` is ``None`` then).
        """
        data: dict[str, str] = {
            "client_id": client_id,
            "code": code,
            "code_verifier": verifier,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise ExchangeError(msg, provider=self.provider) from exc

        body = resp.text
        if not resp.is_success:
            logger.warning("Token exchange failed with HTTP %d", resp.status_code)
            msg = f"Token exchange failed ({resp.status_code})"
            raise ExchangeError(msg, status=resp.status_code, body=body, provider=self.provider)

        return self._parse_tokens(resp.status_code, body)

    def _parse_tokens(self, status: int, body: str) -> TokenSet:
        """Decode a 2xx token response body."""
        try:
            raw: Any = json.loads(body)
        except json.JSONDecodeError as exc:
            msg = f"Token endpoint returned invalid JSON ({status})"
            raise ExchangeError(msg, status=status, body=body, provider=self.provider) from exc

        if not isinstance(raw, dict) or "access_token" not in raw:
            msg = f"Token response has no access_token ({status})"
            raise ExchangeError(msg, status=status, body=body, provider=self.provider)

        try:
            tokens = TokenSet.from_response(raw)
        except ValidationError as exc:
            msg = f"Token response has an unexpected shape ({status})"
            raise ExchangeError(msg, status=status, body=body, provider=self.provider) from exc

        logger.debug("Token exchange succeeded (%s)", tokens)
        return tokens

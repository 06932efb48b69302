"""Tests for the authorization-code token exchange."""

from __future__ import annotations

import json

from urllib.parse import parse_qs

import httpx
import pytest

from loopauth.auth.token_client import TokenExchangeClient
from loopauth.auth.types import TokenSet
from loopauth.exceptions import AuthenticationError, ExchangeError


TOKEN_URL = "https://oauth2.example.com/token"


def _client(handler, **kwargs) -> TokenExchangeClient:
    return TokenExchangeClient(
        TOKEN_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


async def _exchange(client: TokenExchangeClient) -> TokenSet:
    return await client.exchange(
        code="4/0Acode",
        verifier="v" * 43,
        redirect_uri="http://127.0.0.1:50123/callback",
        client_id="cid",
    )


class TestTokenExchangeClient:
    """Tests for TokenExchangeClient.exchange."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """A 200 JSON response becomes a TokenSet."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.a0",
                    "expires_in": 3599,
                    "refresh_token": "1//rt",
                    "scope": "openid email",
                    "token_type": "Bearer",
                    "id_token": "eyJhbGciOi",
                },
            )

        tokens = await _exchange(_client(handler))

        assert tokens.access_token == "ya29.a0"
        assert tokens.refresh_token == "1//rt"
        assert tokens.id_token == "eyJhbGciOi"
        assert tokens.expires_in == 3599
        assert tokens.raw["scope"] == "openid email"
        assert not tokens.is_expired

        request = requests[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.headers["Accept"] == "application/json"
        form = parse_qs(request.content.decode())
        assert form == {
            "client_id": ["cid"],
            "code": ["4/0Acode"],
            "code_verifier": ["v" * 43],
            "grant_type": ["authorization_code"],
            "redirect_uri": ["http://127.0.0.1:50123/callback"],
        }

    @pytest.mark.asyncio
    async def test_client_secret_sent_when_configured(self) -> None:
        """A configured client secret is added to the form."""
        forms: list[dict[str, list[str]]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "at"})

        await _exchange(_client(handler, client_secret="shh"))
        assert forms[0]["client_secret"] == ["shh"]

    @pytest.mark.asyncio
    async def test_invalid_grant_keeps_raw_body(self) -> None:
        """A 400 response keeps status and the body text verbatim."""
        raw = '{"error":"invalid_grant","error_description":"Bad Request"}'

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text=raw)

        with pytest.raises(ExchangeError) as exc_info:
            await _exchange(_client(handler))

        err = exc_info.value
        assert isinstance(err, AuthenticationError)
        assert err.status == 400
        assert err.body == raw
        assert raw in str(err)
        assert err.context["provider"] == "oauth2.example.com"

    @pytest.mark.asyncio
    async def test_malformed_json(self) -> None:
        """A 2xx body that is not JSON is an exchange error."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(ExchangeError, match="invalid JSON") as exc_info:
            await _exchange(_client(handler))
        assert exc_info.value.status == 200
        assert exc_info.value.body == "<html>oops</html>"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"token_type": "Bearer"}, ["access_token"]])
    async def test_missing_access_token(self, payload: object) -> None:
        """JSON without an access_token is an exchange error."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=json.dumps(payload))

        with pytest.raises(ExchangeError, match="no access_token"):
            await _exchange(_client(handler))

    @pytest.mark.asyncio
    async def test_unexpected_shape(self) -> None:
        """Fields of the wrong type are reported, not raised raw."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "at", "expires_in": "soon"})

        with pytest.raises(ExchangeError, match="unexpected shape"):
            await _exchange(_client(handler))

    @pytest.mark.asyncio
    async def test_network_failure(self) -> None:
        """A transport failure has no status and names the detail."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExchangeError, match="connection refused") as exc_info:
            await _exchange(_client(handler))
        assert exc_info.value.status is None
        assert exc_info.value.body == ""

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self) -> None:
        """close() leaves a caller-owned client open."""
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda _r: httpx.Response(200, json={"access_token": "a"}))
        )
        async with TokenExchangeClient(TOKEN_URL, http_client=http_client) as client:
            await _exchange(client)
        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self) -> None:
        """A client created internally is closed by close()."""
        client = TokenExchangeClient(TOKEN_URL)
        http_client = await client._get_client()  # pylint: disable=protected-access
        await client.close()
        assert http_client.is_closed


class TestTokenSet:
    """Tests for TokenSet."""

    def test_repr_hides_tokens(self) -> None:
        """repr() shows metadata only."""
        tokens = TokenSet.from_response(
            {"access_token": "secret-at", "id_token": "secret-id", "expires_in": 10}
        )
        assert "secret-at" not in repr(tokens)
        assert "secret-id" not in repr(tokens)
        assert "has_id_token=True" in repr(tokens)

    def test_id_token_optional(self) -> None:
        """A plain OAuth2 response without id_token is accepted."""
        tokens = TokenSet.from_response({"access_token": "at", "token_type": "Bearer"})
        assert tokens.id_token is None
        assert "has_id_token=False" in repr(tokens)

    def test_expiry(self) -> None:
        """expires_at is issued_at + expires_in."""
        tokens = TokenSet(access_token="a", expires_in=60, issued_at=1000.0)
        assert tokens.expires_at == 1060.0
        assert tokens.is_expired

    def test_unknown_fields_kept_in_raw(self) -> None:
        """Provider-specific fields survive in raw."""
        tokens = TokenSet.from_response({"access_token": "a", "refresh_token_expires_in": 5})
        assert tokens.raw["refresh_token_expires_in"] == 5
        assert tokens.refresh_token is None

"""Tests for the Google OAuth client."""

import json
import pytest
from datetime import datetime
from urllib.parse import parse_qs, urlparse

import httpx

from shared.errors import OAuthError
from shared.oauth import GOOGLE_REVOKE_URL, GOOGLE_TOKEN_URL, GoogleOAuthClient


def make_client(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleOAuthClient(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:8001/api/v1/integrations/google/callback",
        http_client=http_client
    )


def test_authorization_url_requests_offline_access():
    client = make_client(lambda request: httpx.Response(200))

    url = client.get_authorization_url(state="signed-state")
    query = parse_qs(urlparse(url).query)

    assert query["client_id"] == ["client-id"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["signed-state"]
    assert "https://www.googleapis.com/auth/drive.readonly" in query["scope"][0].split(" ")


def test_is_configured(monkeypatch):
    monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("GOOGLE_REDIRECT_URI", raising=False)

    assert GoogleOAuthClient(http_client=httpx.AsyncClient()).is_configured() is False
    assert make_client(lambda request: httpx.Response(200)).is_configured() is True


@pytest.mark.asyncio
async def test_exchange_code():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "expires_in": 3599,
            "token_type": "Bearer",
        })

    client = make_client(handler)
    before = datetime.utcnow()

    tokens = await client.exchange_code("auth-code")

    assert seen["url"] == GOOGLE_TOKEN_URL
    assert seen["form"]["grant_type"] == ["authorization_code"]
    assert seen["form"]["code"] == ["auth-code"]
    assert tokens.access_token == "ya29.access"
    assert tokens.refresh_token == "1//refresh"
    assert tokens.expires_at > before


@pytest.mark.asyncio
async def test_refresh_keeps_refresh_token_when_omitted():
    client = make_client(lambda request: httpx.Response(200, json={
        "access_token": "ya29.new", "expires_in": 3600
    }))

    tokens = await client.refresh_access_token("1//refresh")

    assert tokens.access_token == "ya29.new"
    assert tokens.refresh_token == "1//refresh"


@pytest.mark.asyncio
async def test_token_error_raises_oauth_error():
    client = make_client(lambda request: httpx.Response(400, json={
        "error": "invalid_grant", "error_description": "Token has been expired or revoked."
    }))

    with pytest.raises(OAuthError) as exc_info:
        await client.refresh_access_token("1//revoked")

    assert exc_info.value.status_code == 400
    assert "expired or revoked" in str(exc_info.value)


@pytest.mark.asyncio
async def test_get_user_info():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer ya29.access"
        return httpx.Response(200, content=json.dumps({"email": "user@example.com"}))

    client = make_client(handler)

    assert (await client.get_user_info("ya29.access"))["email"] == "user@example.com"


@pytest.mark.asyncio
async def test_revoke_token():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    client = make_client(handler)

    assert await client.revoke_token("1//refresh") is True
    assert str(seen[0].url).startswith(GOOGLE_REVOKE_URL)
    assert seen[0].url.params["token"] == "1//refresh"


@pytest.mark.asyncio
async def test_revoke_token_failure_is_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    rejected = make_client(lambda request: httpx.Response(400, json={"error": "invalid_token"}))
    unreachable = make_client(handler)

    assert await rejected.revoke_token("bad") is False
    assert await unreachable.revoke_token("1//refresh") is False

"""Google OAuth 2.0 client for Drive and Calendar connections."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from shared.config import get_google_oauth_config
from shared.errors import OAuthError
from shared.models import TokenSet

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error") or response.text
    return response.text


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints: consent URL, code exchange, refresh, revoke."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0
    ):
        """
        Initialize the OAuth client.

        Args:
            client_id: OAuth client ID (defaults to GOOGLE_CLIENT_ID)
            client_secret: OAuth client secret (defaults to GOOGLE_CLIENT_SECRET)
            redirect_uri: Registered redirect URI (defaults to GOOGLE_REDIRECT_URI)
            http_client: Shared HTTP client; one is created if not provided
            timeout: Per-request timeout in seconds
        """
        config = get_google_oauth_config()
        self.client_id = client_id or config["client_id"]
        self.client_secret = client_secret or config["client_secret"]
        self.redirect_uri = redirect_uri or config["redirect_uri"]
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    def is_configured(self) -> bool:
        """Whether client credentials and a redirect URI are available."""
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """
        Build the consent screen URL.

        Offline access and a forced consent prompt make Google return a
        refresh token on every authorization.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Raises:
            OAuthError: If Google rejects the code
        """
        data = await self._token_request({
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        })
        return self._token_set(data, fallback_refresh_token=None)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """
        Obtain a new access token from a refresh token.

        Google usually omits the refresh token from refresh responses; the
        original one is kept in that case.

        Raises:
            OAuthError: If Google rejects the refresh token
        """
        data = await self._token_request({
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
        })
        return self._token_set(data, fallback_refresh_token=refresh_token)

    async def get_user_info(self, access_token: str) -> dict:
        """Fetch the authorized account's profile (email, name, picture)."""
        response = await self.http_client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout
        )
        if response.status_code != 200:
            raise OAuthError(f"Failed to get user info: {_error_detail(response)}", response.status_code)
        return response.json()

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke an access or refresh token.

        Returns:
            True if Google accepted the revocation, False otherwise
        """
        try:
            response = await self.http_client.post(
                GOOGLE_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation request failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token revocation rejected ({response.status_code}): {_error_detail(response)}")
            return False
        return True

    async def _token_request(self, form: dict) -> dict:
        response = await self.http_client.post(
            GOOGLE_TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout
        )
        if response.status_code != 200:
            detail = _error_detail(response)
            logger.error(f"Token endpoint returned {response.status_code} for {form['grant_type']}: {detail}")
            raise OAuthError(f"Token request failed: {detail}", response.status_code)
        return response.json()

    @staticmethod
    def _token_set(data: dict, fallback_refresh_token: Optional[str]) -> TokenSet:
        expires_in = data.get("expires_in")
        expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )

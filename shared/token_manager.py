"""Keeps connection access tokens valid, refreshing them shortly before expiry."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from shared.db_operations import DatabaseOperations, IdLike
from shared.encryption import EncryptionService
from shared.errors import ConnectionNotFound, OAuthError, RefreshFailed, TokenMissing
from shared.oauth import GoogleOAuthClient

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


def token_needs_refresh(token_expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the expiry is unknown or falls within the refresh margin."""
    if token_expiry is None:
        return True
    now = now or datetime.utcnow()
    return now >= token_expiry - TOKEN_REFRESH_MARGIN


class TokenManager:
    """Hands out usable access tokens for connections."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        oauth_client: GoogleOAuthClient
    ):
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.oauth_client = oauth_client

    async def ensure_valid_access_token(self, connection_id: IdLike) -> str:
        """
        Return an access token that is valid for at least the refresh margin.

        Refreshes and persists a new access token when the stored one is
        expired, about to expire, or has no recorded expiry.

        Args:
            connection_id: The connection whose token is needed

        Returns:
            Plaintext access token

        Raises:
            ConnectionNotFound: If the connection does not exist
            TokenMissing: If the access or refresh token is absent
            RefreshFailed: If the provider rejects the refresh token; the
                connection is put in error state
        """
        tokens = self.db_ops.get_connection_tokens(connection_id, self.encryption_service)
        if tokens is None:
            raise ConnectionNotFound(connection_id)

        if not tokens['access_token'] or not tokens['refresh_token']:
            raise TokenMissing(f"No tokens stored for connection {connection_id}")

        if not token_needs_refresh(tokens['token_expiry']):
            return tokens['access_token']

        logger.info(f"Refreshing access token for connection {connection_id}")
        try:
            token_set = await self.oauth_client.refresh_access_token(tokens['refresh_token'])
        except OAuthError as e:
            logger.error(f"Token refresh failed for connection {connection_id}: {e}")
            # The user has to re-authorize before the connection is usable again
            self.db_ops.update_connection(connection_id, status='error')
            raise RefreshFailed(f"Failed to refresh access token: {e}") from e

        refresh_token = token_set.refresh_token
        if refresh_token == tokens['refresh_token']:
            refresh_token = None

        self.db_ops.store_connection_tokens(
            connection_id,
            access_token=token_set.access_token,
            token_expiry=token_set.expires_at,
            encryption_service=self.encryption_service,
            refresh_token=refresh_token
        )
        return token_set.access_token

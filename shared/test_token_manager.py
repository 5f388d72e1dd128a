"""Tests for access token refresh handling."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.errors import ConnectionNotFound, OAuthError, RefreshFailed, TokenMissing
from shared.models import TokenSet
from shared.token_manager import TOKEN_REFRESH_MARGIN, TokenManager, token_needs_refresh


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    return EncryptionService()


@pytest.fixture
def oauth_client():
    client = MagicMock()
    client.refresh_access_token = AsyncMock()
    return client


@pytest.fixture
def token_manager(db_ops, encryption_service, oauth_client):
    return TokenManager(db_ops, encryption_service, oauth_client)


def make_connection(db_ops, encryption_service, expiry, refresh_token="refresh_1"):
    return db_ops.create_connection(
        user_id="user_1",
        kind="drive",
        access_token="access_old",
        refresh_token=refresh_token,
        token_expiry=expiry,
        encryption_service=encryption_service
    )


class TestTokenNeedsRefresh:

    def test_unknown_expiry(self):
        assert token_needs_refresh(None) is True

    def test_inside_margin(self):
        now = datetime.utcnow()
        assert token_needs_refresh(now + TOKEN_REFRESH_MARGIN - timedelta(seconds=1), now) is True

    def test_outside_margin(self):
        now = datetime.utcnow()
        assert token_needs_refresh(now + TOKEN_REFRESH_MARGIN + timedelta(seconds=1), now) is False


class TestEnsureValidAccessToken:

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_refresh(
        self, db_ops, encryption_service, oauth_client, token_manager
    ):
        """A token valid well past the margin triggers zero refreshes."""
        connection = make_connection(db_ops, encryption_service, datetime.utcnow() + timedelta(hours=1))

        token = await token_manager.ensure_valid_access_token(connection.id)

        assert token == "access_old"
        oauth_client.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once_and_persisted(
        self, db_ops, encryption_service, oauth_client, token_manager
    ):
        """An expired token triggers exactly one refresh and the new expiry is stored."""
        connection = make_connection(db_ops, encryption_service, datetime.utcnow() - timedelta(minutes=1))
        new_expiry = datetime.utcnow() + timedelta(hours=1)
        oauth_client.refresh_access_token.return_value = TokenSet(
            access_token="access_new", refresh_token="refresh_1", expires_at=new_expiry
        )

        token = await token_manager.ensure_valid_access_token(connection.id)

        assert token == "access_new"
        oauth_client.refresh_access_token.assert_awaited_once_with("refresh_1")

        tokens = db_ops.get_connection_tokens(connection.id, encryption_service)
        assert tokens["access_token"] == "access_new"
        assert tokens["refresh_token"] == "refresh_1"
        assert tokens["token_expiry"] > datetime.utcnow()

        # Second call uses the stored token
        assert await token_manager.ensure_valid_access_token(connection.id) == "access_new"
        assert oauth_client.refresh_access_token.await_count == 1

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(
        self, db_ops, encryption_service, oauth_client, token_manager
    ):
        connection = make_connection(db_ops, encryption_service, None)
        oauth_client.refresh_access_token.return_value = TokenSet(
            access_token="access_new",
            refresh_token="refresh_2",
            expires_at=datetime.utcnow() + timedelta(hours=1)
        )

        await token_manager.ensure_valid_access_token(connection.id)

        tokens = db_ops.get_connection_tokens(connection.id, encryption_service)
        assert tokens["refresh_token"] == "refresh_2"

    @pytest.mark.asyncio
    async def test_unknown_connection(self, token_manager):
        with pytest.raises(ConnectionNotFound):
            await token_manager.ensure_valid_access_token(uuid4())

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, db_ops, encryption_service, oauth_client, token_manager):
        connection = make_connection(db_ops, encryption_service, datetime.utcnow(), refresh_token=None)

        with pytest.raises(TokenMissing):
            await token_manager.ensure_valid_access_token(connection.id)
        oauth_client.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_refresh_token(self, db_ops, encryption_service, oauth_client, token_manager):
        """A provider rejection surfaces as RefreshFailed and flags the connection for re-authorization."""
        connection = make_connection(db_ops, encryption_service, datetime.utcnow() - timedelta(hours=1))
        oauth_client.refresh_access_token.side_effect = OAuthError("invalid_grant", 400)

        with pytest.raises(RefreshFailed):
            await token_manager.ensure_valid_access_token(connection.id)

        tokens = db_ops.get_connection_tokens(connection.id, encryption_service)
        assert tokens["access_token"] == "access_old"
        assert db_ops.get_connection(connection.id).status == "error"

"""
Access credential handling for channel jobs.
"""
import logging
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from shared_lib.encryption import DecryptionError, TokenVault
from server.monitor.errors import AuthExpired, TokenRefreshError
from server.monitor.models import Channel
from server.monitor.services.oauth_service import OAuthClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenService:
    """Decrypts, refreshes and persists a channel's OAuth tokens."""

    def __init__(self, vault: TokenVault, oauth_client: OAuthClient):
        self.vault = vault
        self.oauth_client = oauth_client

    def access_token(self, channel: Channel) -> str:
        try:
            return self.vault.decrypt(channel.access_token)
        except DecryptionError as e:
            raise TokenRefreshError(f"Stored access token for channel {channel.id} is unreadable") from e

    async def refresh(self, session: AsyncSession, channel: Channel) -> str:
        """Exchange the refresh token and persist the new encrypted pair before returning."""
        try:
            refresh_token = self.vault.decrypt(channel.refresh_token)
        except DecryptionError as e:
            raise TokenRefreshError(f"Stored refresh token for channel {channel.id} is unreadable") from e

        tokens = await self.oauth_client.refresh_access_token(refresh_token)

        channel.access_token = self.vault.encrypt(tokens.access_token)
        channel.refresh_token = self.vault.encrypt(tokens.refresh_token)
        channel.token_expires_at = tokens.expires_at
        await session.commit()

        logger.info(f"Refreshed access token for channel {channel.id}")
        return tokens.access_token

    async def authorize(self, session: AsyncSession, channel: Channel) -> 'AuthorizedCaller':
        """Return a caller holding a valid access token, refreshing it first if expired."""
        if channel.token_expires_at <= datetime.utcnow():
            logger.info(f"Access token for channel {channel.id} expired, refreshing")
            token = await self.refresh(session, channel)
            return AuthorizedCaller(self, session, channel, token, refreshed=True)
        return AuthorizedCaller(self, session, channel, self.access_token(channel))


class AuthorizedCaller:
    """
    Runs platform calls with the channel's access token.

    A call rejected with ``AuthExpired`` triggers a single refresh and
    one retry of that call; a second rejection propagates.
    """

    def __init__(self, token_service: TokenService, session: AsyncSession, channel: Channel,
                 token: str, refreshed: bool = False):
        self.token_service = token_service
        self.session = session
        self.channel = channel
        self.token = token
        self.refreshed = refreshed

    async def __call__(self, call: Callable[[str], Awaitable[T]]) -> T:
        try:
            return await call(self.token)
        except AuthExpired:
            if self.refreshed:
                raise
            logger.info(f"Access token for channel {self.channel.id} rejected, refreshing once")
            self.token = await self.token_service.refresh(self.session, self.channel)
            self.refreshed = True
            return await call(self.token)

"""
OAuth token refresh against the Google token endpoint.
"""
import logging
from datetime import datetime, timedelta

import httpx

from server.monitor.errors import TokenRefreshError, Unavailable
from server.monitor.schemas import OAuthTokens

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600


class OAuthClient:
    """Exchanges refresh tokens for new access tokens."""

    def __init__(self, http_client: httpx.AsyncClient, client_id: str, client_secret: str,
                 token_url: str = "https://oauth2.googleapis.com/token"):
        self.http_client = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """
        Exchange a refresh token for a fresh access token.

        Google usually omits the refresh token from the response, in which
        case the existing one stays valid and is returned unchanged.

        Raises:
            TokenRefreshError: The grant was rejected; the user must reauthorize.
            Unavailable: The token endpoint could not be reached.
        """
        try:
            response = await self.http_client.post(self.token_url, data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            })
        except httpx.RequestError as e:
            raise Unavailable(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 500:
            raise Unavailable(f"Token endpoint returned {response.status_code}", response.status_code)
        if response.status_code != 200:
            raise TokenRefreshError(f"Token refresh rejected with status {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TokenRefreshError("Token endpoint returned an invalid response") from e

        access_token = body.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token endpoint returned no access token")

        expires_in = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        logger.info("Refreshed OAuth access token")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=datetime.utcnow() + timedelta(seconds=int(expires_in)),
        )

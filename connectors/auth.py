"""Client-credentials authentication for Azure AD protected APIs.

Business Central, Dataverse and Microsoft Graph all use the same OAuth2
client-credentials grant; only the scope differs. Each client owns one
``ClientCredentialsAuth`` which caches the bearer token and refreshes it
when it is within 60 seconds of expiry.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import aiohttp

from connectors.errors import TokenError
from core.http import fetch_with_retry

REFRESH_BUFFER_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


@dataclass
class AccessToken:
    """OAuth2 access token with expiration tracking."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = DEFAULT_EXPIRES_IN
    obtained_at: float = field(default_factory=time.time)

    @property
    def expires_at(self) -> float:
        return self.obtained_at + self.expires_in

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if token is expired (with 60-second buffer)."""
        current = time.time() if now is None else now
        return current >= self.expires_at - REFRESH_BUFFER_SECONDS

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class ClientCredentialsAuth:
    """Token provider for the client-credentials grant.

    Usage:
        auth = ClientCredentialsAuth(tenant_id, client_id, secret, scope)
        header = await auth.get_authorization_header(session)
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scope: str,
        authority_url: str = "https://login.microsoftonline.com",
        clock: Callable[[], float] = time.time,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.authority_url = authority_url.rstrip("/")
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority_url}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def cached_token(self) -> Optional[AccessToken]:
        return self._token

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a fresh one."""
        self._token = None

    async def get_token(self, session: aiohttp.ClientSession) -> AccessToken:
        """Return a valid token, fetching a new one when needed.

        Raises:
            TokenError: The token endpoint rejected the request
        """
        if self._token and not self._token.is_expired(self._clock()):
            return self._token
        async with self._refresh_lock:
            if self._token and not self._token.is_expired(self._clock()):
                return self._token
            self._token = await self._fetch_token(session)
            return self._token

    async def get_authorization_header(self, session: aiohttp.ClientSession) -> str:
        token = await self.get_token(session)
        return token.authorization_header

    async def _fetch_token(self, session: aiohttp.ClientSession) -> AccessToken:
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
        }
        response = await fetch_with_retry(
            session,
            "POST",
            self.token_endpoint,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data=data,
        )
        if not response.ok:
            raise TokenError.from_response("POST", self.token_endpoint, response)
        payload = response.json() or {}
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenError("Token response missing access_token", response.status, "POST", self.token_endpoint)
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return AccessToken(
            access_token=access_token,
            token_type=payload.get("token_type", "Bearer"),
            expires_in=expires_in,
            obtained_at=self._clock(),
        )

import asyncio
import logging
from typing import Optional

import httpx
from intuitlib.client import AuthClient
from intuitlib.enums import Scopes
from intuitlib.exceptions import AuthClientError
from intuitlib.utils import get_auth_header

from receiptbridge.core.config import (
    INTUIT_CLIENT_ID,
    INTUIT_CLIENT_SECRET,
    INTUIT_REDIRECT_URI,
    INTUIT_ENVIRONMENT,
    QB_TOKEN_TIMEOUT,
)
from .errors import TokenEndpointError
from .schemas import TokenSet

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_ENDPOINT = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"


class IntuitOAuth:
    """Talks to Intuit's OAuth2 endpoints.

    Holds client credentials only; tokens are passed in and returned on every
    call, never kept on the instance.
    """

    def __init__(
        self,
        client_id: Optional[str] = INTUIT_CLIENT_ID,
        client_secret: Optional[str] = INTUIT_CLIENT_SECRET,
        redirect_uri: str = INTUIT_REDIRECT_URI,
        environment: str = INTUIT_ENVIRONMENT,
        timeout: float = QB_TOKEN_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = environment
        self.timeout = timeout
        self.transport = transport

    def _auth_client(self) -> AuthClient:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("QuickBooks OAuth credentials are not configured")
        return AuthClient(
            client_id=self.client_id,
            client_secret=self.client_secret,
            environment=self.environment,
            redirect_uri=self.redirect_uri,
        )

    def _headers(self) -> dict:
        return {
            "Authorization": get_auth_header(self.client_id, self.client_secret),
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    async def get_authorization_url(self, state: str) -> str:
        auth_client = await asyncio.to_thread(self._auth_client)
        return await asyncio.to_thread(
            auth_client.get_authorization_url, [Scopes.ACCOUNTING], state
        )

    async def exchange_code(self, code: str, realm_id: str) -> TokenSet:
        auth_client = await asyncio.to_thread(self._auth_client)
        try:
            await asyncio.to_thread(auth_client.get_bearer_token, code, realm_id)
        except AuthClientError as e:
            raise TokenEndpointError(e.status_code, e.content) from e

        return TokenSet(
            access_token=auth_client.access_token,
            refresh_token=auth_client.refresh_token,
            expires_in=auth_client.expires_in or 3600,
            x_refresh_token_expires_in=auth_client.x_refresh_token_expires_in,
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(TOKEN_ENDPOINT, data=data, headers=self._headers())

        if resp.status_code >= 400:
            raise TokenEndpointError(resp.status_code, resp.text)

        body = resp.json()
        return TokenSet(
            access_token=body["access_token"],
            refresh_token=body["refresh_token"],
            expires_in=body.get("expires_in") or 3600,
            x_refresh_token_expires_in=body.get("x_refresh_token_expires_in"),
        )

    async def revoke(self, token: str) -> None:
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(REVOKE_ENDPOINT, json={"token": token}, headers=headers)

        if resp.status_code >= 400:
            raise TokenEndpointError(resp.status_code, resp.text)

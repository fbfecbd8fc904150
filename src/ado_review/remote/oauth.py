"""OAuth refresh-token grant against the identity platform token endpoint."""

import logging
from typing import Optional

import httpx

from ..api_clients.network_error_handler import NetworkErrorHandler
from ..config import TokenConfig
from .exceptions import AuthError, ReviewClientError
from .models import Account, TokenGrant

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Exchanges an account's refresh token for a new access token."""

    async def refresh(self, account: Account) -> TokenGrant:
        raise NotImplementedError


class OAuthTokenRefresher(TokenRefresher):
    """Form-encoded ``grant_type=refresh_token`` POST to the token endpoint.

    Rejections (400/401, e.g. ``invalid_grant``) raise ``AuthError``;
    connection failures raise a ``TransportError``. Either way the caller
    treats the account as needing a new sign-in.
    """

    def __init__(
        self,
        config: Optional[TokenConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or TokenConfig()
        self._client = client
        self._owns_client = client is None
        self.error_handler = NetworkErrorHandler()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.refresh_timeout)
            )
        return self._client

    async def refresh(self, account: Account) -> TokenGrant:
        """Run the refresh grant for ``account``.

        Raises:
            AuthError: If the account has no refresh token or it was rejected
            TransportError: If the token endpoint could not be reached
        """
        if not account.refresh_token:
            raise AuthError(f"Account {account.key} has no refresh token")

        form = {
            "client_id": self.config.client_id,
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
            "scope": self.config.scope,
        }

        try:
            response = await self.client.post(
                self.config.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise self.error_handler.classify_network_error(e) from e

        if response.status_code in (400, 401):
            detail = self.error_handler.extract_error_detail(response)
            raise AuthError("Token refresh rejected", detail)

        if response.status_code != 200:
            raise self.error_handler.classify_response(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise ReviewClientError("Malformed token response", str(e))
        if not isinstance(payload, dict):
            raise ReviewClientError("Malformed token response", "expected a JSON object")

        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError("No access token in refresh response")

        logger.debug(f"Refresh grant succeeded for {account.key}")
        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in", 3600)),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

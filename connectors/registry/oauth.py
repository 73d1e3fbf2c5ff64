"""Registry OAuth client.

Handles the connect flow for a merchant:
1. Redirect the user to the registry's /connect page with client_id,
   redirect_url and an opaque state.
2. The registry calls back with an auth token.
3. Exchange the auth token server-side (Basic auth with the client
   credentials) for an access/refresh token pair and business info.

These calls authenticate with client credentials, not a bearer token, so
they don't depend on the credential store.
"""

import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from connectors.registry.http import RegistryHttpClient, basic_auth_header
from connectors.registry.models import TokenSet
from connectors.registry.retry import BackoffPolicy

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


def generate_state() -> str:
    """Random state value for CSRF protection of the callback."""
    return secrets.token_urlsafe(32)


class RegistryOAuthClient:
    """Token endpoints of the registry."""

    def __init__(self, http: RegistryHttpClient):
        self.http = http

    def authorize_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        """URL the user's browser is sent to for login and consent."""
        params = {
            "client_id": client_id,
            "redirect_url": redirect_uri,
            "state": state,
        }
        return f"{self.http.base_url}/connect?{urlencode(params)}"

    async def exchange_code(self, client_id: str, client_secret: str, auth_token: str) -> TokenSet:
        """Exchange the callback auth token for tokens.

        The auth token is single-use, so this call is never retried.
        """
        data = await self.http.request(
            "POST",
            "/api/v1/auth/authorize/connect",
            operation="exchange_code",
            headers={"Authorization": basic_auth_header(client_id, client_secret)},
            json_body={"auth_token": auth_token},
            policy=self.http.policy.with_attempts(1),
        )
        tokens = TokenSet.from_response(data)
        logger.info(
            "Token exchange succeeded for endpoint "
            f"{tokens.business_info.endpoint_id if tokens.business_info else '?'}"
        )
        return tokens

    async def refresh_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        policy: Optional[BackoffPolicy] = None,
    ) -> TokenSet:
        """Use a refresh token to get a new access token."""
        data = await self.http.request(
            "POST",
            "/oauth/token",
            operation="refresh_token",
            form={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            policy=policy,
        )
        return TokenSet.from_response(data)

    async def revoke_merchant(self, client_id: str, client_secret: str, endpoint_id: str) -> Dict[str, Any]:
        """Revoke the connection for an endpoint on the registry side."""
        return await self.http.request(
            "POST",
            "/api/v1/auth/revoke",
            operation="revoke_merchant",
            headers={"Authorization": basic_auth_header(client_id, client_secret)},
            json_body={"endpoint_id": endpoint_id},
        )

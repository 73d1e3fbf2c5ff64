"""OAuth routes for connecting merchants to the registry.

Implements:
- POST /registry/auth/client-credentials - Stash a team's client id/secret
- GET /registry/auth/authorize - Redirect to the registry's connect page
- GET /registry/auth/callback - Exchange the auth token and store the merchant
- POST /registry/auth/merchants/{id}/disconnect - Revoke a connection
- GET /registry/auth/merchants/{id}/status - Connection status

Security:
- Opaque state in an httponly cookie, checked on callback
- Client credentials held only in a TTL cache until the callback
- Encrypted token storage in the credential store
"""

import hmac
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from api.errors import HANDLED_ERRORS, to_http_exception
from connectors.registry.oauth import STATE_TTL_SECONDS, generate_state
from core.models.merchant import Merchant
from core.observability.logging import get_logger, with_correlation
from runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

STATE_COOKIE = "registry_oauth_state"


# =============================================================================
# Request/Response Models
# =============================================================================

class ClientCredentialsRequest(BaseModel):
    """Client credentials a team registered with the registry."""
    team_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)


class ClientCredentialsResponse(BaseModel):
    success: bool
    expires_in: int = STATE_TTL_SECONDS


class MerchantStatusResponse(BaseModel):
    """Registry connection status of a merchant."""
    merchant_id: str
    team_id: Optional[str] = None
    endpoint_id: Optional[str] = None
    company_name: Optional[str] = None
    registration_status: str
    is_active: bool
    connected: bool
    token_expires_at: Optional[str] = None
    last_sync_at: Optional[str] = None

    @classmethod
    def from_merchant(cls, merchant: Merchant) -> "MerchantStatusResponse":
        return cls(
            merchant_id=merchant.id,
            team_id=merchant.team_id,
            endpoint_id=merchant.endpoint_id,
            company_name=merchant.company_name,
            registration_status=merchant.registration_status.value,
            is_active=merchant.is_active,
            connected=merchant.is_connected,
            token_expires_at=merchant.token_expires_at.isoformat() if merchant.token_expires_at else None,
            last_sync_at=merchant.last_sync_at.isoformat() if merchant.last_sync_at else None,
        )


# =============================================================================
# Routes
# =============================================================================

@router.post("/client-credentials", response_model=ClientCredentialsResponse)
async def store_client_credentials(body: ClientCredentialsRequest) -> ClientCredentialsResponse:
    """Hold a team's client credentials until its OAuth callback arrives."""
    get_runtime().pending_clients.set(body.team_id, (body.client_id, body.client_secret))
    return ClientCredentialsResponse(success=True)


@router.get("/authorize")
async def authorize(team_id: str = Query(..., description="Team connecting a merchant")):
    """Redirect the user to the registry's connect page."""
    runtime = get_runtime()
    pending = runtime.pending_clients.get(team_id)
    client_id = pending[0] if pending else runtime.config.client_id
    if not client_id:
        raise HTTPException(
            status_code=400,
            detail="No client credentials for this team. POST /registry/auth/client-credentials first.",
        )

    state = generate_state()
    runtime.oauth_states.set(state, team_id)
    url = runtime.oauth.authorize_url(client_id, runtime.config.redirect_uri, state)

    response = RedirectResponse(url=url, status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_TTL_SECONDS,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/callback", response_model=MerchantStatusResponse)
async def callback(
    request: Request,
    response: Response,
    auth_token: Optional[str] = Query(None, alias="authToken"),
    state: Optional[str] = Query(None),
) -> MerchantStatusResponse:
    """Complete the connect flow."""
    if not auth_token or not state:
        raise HTTPException(status_code=400, detail="Missing authToken or state parameter")

    cookie_state = request.cookies.get(STATE_COOKIE)
    if not cookie_state or not hmac.compare_digest(cookie_state.encode(), state.encode()):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    runtime = get_runtime()
    team_id = runtime.oauth_states.pop(state)
    if team_id is None:
        raise HTTPException(status_code=400, detail="OAuth state expired. Please start again.")

    client_id, client_secret = runtime.pending_clients.pop(team_id) or (None, None)
    with with_correlation(team_id=team_id):
        try:
            merchant = await runtime.credentials.connect_with_auth_code(
                team_id, auth_token, client_id, client_secret
            )
        except HANDLED_ERRORS as e:
            logger.error(f"Registry connect failed: {e}")
            raise to_http_exception(e)

    response.delete_cookie(STATE_COOKIE)
    return MerchantStatusResponse.from_merchant(merchant)


@router.post("/merchants/{merchant_id}/disconnect", response_model=MerchantStatusResponse)
async def disconnect_merchant(
    merchant_id: str,
    notify_registry: bool = Query(True),
    user_id: Optional[str] = Query(None),
) -> MerchantStatusResponse:
    """Revoke a merchant's registry connection and clear its credentials."""
    try:
        merchant = await get_runtime().credentials.revoke(
            merchant_id, notify_registry=notify_registry, actor_id=user_id
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    if merchant is None:
        raise HTTPException(status_code=404, detail=f"Merchant {merchant_id} not found")
    return MerchantStatusResponse.from_merchant(merchant)


@router.get("/merchants/{merchant_id}/status", response_model=MerchantStatusResponse)
async def merchant_status(merchant_id: str) -> MerchantStatusResponse:
    merchant = await get_runtime().merchants.get(merchant_id)
    if merchant is None:
        raise HTTPException(status_code=404, detail=f"Merchant {merchant_id} not found")
    return MerchantStatusResponse.from_merchant(merchant)

"""Merchant credential store.

Owns every merchant secret: the OAuth client id/secret a merchant connected
with and its access/refresh token pair. Secrets are AES-GCM encrypted at
rest; decrypted access tokens live only in a TTL cache.

Token refresh is single-flight per merchant. Concurrent callers that find an
expiring token queue on the merchant's lock, and the first one through does
the refresh while the rest re-read the fresh token. Refresh tokens are
single-use on the registry, so two parallel refreshes would log the
merchant out.
"""

import asyncio
from datetime import timedelta
from typing import Dict, Optional, Tuple

from connectors.registry.errors import RegistryApiError, RegistryTransientError
from connectors.registry.models import TokenSet
from connectors.registry.oauth import RegistryOAuthClient
from core.audit.events import AuditLog
from core.models.common import utcnow
from core.models.events import AuditAction, AuditActor
from core.models.merchant import Merchant, RegistrationStatus
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from core.security.credential_cache import TTLCache
from core.security.encryption import TokenEncryption
from storage.base import MerchantRepository

logger = get_logger(__name__)

ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
CLIENT_ID = "client_id"
CLIENT_SECRET = "client_secret"


class NotConnectedError(Exception):
    """Merchant has no usable connection; the user must re-authorize."""
    def __init__(self, merchant_id: str, reason: str = "not connected"):
        super().__init__(f"Merchant {merchant_id}: {reason}")
        self.merchant_id = merchant_id
        self.reason = reason


class RefreshFailedError(Exception):
    """Token refresh failed transiently; the connection is still valid."""
    def __init__(self, merchant_id: str, reason: str):
        super().__init__(f"Token refresh failed for merchant {merchant_id}: {reason}")
        self.merchant_id = merchant_id


class CredentialStore:
    """Encrypted merchant credentials with single-flight token refresh."""

    def __init__(
        self,
        merchants: MerchantRepository,
        encryption: TokenEncryption,
        oauth: RegistryOAuthClient,
        audit: AuditLog,
        refresh_margin_seconds: int = 60,
        token_cache: Optional[TTLCache] = None,
        default_client_id: Optional[str] = None,
        default_client_secret: Optional[str] = None,
    ):
        self.merchants = merchants
        self.encryption = encryption
        self.oauth = oauth
        self.audit = audit
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._token_cache: TTLCache = token_cache or TTLCache(default_ttl_seconds=3600)
        self._default_client = (default_client_id, default_client_secret)
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Tokens
    # =========================================================================

    async def get_valid_token(
        self,
        merchant_id: str,
        force_refresh: bool = False,
        stale_token: Optional[str] = None,
    ) -> str:
        """Return an access token valid for at least the refresh margin.

        Args:
            force_refresh: refresh even if the token looks valid (after a 401)
            stale_token: the token the registry rejected; if the stored token
                already differs, another caller refreshed and it is returned

        Raises:
            NotConnectedError: merchant missing, disconnected or suspended
            RefreshFailedError: transient failure talking to the token endpoint
        """
        if not force_refresh:
            cached = self._token_cache.get(merchant_id)
            if cached is not None:
                return cached

            merchant = await self._load_connected(merchant_id)
            if not self._needs_refresh(merchant):
                token = self._unseal(merchant, ACCESS_TOKEN)
                self._cache_token(merchant, token)
                return token

        async with self._refresh_lock(merchant_id):
            merchant = await self._load_connected(merchant_id)
            current = self._unseal(merchant, ACCESS_TOKEN)

            if not self._needs_refresh(merchant):
                if not force_refresh or (stale_token is not None and current != stale_token):
                    self._cache_token(merchant, current)
                    return current

            return await self._refresh(merchant)

    async def store_credentials(self, merchant_id: str, tokens: TokenSet) -> Merchant:
        """Encrypt and persist a token pair, activating the merchant."""
        merchant = await self.merchants.get(merchant_id)
        if merchant is None:
            raise NotConnectedError(merchant_id, "unknown merchant")
        return await self._save_tokens(merchant, tokens)

    async def revoke(
        self,
        merchant_id: str,
        notify_registry: bool = True,
        actor: AuditActor = AuditActor.USER,
        actor_id: Optional[str] = None,
    ) -> Optional[Merchant]:
        """Disconnect a merchant: revoke upstream (best effort), clear every
        secret, deactivate."""
        merchant = await self.merchants.get(merchant_id)
        if merchant is None:
            return None

        with with_correlation(merchant_id=merchant_id, team_id=merchant.team_id):
            if notify_registry and merchant.endpoint_id:
                client_id, client_secret = self._client_credentials(merchant)
                if client_id and client_secret:
                    try:
                        await self.oauth.revoke_merchant(client_id, client_secret, merchant.endpoint_id)
                    except RegistryApiError as e:
                        logger.warning(f"Registry revoke failed, clearing local credentials anyway: {e}")

            self._token_cache.evict(merchant_id)
            cleared = merchant.model_copy(update={
                "encrypted_client_id": None,
                "encrypted_client_secret": None,
                "encrypted_access_token": None,
                "encrypted_refresh_token": None,
                "token_expires_at": None,
                "is_active": False,
                "registration_status": RegistrationStatus.DISCONNECTED,
                "updated_at": utcnow(),
            })
            saved = await self.merchants.save(cleared)
            self._refresh_locks.pop(merchant_id, None)

            action = (
                AuditAction.MERCHANT_REVOKED_BY_REGISTRY
                if actor == AuditActor.WEBHOOK
                else AuditAction.MERCHANT_DISCONNECTED
            )
            self.audit.record(
                action,
                actor,
                "merchant",
                merchant_id,
                "Merchant disconnected and credentials cleared",
                team_id=merchant.team_id,
                actor_id=actor_id,
                details={"endpoint_id": merchant.endpoint_id, "notified_registry": notify_registry},
            )
            logger.info("Merchant disconnected")
            return saved

    async def connect_with_auth_code(
        self,
        team_id: Optional[str],
        auth_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Merchant:
        """Exchange an auth token from the OAuth callback and persist the merchant.

        Reconnecting an endpoint that is already known updates that merchant.
        """
        client_id = client_id or self._default_client[0]
        client_secret = client_secret or self._default_client[1]
        if not client_id or not client_secret:
            raise NotConnectedError("-", "no client credentials configured for connect")

        tokens = await self.oauth.exchange_code(client_id, client_secret, auth_token)
        business = tokens.business_info
        if business is None:
            raise RegistryApiError("Token response is missing business_info")

        merchant = await self.merchants.get_by_endpoint_id(business.endpoint_id)
        if merchant is None:
            merchant = Merchant(team_id=team_id, endpoint_id=business.endpoint_id)

        merchant = merchant.model_copy(update={
            "team_id": team_id or merchant.team_id,
            "registry_merchant_id": business.moc_id or merchant.registry_merchant_id,
            "company_name": business.company_name_en or business.company_name_kh or merchant.company_name,
            "tin": business.tin or merchant.tin,
            "encrypted_client_id": self.encryption.seal(client_id, merchant.id, CLIENT_ID),
            "encrypted_client_secret": self.encryption.seal(client_secret, merchant.id, CLIENT_SECRET),
        })
        saved = await self._save_tokens(merchant, tokens)

        self.audit.record(
            AuditAction.MERCHANT_CONNECTED,
            AuditActor.USER if actor_id else AuditActor.SYSTEM,
            "merchant",
            saved.id,
            f"Merchant connected to registry endpoint {business.endpoint_id}",
            team_id=saved.team_id,
            actor_id=actor_id,
            details={"endpoint_id": business.endpoint_id, "company_name": saved.company_name},
        )
        logger.info(f"Merchant {saved.id} connected (endpoint {business.endpoint_id})")
        return saved

    def evict(self, merchant_id: str) -> None:
        """Drop any cached plaintext token for the merchant."""
        self._token_cache.evict(merchant_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _refresh_lock(self, merchant_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(merchant_id)
        if lock is None:
            lock = self._refresh_locks[merchant_id] = asyncio.Lock()
        return lock

    async def _load_connected(self, merchant_id: str) -> Merchant:
        merchant = await self.merchants.get(merchant_id)
        if merchant is None:
            raise NotConnectedError(merchant_id, "unknown merchant")
        if merchant.registration_status == RegistrationStatus.SUSPENDED:
            raise NotConnectedError(merchant_id, "suspended, re-authorization required")
        if not merchant.is_connected:
            raise NotConnectedError(merchant_id, merchant.registration_status.value)
        return merchant

    def _needs_refresh(self, merchant: Merchant) -> bool:
        if merchant.token_expires_at is None:
            return True
        return utcnow() >= merchant.token_expires_at - self.refresh_margin

    def _unseal(self, merchant: Merchant, field: str) -> Optional[str]:
        envelope = getattr(merchant, f"encrypted_{field}")
        if envelope is None:
            return None
        return self.encryption.unseal(envelope, merchant.id, field)

    def _client_credentials(self, merchant: Merchant) -> Tuple[Optional[str], Optional[str]]:
        client_id = self._unseal(merchant, CLIENT_ID) or self._default_client[0]
        client_secret = self._unseal(merchant, CLIENT_SECRET) or self._default_client[1]
        return client_id, client_secret

    def _cache_token(self, merchant: Merchant, token: str) -> None:
        if merchant.token_expires_at is None:
            return
        ttl = (merchant.token_expires_at - self.refresh_margin - utcnow()).total_seconds()
        self._token_cache.set(merchant.id, token, ttl_seconds=ttl)

    async def _refresh(self, merchant: Merchant) -> str:
        with with_correlation(merchant_id=merchant.id, team_id=merchant.team_id):
            refresh_token = self._unseal(merchant, REFRESH_TOKEN)
            client_id, client_secret = self._client_credentials(merchant)
            if not refresh_token or not client_id or not client_secret:
                await self._suspend(merchant, "no refresh token or client credentials")
                raise NotConnectedError(merchant.id, "cannot refresh, re-authorization required")

            logger.info("Refreshing access token")
            try:
                tokens = await self.oauth.refresh_token(client_id, client_secret, refresh_token)
            except RegistryTransientError as e:
                get_metrics().record_token_refresh(False)
                logger.warning(f"Token refresh failed transiently: {e}")
                raise RefreshFailedError(merchant.id, str(e)) from e
            except RegistryApiError as e:
                get_metrics().record_token_refresh(False)
                await self._suspend(merchant, str(e))
                raise NotConnectedError(merchant.id, "refresh rejected, re-authorization required") from e

            if tokens.refresh_token is None:
                tokens.refresh_token = refresh_token
            await self._save_tokens(merchant, tokens)
            get_metrics().record_token_refresh(True)
            return tokens.access_token

    async def _save_tokens(self, merchant: Merchant, tokens: TokenSet) -> Merchant:
        updated = merchant.model_copy(update={
            "encrypted_access_token": self.encryption.seal(tokens.access_token, merchant.id, ACCESS_TOKEN),
            "encrypted_refresh_token": (
                self.encryption.seal(tokens.refresh_token, merchant.id, REFRESH_TOKEN)
                if tokens.refresh_token else None
            ),
            "token_expires_at": tokens.expires_at,
            "is_active": True,
            "registration_status": RegistrationStatus.ACTIVE,
            "updated_at": utcnow(),
        })
        saved = await self.merchants.save(updated)
        self._token_cache.evict(merchant.id)
        self._cache_token(saved, tokens.access_token)
        return saved

    async def _suspend(self, merchant: Merchant, reason: str) -> None:
        self._token_cache.evict(merchant.id)
        suspended = merchant.model_copy(update={
            "is_active": False,
            "registration_status": RegistrationStatus.SUSPENDED,
            "updated_at": utcnow(),
        })
        await self.merchants.save(suspended)
        self.audit.record(
            AuditAction.MERCHANT_SUSPENDED,
            AuditActor.SYSTEM,
            "merchant",
            merchant.id,
            "Token refresh failed; merchant suspended until re-authorization",
            team_id=merchant.team_id,
            details={"reason": reason},
        )
        logger.error(f"Merchant suspended: {reason}")

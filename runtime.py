"""Service wiring.

Builds every component once from a RegistryConfig and hands the same
instances to the API routes and the Temporal activities.

Usage:
    from runtime import get_runtime

    runtime = get_runtime()
    result = await runtime.polling.run(PollingRequest(team_id="t-1"))
"""

from dataclasses import dataclass
from typing import Any, Optional

from connectors.registry.client import RegistryApiClient
from connectors.registry.http import RegistryHttpClient
from connectors.registry.oauth import STATE_TTL_SECONDS, RegistryOAuthClient
from connectors.registry.retry import BackoffPolicy
from core.audit.events import AuditLog, InMemoryAuditBackend, SQLiteAuditBackend
from core.config import RegistryConfig
from core.observability.logging import get_logger
from core.security.credential_cache import TTLCache
from core.security.credential_store import CredentialStore
from core.security.encryption import TokenEncryption, generate_encryption_key
from polling.sweep import StatusPollingSweep
from reconciliation.engine import ReconciliationEngine
from storage.base import InvoiceRepository, MerchantRepository, WebhookEventRepository
from storage.memory import (
    InMemoryInvoiceRepository,
    InMemoryMerchantRepository,
    InMemoryWebhookEventRepository,
)
from storage.sqlite import (
    SQLiteInvoiceRepository,
    SQLiteMerchantRepository,
    SQLiteWebhookEventRepository,
    init_db,
)
from submission.incoming import IncomingInvoiceService
from submission.service import DocumentSubmissionService
from webhooks.ingestion import WebhookIngestion

logger = get_logger(__name__)


@dataclass
class RegistryRuntime:
    """All long-lived service components."""
    config: RegistryConfig
    audit: AuditLog
    invoices: InvoiceRepository
    merchants: MerchantRepository
    events: WebhookEventRepository
    http: RegistryHttpClient
    oauth: RegistryOAuthClient
    credentials: CredentialStore
    client: RegistryApiClient
    engine: ReconciliationEngine
    webhooks: WebhookIngestion
    polling: StatusPollingSweep
    submission: DocumentSubmissionService
    incoming: IncomingInvoiceService
    # team_id -> (client_id, client_secret) between /client-credentials and /callback
    pending_clients: TTLCache
    # OAuth state -> team_id between /authorize and /callback
    oauth_states: TTLCache

    async def close(self) -> None:
        await self.http.close()


def build_runtime(
    config: Optional[RegistryConfig] = None,
    in_memory: bool = False,
    session: Optional[Any] = None,
    policy: Optional[BackoffPolicy] = None,
) -> RegistryRuntime:
    """Wire the service.

    Args:
        config: defaults to RegistryConfig.from_env()
        in_memory: use in-memory repositories instead of sqlite
        session: aiohttp-compatible session to inject (tests)
        policy: backoff policy for registry calls
    """
    config = config or RegistryConfig.from_env()

    key = config.token_encryption_key
    if not key:
        logger.warning(
            "TOKEN_ENCRYPTION_KEY is not set; using an ephemeral key. "
            "Stored credentials will be unreadable after restart."
        )
        key = generate_encryption_key()
    encryption = TokenEncryption(key)

    if in_memory:
        audit_backend = InMemoryAuditBackend()
        invoices = InMemoryInvoiceRepository(audit_backend)
        merchants = InMemoryMerchantRepository()
        events = InMemoryWebhookEventRepository()
    else:
        init_db(config.db_path)
        audit_backend = SQLiteAuditBackend(config.db_path)
        invoices = SQLiteInvoiceRepository(config.db_path)
        merchants = SQLiteMerchantRepository(config.db_path)
        events = SQLiteWebhookEventRepository(config.db_path)
    audit = AuditLog(audit_backend)

    http = RegistryHttpClient(config, policy=policy, session=session)
    oauth = RegistryOAuthClient(http)
    credentials = CredentialStore(
        merchants,
        encryption,
        oauth,
        audit,
        refresh_margin_seconds=config.token_refresh_margin_seconds,
        default_client_id=config.client_id,
        default_client_secret=config.client_secret,
    )
    client = RegistryApiClient(http, credentials)
    engine = ReconciliationEngine(invoices)

    return RegistryRuntime(
        config=config,
        audit=audit,
        invoices=invoices,
        merchants=merchants,
        events=events,
        http=http,
        oauth=oauth,
        credentials=credentials,
        client=client,
        engine=engine,
        webhooks=WebhookIngestion(
            events,
            invoices,
            merchants,
            engine,
            credentials,
            audit,
            secret=config.webhook_secret,
            allow_unsigned=config.allow_unsigned_webhooks,
        ),
        polling=StatusPollingSweep(invoices, merchants, client, engine, audit, policy=http.policy),
        submission=DocumentSubmissionService(invoices, client, engine, audit),
        incoming=IncomingInvoiceService(invoices, client, engine, audit),
        pending_clients=TTLCache(default_ttl_seconds=STATE_TTL_SECONDS),
        oauth_states=TTLCache(default_ttl_seconds=STATE_TTL_SECONDS),
    )


_runtime: Optional[RegistryRuntime] = None


def get_runtime() -> RegistryRuntime:
    """Get or create the process-wide runtime (lazy init)."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[RegistryRuntime]) -> None:
    """Replace the process-wide runtime (tests, worker startup)."""
    global _runtime
    _runtime = runtime

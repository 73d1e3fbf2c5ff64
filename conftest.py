"""Shared pytest fixtures.

The registry is replaced by ``FakeSession``, an aiohttp-compatible stand-in:
``session.request(...)`` returns an async context manager yielding a
response with ``status``, ``headers``, ``text()`` and ``read()``. Routes are
keyed by (method, path); each queued outcome is used once, and the last one
repeats.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from connectors.registry.models import TokenSet
from connectors.registry.retry import BackoffPolicy
from core.config import RegistryConfig
from core.models.common import utcnow
from core.models.invoice import Invoice, InvoiceStatus
from core.models.merchant import Merchant
from core.security.encryption import generate_encryption_key
from runtime import build_runtime, set_runtime

BASE_URL = "https://registry.test"
WEBHOOK_SECRET = "whsec-test"


# =============================================================================
# Fake registry transport
# =============================================================================

class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        json_body: Any = None,
        body: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status = status
        self.headers = headers or {}
        if body is None:
            body = json.dumps(json_body).encode("utf-8") if json_body is not None else b""
        self._body = body

    async def text(self) -> str:
        return self._body.decode("utf-8")

    async def read(self) -> bytes:
        return self._body


class _RequestContext:
    def __init__(self, outcome: Any):
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        await asyncio.sleep(0)
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


@dataclass
class FakeCall:
    method: str
    path: str
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @property
    def headers(self) -> Dict[str, str]:
        return self.kwargs.get("headers") or {}

    @property
    def json(self) -> Any:
        return self.kwargs.get("json")

    @property
    def data(self) -> Any:
        return self.kwargs.get("data")

    @property
    def params(self) -> Any:
        return self.kwargs.get("params")


class FakeSession:
    """Scripted registry."""

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[FakeCall] = []

    def add(self, method: str, path: str, *outcomes: Any) -> "FakeSession":
        """Queue outcomes: FakeResponse, an exception instance, or a callable(FakeCall)."""
        self.routes.setdefault((method.upper(), path), []).extend(outcomes)
        return self

    def request(self, method: str, url: str, **kwargs) -> _RequestContext:
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        call = FakeCall(method.upper(), path, kwargs)
        self.calls.append(call)

        queue = self.routes.get((call.method, path))
        if not queue:
            outcome: Any = FakeResponse(404, {"error": f"no route for {call.method} {path}"})
        elif len(queue) > 1:
            outcome = queue.pop(0)
        else:
            outcome = queue[0]
        if callable(outcome) and not isinstance(outcome, (FakeResponse, BaseException)):
            outcome = outcome(call)
        return _RequestContext(outcome)

    def calls_to(self, method: str, path: str) -> List[FakeCall]:
        return [c for c in self.calls if c.method == method.upper() and c.path == path]

    async def close(self) -> None:
        pass


def token_response(
    access_token: str = "access-2",
    refresh_token: Optional[str] = "refresh-2",
    expires_in: Any = 3600,
    business_info: Optional[Dict[str, Any]] = None,
) -> FakeResponse:
    body: Dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if business_info is not None:
        body["business_info"] = business_info
    return FakeResponse(200, body)


def document_response(document_id: str, status: str, updated_at: Optional[datetime] = None) -> FakeResponse:
    body: Dict[str, Any] = {"document_id": document_id, "status": status}
    if updated_at is not None:
        body["updated_at"] = updated_at.isoformat().replace("+00:00", "Z")
    return FakeResponse(200, body)


async def _no_sleep(_delay: float) -> None:
    return None


def instant_policy(max_attempts: int = 3) -> BackoffPolicy:
    return BackoffPolicy(max_attempts=max_attempts, base_delay=0.0, jitter=0.0, sleep=_no_sleep)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def config(tmp_path) -> RegistryConfig:
    return RegistryConfig(
        api_base_url=BASE_URL,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://testserver/registry/auth/callback",
        webhook_secret=WEBHOOK_SECRET,
        token_encryption_key=generate_encryption_key(),
        db_path=tmp_path / "registry_test.db",
    )


@pytest.fixture
def runtime(config, session):
    rt = build_runtime(config, in_memory=True, session=session, policy=instant_policy())
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture
def seed_merchant(runtime) -> Callable[..., Merchant]:
    """Create a connected merchant synchronously."""
    def _seed(
        team_id: str = "team-1",
        endpoint_id: str = "EP-1",
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: int = 3600,
    ) -> Merchant:
        async def _create() -> Merchant:
            merchant = await runtime.merchants.save(
                Merchant(team_id=team_id, endpoint_id=endpoint_id, company_name="Acme Trading")
            )
            return await runtime.credentials.store_credentials(
                merchant.id,
                TokenSet(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in),
            )
        return asyncio.run(_create())
    return _seed


@pytest.fixture
def seed_invoice(runtime) -> Callable[..., Invoice]:
    """Insert an invoice in a given state synchronously."""
    def _seed(
        merchant: Optional[Merchant] = None,
        status: InvoiceStatus = InvoiceStatus.SUBMITTED,
        document_id: Optional[str] = "DOC-1",
        status_updated_at: Optional[datetime] = None,
        **fields,
    ) -> Invoice:
        if status_updated_at is None and status != InvoiceStatus.DRAFT:
            status_updated_at = utcnow() - timedelta(hours=2)
        invoice = Invoice(
            team_id=merchant.team_id if merchant else "team-1",
            merchant_id=merchant.id if merchant else None,
            document_id=document_id,
            status=status,
            status_updated_at=status_updated_at,
            **fields,
        )
        return asyncio.run(runtime.invoices.create(invoice))
    return _seed

"""Registry document API client.

Document calls authenticate with a merchant bearer token obtained from the
credential store. On 401/403 the token is force-refreshed once and the call
is repeated once; a second auth failure propagates.
"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from connectors.registry.errors import RegistryAuthenticationError
from connectors.registry.http import RegistryHttpClient
from connectors.registry.models import (
    DocumentDetail,
    DocumentUpdates,
    SubmissionResponse,
)
from connectors.registry.retry import BackoffPolicy
from core.models.common import ensure_utc

logger = logging.getLogger(__name__)


class RegistryApiClient:
    """Bearer-authenticated registry calls for one service provider.

    ``token_provider`` is anything with
    ``async get_valid_token(merchant_id, force_refresh=False, stale_token=None) -> str``,
    normally the CredentialStore.
    """

    def __init__(self, http: RegistryHttpClient, token_provider: Any):
        self.http = http
        self.tokens = token_provider

    async def _authorized(
        self,
        merchant_id: str,
        method: str,
        path: str,
        operation: str,
        **kwargs,
    ) -> Any:
        token = await self.tokens.get_valid_token(merchant_id)
        try:
            return await self.http.request(
                method, path, operation=operation,
                headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except RegistryAuthenticationError:
            logger.warning(f"{operation}: registry rejected token for merchant {merchant_id}, refreshing once")
            token = await self.tokens.get_valid_token(merchant_id, force_refresh=True, stale_token=token)
            return await self.http.request(
                method, path, operation=operation,
                headers={"Authorization": f"Bearer {token}"}, **kwargs
            )

    # =========================================================================
    # Documents
    # =========================================================================

    async def submit_document(
        self,
        merchant_id: str,
        document: Union[str, bytes],
        document_type: str = "INVOICE",
    ) -> SubmissionResponse:
        """Submit a UBL document for validation.

        Args:
            document: UBL XML, as text or bytes; base64-encoded here
            document_type: INVOICE, CREDIT_NOTE or DEBIT_NOTE
        """
        raw = document.encode("utf-8") if isinstance(document, str) else document
        data = await self._authorized(
            merchant_id,
            "POST",
            "/api/v1/document",
            "submit_document",
            json_body={
                "documents": [{
                    "document_type": document_type,
                    "document": base64.b64encode(raw).decode("ascii"),
                }]
            },
        )
        return SubmissionResponse.from_response(data, "submit_document")

    async def send_document(self, merchant_id: str, document_ids: List[str]) -> Dict[str, Any]:
        """Deliver validated documents to their buyers."""
        return await self._authorized(
            merchant_id,
            "POST",
            "/api/v1/document/send",
            "send_document",
            json_body={"documents": list(document_ids)},
        )

    async def fetch_document(
        self,
        merchant_id: str,
        document_id: str,
        policy: Optional[BackoffPolicy] = None,
    ) -> DocumentDetail:
        """Current state of one document."""
        data = await self._authorized(
            merchant_id,
            "GET",
            f"/api/v1/document/{document_id}",
            "fetch_document",
            policy=policy,
        )
        return DocumentDetail.from_response(data, "fetch_document")

    async def list_document_updates(
        self,
        merchant_id: str,
        since: Optional[datetime] = None,
    ) -> DocumentUpdates:
        """Documents updated since the cursor (official polling feed)."""
        params = None
        if since is not None:
            params = {"last_synced_at": ensure_utc(since).isoformat().replace("+00:00", "Z")}
        data = await self._authorized(
            merchant_id,
            "GET",
            "/api/v1/document/poll",
            "list_document_updates",
            params=params,
        )
        return DocumentUpdates.from_response(data, "list_document_updates")

    async def fetch_document_pdf(self, merchant_id: str, document_id: str) -> bytes:
        return await self._authorized(
            merchant_id,
            "GET",
            f"/api/v1/document/{document_id}/pdf",
            "fetch_document_pdf",
            expect="bytes",
        )

    # =========================================================================
    # Buyer responses
    # =========================================================================

    async def accept_document(self, merchant_id: str, document_id: str) -> Dict[str, Any]:
        """Accept a received document as its buyer."""
        return await self._authorized(
            merchant_id,
            "POST",
            f"/api/v1/invoices/{document_id}/accept",
            "accept_document",
        )

    async def reject_document(self, merchant_id: str, document_id: str, reason: str) -> Dict[str, Any]:
        return await self._authorized(
            merchant_id,
            "POST",
            f"/api/v1/invoices/{document_id}/reject",
            "reject_document",
            json_body={"reason": reason},
        )

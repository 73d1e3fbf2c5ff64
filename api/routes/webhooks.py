"""Registry webhook endpoint.

- POST /webhooks/registry - Receive a signed registry notification
- GET /webhooks/registry - Endpoint verification challenge
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.observability.logging import get_logger
from runtime import get_runtime
from storage.base import StorageError
from webhooks.ingestion import (
    WebhookAuthenticationError,
    WebhookOutcome,
    WebhookPayloadError,
)

logger = get_logger(__name__)

router = APIRouter()


@router.post("/registry")
async def receive_registry_webhook(
    request: Request,
    x_registry_signature: Optional[str] = Header(None),
):
    """Receive a registry webhook.

    Returns 200 for accepted and duplicate deliveries, 401 for a bad
    signature, 400 for a malformed body and 500 when processing failed
    transiently (the registry redelivers).
    """
    raw_body = await request.body()
    try:
        result = await get_runtime().webhooks.handle(raw_body, x_registry_signature)
    except WebhookAuthenticationError as e:
        logger.warning(f"Webhook rejected: {e}")
        raise HTTPException(status_code=401, detail=str(e))
    except WebhookPayloadError as e:
        logger.warning(f"Malformed webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Webhook storage failure: {e}")
        raise HTTPException(status_code=500, detail="Webhook could not be recorded")

    if result.outcome == WebhookOutcome.ERROR:
        return JSONResponse(status_code=500, content=result.to_dict())
    return result.to_dict()


@router.get("/registry")
async def verify_registry_webhook(challenge: Optional[str] = Query(None)) -> Dict[str, Any]:
    """Echo the registry's verification challenge."""
    if challenge:
        return {"challenge": challenge}
    return {"message": "Registry webhook endpoint", "status": "active"}

"""Status polling trigger.

- POST /registry/status-polling - Run one polling sweep
- GET /registry/status-polling/config - Default sweep settings
"""

from typing import Any, Dict

from fastapi import APIRouter

from api.errors import HANDLED_ERRORS, to_http_exception
from core.models.common import utcnow
from core.observability.logging import get_logger
from polling.sweep import PollingRequest
from runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


@router.post("")
async def trigger_status_polling(body: PollingRequest) -> Dict[str, Any]:
    """Run a legacy or official polling sweep and report the counts."""
    try:
        result = await get_runtime().polling.run(body)
    except HANDLED_ERRORS as e:
        logger.error(f"Status polling failed: {e}")
        raise to_http_exception(e)
    return {**result.to_dict(), "timestamp": utcnow().isoformat()}


@router.get("/config")
async def get_polling_config() -> Dict[str, Any]:
    return PollingRequest().model_dump(mode="json")

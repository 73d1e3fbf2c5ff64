"""Invoice endpoints.

Drafts, submission, delivery, cancellation, buyer responses and on-demand
refresh of registry invoices. Status changes are reported with the engine's
outcome.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Response
from pydantic import BaseModel, Field

from api.errors import HANDLED_ERRORS, to_http_exception
from core.models.invoice import Invoice
from reconciliation.engine import TransitionResult
from runtime import get_runtime
from submission.service import InvoiceNotFoundError

router = APIRouter()


class CreateInvoiceRequest(BaseModel):
    """Request to create a draft invoice."""
    team_id: Optional[str] = None
    merchant_id: str = Field(..., min_length=1)
    invoice_number: Optional[str] = None
    invoice_uuid: Optional[str] = None
    user_id: Optional[str] = None


class SubmitInvoiceRequest(BaseModel):
    """UBL document to submit."""
    document: str = Field(..., min_length=1, description="UBL XML")
    document_type: str = Field("INVOICE", description="INVOICE, CREDIT_NOTE or DEBIT_NOTE")
    user_id: Optional[str] = None


class SendInvoiceRequest(BaseModel):
    user_id: Optional[str] = None


class CancelInvoiceRequest(BaseModel):
    user_id: Optional[str] = None
    reason: Optional[str] = None


class AcceptInvoiceRequest(BaseModel):
    user_id: Optional[str] = None


class RejectInvoiceRequest(BaseModel):
    """Buyer rejection; the reason is forwarded to the supplier."""
    reason: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class TransitionResponse(BaseModel):
    """Outcome of a status-changing action."""
    outcome: str
    reason: Optional[str] = None
    previous_status: Optional[str] = None
    invoice: Optional[Dict[str, Any]] = None


def _invoice_dict(invoice: Invoice) -> Dict[str, Any]:
    return invoice.model_dump(mode="json")


def _transition_response(result: TransitionResult) -> TransitionResponse:
    if result.is_error:
        raise HTTPException(status_code=500, detail=result.reason or "Status update failed")
    return TransitionResponse(
        outcome=result.outcome.value,
        reason=result.reason,
        previous_status=result.previous_status.value if result.previous_status else None,
        invoice=_invoice_dict(result.invoice) if result.invoice else None,
    )


@router.post("", status_code=201)
async def create_invoice(body: CreateInvoiceRequest) -> Dict[str, Any]:
    """Create a draft invoice."""
    try:
        invoice = await get_runtime().submission.create_draft(
            body.team_id,
            body.merchant_id,
            invoice_number=body.invoice_number,
            invoice_uuid=body.invoice_uuid,
            user_id=body.user_id,
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _invoice_dict(invoice)


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str) -> Dict[str, Any]:
    try:
        invoice = await get_runtime().submission.get_invoice(invoice_id)
    except InvoiceNotFoundError as e:
        raise to_http_exception(e)
    return _invoice_dict(invoice)


@router.post("/{invoice_id}/submit", response_model=TransitionResponse)
async def submit_invoice(invoice_id: str, body: SubmitInvoiceRequest) -> TransitionResponse:
    """Submit the draft's document for registry validation."""
    try:
        result = await get_runtime().submission.submit_invoice(
            invoice_id, body.document, body.document_type, user_id=body.user_id
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.post("/{invoice_id}/send", response_model=TransitionResponse)
async def send_invoice(invoice_id: str, body: Optional[SendInvoiceRequest] = None) -> TransitionResponse:
    """Deliver the document to the buyer."""
    user_id = body.user_id if body else None
    try:
        result = await get_runtime().submission.send_invoice(invoice_id, user_id=user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.post("/{invoice_id}/refresh", response_model=TransitionResponse)
async def refresh_invoice(invoice_id: str) -> TransitionResponse:
    """Fetch the document's current registry status now."""
    try:
        result = await get_runtime().polling.refresh_invoice(invoice_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.post("/{invoice_id}/cancel", response_model=TransitionResponse)
async def cancel_invoice(invoice_id: str, body: Optional[CancelInvoiceRequest] = None) -> TransitionResponse:
    body = body or CancelInvoiceRequest()
    try:
        result = await get_runtime().submission.cancel_invoice(
            invoice_id, user_id=body.user_id, reason=body.reason
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.post("/{invoice_id}/accept", response_model=TransitionResponse)
async def accept_invoice(invoice_id: str, body: Optional[AcceptInvoiceRequest] = None) -> TransitionResponse:
    """Accept a received invoice as its buyer."""
    user_id = body.user_id if body else None
    try:
        result = await get_runtime().incoming.accept_invoice(invoice_id, user_id=user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.post("/{invoice_id}/reject", response_model=TransitionResponse)
async def reject_invoice(invoice_id: str, body: RejectInvoiceRequest) -> TransitionResponse:
    try:
        result = await get_runtime().incoming.reject_invoice(
            invoice_id, body.reason, user_id=body.user_id
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return _transition_response(result)


@router.get("/{invoice_id}/pdf")
async def download_pdf(invoice_id: str) -> Response:
    try:
        content = await get_runtime().submission.fetch_pdf(invoice_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice_id}.pdf"'},
    )


@router.get("/{invoice_id}/audit")
async def get_audit_trail(
    invoice_id: str,
    limit: int = Query(100, ge=1, le=1000),
) -> List[Dict[str, Any]]:
    """The latest audit entries for the invoice, oldest first."""
    runtime = get_runtime()
    if await runtime.invoices.get(invoice_id) is None:
        raise HTTPException(status_code=404, detail=f"Invoice {invoice_id} not found")
    entries = runtime.audit.query(entity_id=invoice_id, entity_type="invoice", limit=limit)
    return [entry.model_dump(mode="json") for entry in entries]

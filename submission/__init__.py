"""Outgoing document submission and buyer responses to incoming documents."""

from submission.incoming import IncomingInvoiceService
from submission.service import (
    DocumentSubmissionService,
    InvalidInvoiceStateError,
    InvoiceNotFoundError,
)

__all__ = [
    "DocumentSubmissionService",
    "IncomingInvoiceService",
    "InvalidInvoiceStateError",
    "InvoiceNotFoundError",
]

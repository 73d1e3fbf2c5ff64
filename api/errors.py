"""Translation of service exceptions into HTTP errors."""

from fastapi import HTTPException

from connectors.registry.errors import (
    RegistryApiError,
    RegistryAuthenticationError,
    RegistryNotFoundError,
    RegistryTransientError,
    RegistryValidationError,
)
from core.security.credential_store import NotConnectedError, RefreshFailedError
from storage.base import StorageError
from submission.service import InvalidInvoiceStateError, InvoiceNotFoundError

# Most specific first.
_STATUS_CODES = (
    (InvoiceNotFoundError, 404),
    (InvalidInvoiceStateError, 409),
    (NotConnectedError, 409),
    (RefreshFailedError, 503),
    (RegistryTransientError, 503),
    (RegistryValidationError, 422),
    (RegistryNotFoundError, 404),
    (RegistryAuthenticationError, 502),
    (RegistryApiError, 502),
    (StorageError, 500),
    (ValueError, 400),
)


def to_http_exception(error: Exception) -> HTTPException:
    """Map a service exception to an HTTPException, defaulting to 500."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


HANDLED_ERRORS = tuple(error_type for error_type, _ in _STATUS_CODES)

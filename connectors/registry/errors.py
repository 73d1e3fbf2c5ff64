"""Registry API exceptions.

The class of an error decides how it is handled: transient errors are
retried by the backoff policy, everything else surfaces immediately.
"""

from typing import Optional


class RegistryApiError(Exception):
    """Base exception for registry API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RegistryTransientError(RegistryApiError):
    """Network failure, timeout or 5xx. Safe to retry."""
    pass


class RegistryRateLimitError(RegistryTransientError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str, retry_after: Optional[float] = None, response_body: str = ""):
        super().__init__(message, 429, response_body)
        self.retry_after = retry_after


class RegistryAuthenticationError(RegistryApiError):
    """Authentication failed (401/403)."""
    pass


class RegistryNotFoundError(RegistryApiError):
    """Document or resource not found (404)."""
    pass


class RegistryValidationError(RegistryApiError):
    """Request rejected by the registry (400/422 and other 4xx)."""
    pass


class RegistryResponseError(RegistryApiError):
    """Successful status but a body that does not match the expected shape."""
    pass


def is_transient(error: BaseException) -> bool:
    """Default retry predicate."""
    return isinstance(error, RegistryTransientError)


def error_for_status(status: int, body: str, url: str, retry_after: Optional[float] = None) -> RegistryApiError:
    """Map an HTTP error status to the matching exception."""
    if status in (401, 403):
        return RegistryAuthenticationError(f"Authentication failed: {body}", status, body)
    if status == 404:
        return RegistryNotFoundError(f"Resource not found: {url}", status, body)
    if status == 429:
        return RegistryRateLimitError("Rate limit exceeded", retry_after, body)
    if status >= 500:
        return RegistryTransientError(f"Registry error {status}: {body}", status, body)
    return RegistryValidationError(f"Validation error {status}: {body}", status, body)

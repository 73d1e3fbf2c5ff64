"""Registry connector.

HTTP clients for the e-invoicing registry: OAuth connect/refresh/revoke and
bearer-authenticated document calls, sharing one backoff policy.
"""

from connectors.registry.client import RegistryApiClient
from connectors.registry.errors import (
    RegistryApiError,
    RegistryAuthenticationError,
    RegistryNotFoundError,
    RegistryRateLimitError,
    RegistryTransientError,
    RegistryValidationError,
    is_transient,
)
from connectors.registry.http import RegistryHttpClient
from connectors.registry.models import (
    BusinessInfo,
    DocumentDetail,
    DocumentUpdate,
    DocumentUpdates,
    SubmissionResponse,
    TokenSet,
    parse_expires_in,
)
from connectors.registry.oauth import RegistryOAuthClient, generate_state
from connectors.registry.retry import BackoffPolicy

__all__ = [
    # Clients
    "RegistryApiClient",
    "RegistryHttpClient",
    "RegistryOAuthClient",
    "generate_state",
    # Retry
    "BackoffPolicy",
    "is_transient",
    # Errors
    "RegistryApiError",
    "RegistryAuthenticationError",
    "RegistryNotFoundError",
    "RegistryRateLimitError",
    "RegistryTransientError",
    "RegistryValidationError",
    # Models
    "BusinessInfo",
    "DocumentDetail",
    "DocumentUpdate",
    "DocumentUpdates",
    "SubmissionResponse",
    "TokenSet",
    "parse_expires_in",
]

"""Inbound registry webhooks."""

from webhooks.ingestion import (
    SIGNATURE_HEADER,
    WebhookAuthenticationError,
    WebhookIngestion,
    WebhookOutcome,
    WebhookPayloadError,
    WebhookResult,
    compute_signature,
    normalize_event_type,
    verify_signature,
)

__all__ = [
    "SIGNATURE_HEADER",
    "WebhookAuthenticationError",
    "WebhookIngestion",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookResult",
    "compute_signature",
    "normalize_event_type",
    "verify_signature",
]

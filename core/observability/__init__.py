"""
Observability for registry reconciliation.

Provides:
- Structured logging with correlation IDs (merchant, invoice, webhook event)
- In-memory metrics for transitions, webhooks, polling and registry calls
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
)

from core.observability.logging import (
    CorrelationContext,
    configure_logging,
    get_logger,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    # Logging
    "CorrelationContext",
    "configure_logging",
    "get_logger",
    "with_correlation",
]

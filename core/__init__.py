"""Core module - models, configuration, audit, security and observability.

Registry-specific transport lives in /connectors/registry/; everything here
is shared by the reconciliation engine, webhooks, polling and the API.
"""

__version__ = "0.1.0"

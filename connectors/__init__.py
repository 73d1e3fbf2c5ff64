"""External system connectors.

registry/ talks to the national e-invoicing registry: OAuth connect and
refresh, document submission, send, fetch, polling feed and PDF download.
"""

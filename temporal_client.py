"""Temporal client factory.

Creates connections to Temporal using credentials from environment.
"""

import os
from pathlib import Path
from typing import Union

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client
from temporalio.service import TLSConfig

LOCAL_ENDPOINT = "localhost:7233"


def _tls_config() -> Union[bool, TLSConfig]:
    """TLS settings: mTLS if a certificate pair is configured, else server TLS."""
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")
    if cert_path and key_path:
        return TLSConfig(
            client_cert=Path(cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )
    return True


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: host:port (default: localhost:7233, a local dev server)
    - TEMPORAL_NAMESPACE: Namespace (default: "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud; enables TLS
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: client certificate pair for mTLS

    Returns:
        Connected Temporal client
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", LOCAL_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")

    if not api_key and not os.getenv("TEMPORAL_CERT_PATH"):
        # Local dev server: plaintext, no auth
        return await Client.connect(endpoint, namespace=namespace)

    return await Client.connect(
        endpoint,
        namespace=namespace,
        tls=_tls_config(),
        api_key=api_key,
    )

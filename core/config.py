"""Runtime configuration.

Values come from the environment. A ``.env`` file at the repo root is
loaded first if present.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_API_BASE_URL = "https://sb-merchant.e-invoice.gov.kh"
DEFAULT_DB_PATH = REPO_ROOT / "registry_reconciliation.db"


class ConfigurationError(Exception):
    """Required configuration is missing or invalid."""
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RegistryConfig:
    """Settings for talking to the registry and running the service."""
    api_base_url: str = DEFAULT_API_BASE_URL
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    service_provider_name: str = "RegistrySync"
    redirect_uri: str = "http://localhost:8000/registry/auth/callback"

    webhook_secret: Optional[str] = None
    allow_unsigned_webhooks: bool = False

    timeout_seconds: float = 30.0
    max_attempts: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    token_refresh_margin_seconds: int = 60

    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    token_encryption_key: Optional[str] = None

    log_json: bool = False
    log_level: str = "INFO"
    polling_task_queue: str = "registry-polling"

    @property
    def user_agent(self) -> str:
        return f"{self.service_provider_name}/1.0"

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """Build config from environment variables."""
        return cls(
            api_base_url=os.getenv("REGISTRY_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
            client_id=os.getenv("REGISTRY_CLIENT_ID") or None,
            client_secret=os.getenv("REGISTRY_CLIENT_SECRET") or None,
            service_provider_name=os.getenv("REGISTRY_SERVICE_PROVIDER_NAME", "RegistrySync"),
            redirect_uri=os.getenv(
                "REGISTRY_REDIRECT_URI",
                "http://localhost:8000/registry/auth/callback",
            ),
            webhook_secret=os.getenv("REGISTRY_WEBHOOK_SECRET") or None,
            allow_unsigned_webhooks=_env_bool("REGISTRY_WEBHOOK_ALLOW_UNSIGNED"),
            timeout_seconds=float(os.getenv("REGISTRY_TIMEOUT_SECONDS", "30")),
            max_attempts=int(os.getenv("REGISTRY_MAX_ATTEMPTS", "3")),
            db_path=Path(os.getenv("REGISTRY_DB_PATH", str(DEFAULT_DB_PATH))),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY") or None,
            log_json=_env_bool("LOG_JSON"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            polling_task_queue=os.getenv("POLLING_TASK_QUEUE", "registry-polling"),
        )

    def validate(self) -> None:
        """Raise ConfigurationError if the registry connection can't work."""
        missing = []
        if not self.api_base_url:
            missing.append("REGISTRY_API_BASE_URL")
        if not self.client_id:
            missing.append("REGISTRY_CLIENT_ID")
        if not self.client_secret:
            missing.append("REGISTRY_CLIENT_SECRET")
        if missing:
            raise ConfigurationError(f"Missing registry configuration: {', '.join(missing)}")
        if self.max_attempts < 1:
            raise ConfigurationError("REGISTRY_MAX_ATTEMPTS must be at least 1")

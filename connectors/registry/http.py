"""Registry HTTP transport.

Low-level aiohttp wrapper shared by the OAuth and document clients. Every
request carries a timeout, and every request goes through the same
``BackoffPolicy``.
"""

import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from connectors.registry.errors import (
    RegistryApiError,
    RegistryTransientError,
    error_for_status,
)
from connectors.registry.retry import BackoffPolicy
from core.config import RegistryConfig
from core.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


def basic_auth_header(client_id: str, client_secret: str) -> str:
    token = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class RegistryHttpClient:
    """Shared session, timeouts and retry for registry calls.

    A session can be injected (tests pass a fake); otherwise one is created
    lazily inside the running event loop.
    """

    def __init__(
        self,
        config: RegistryConfig,
        policy: Optional[BackoffPolicy] = None,
        session: Optional[Any] = None,
    ):
        self.config = config
        self.policy = policy or BackoffPolicy(
            max_attempts=config.max_attempts,
            base_delay=config.base_retry_delay,
            max_delay=config.max_retry_delay,
        )
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self.config.api_base_url.rstrip("/")

    def _get_session(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.config.user_agent},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "RegistryHttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
        form: Optional[Dict[str, str]] = None,
        expect: str = "json",
        policy: Optional[BackoffPolicy] = None,
    ) -> Any:
        """Send a request with retries.

        Args:
            method: HTTP method
            path: Path below the registry base URL
            operation: Name used in logs and metrics
            expect: "json" to decode the body, "bytes" for raw content

        Raises:
            RegistryAuthenticationError, RegistryNotFoundError,
            RegistryValidationError: immediately, never retried
            RegistryTransientError: once retries are exhausted
        """
        async def attempt():
            return await self._send_once(method, path, operation, headers, params, json_body, form, expect)

        return await (policy or self.policy).run(attempt, description=operation)

    async def _send_once(
        self,
        method: str,
        path: str,
        operation: str,
        headers: Optional[Dict[str, str]],
        params: Optional[Dict[str, str]],
        json_body: Optional[Any],
        form: Optional[Dict[str, str]],
        expect: str,
    ) -> Any:
        url = f"{self.base_url}{path}"
        request_headers = {
            "Accept": "application/pdf" if expect == "bytes" else "application/json",
            "User-Agent": self.config.user_agent,
        }
        request_headers.update(headers or {})
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        started = time.monotonic()
        success = False
        try:
            async with self._get_session().request(
                method,
                url,
                headers=request_headers,
                params=params,
                json=json_body,
                data=form,
                timeout=timeout,
            ) as response:
                if response.status < 400:
                    if expect == "bytes":
                        body = await response.read()
                        success = True
                        return body
                    text = await response.text()
                    try:
                        payload = json.loads(text) if text else {}
                    except ValueError as e:
                        raise RegistryApiError(
                            f"{operation}: invalid JSON from registry: {e}",
                            response.status,
                            text,
                        )
                    success = True
                    return payload

                text = await response.text()
                logger.warning(f"{operation} {method} {url} -> {response.status}")
                raise error_for_status(
                    response.status,
                    text,
                    url,
                    retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryTransientError(f"{operation} failed: {e!r}") from e
        finally:
            get_metrics().record_api_call(operation, (time.monotonic() - started) * 1000, success)

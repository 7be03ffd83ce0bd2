# protocols/communication.py

import httpx
from typing import Dict, Any, Optional
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_fixed, retry_if_exception_type

from config.settings import A2AAuthConfig
from utils.helpers import resolve_env_refs


def auth_headers(auth: Optional[A2AAuthConfig]) -> Dict[str, str]:
    """Build the Authorization header for a peer's auth settings."""
    if auth is None:
        return {}
    credentials = resolve_env_refs(auth.credentials)
    if auth.type == "api_key" and credentials.get("api_key"):
        return {"Authorization": f"Bearer {credentials['api_key']}"}
    if auth.type == "jwt" and credentials.get("token"):
        return {"Authorization": f"Bearer {credentials['token']}"}
    if auth.type == "oauth":
        logger.warning("OAuth authentication for A2A peers is not supported; sending no credentials")
    return {}


class AsyncCommManager:
    """HTTP client for one A2A peer."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json", "User-Agent": "multi-agent-router/0.1", **(headers or {})},
            transport=transport,
        )
        logger.debug(f"AsyncCommManager initialized for {base_url}")

    @retry(stop=stop_after_attempt(3), wait=wait_fixed(1), retry=retry_if_exception_type(httpx.ConnectError), reraise=True)
    async def get(self, path: str, params: Optional[Dict] = None) -> Any:
        """Performs an asynchronous GET request."""
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            logger.debug(f"HTTP error on GET {path}: {e.response.status_code}")
            raise
        except httpx.RequestError as e:
            logger.debug(f"Network error on GET {path}: {e}")
            raise

    # Task submission is not idempotent, so only connection failures are retried
    @retry(stop=stop_after_attempt(3), wait=wait_fixed(1), retry=retry_if_exception_type(httpx.ConnectError), reraise=True)
    async def post(self, path: str, json_data: Optional[Dict] = None, timeout: Optional[float] = None) -> Any:
        """Performs an asynchronous POST request."""
        try:
            logger.debug(f"Making POST request to: {path}")
            kwargs = {"json": json_data}
            if timeout is not None:
                kwargs["timeout"] = timeout
            response = await self._client.post(path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error on POST {path}: {e.response.status_code} - {e.response.text}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Network error on POST {path}: {e}")
            raise

    async def close(self):
        """Closes the underlying httpx client."""
        await self._client.aclose()

"""
HTTP Transport

Delivers record payloads to an HTTP endpoint with httpx and maps the result
onto the engine's three failure classes.

STATUS MAPPING:
---------------
- 2xx                     -> success (decoded JSON body, or text)
- 429, 503                -> ThrottledError (explicit overload signal)
- other 5xx               -> TransientError
- other 4xx               -> FatalError
- timeouts, network errors -> TransientError

USAGE:
------
    async with HttpTransport("https://api.example.com/ingest") as transport:
        engine = DispatchEngine(transport)
        summary = await engine.run(records)
"""

from typing import Any

import httpx
import orjson

from dispatch_engine.core.config.constants import Stage
from dispatch_engine.core.exceptions import FatalError, ThrottledError, TransientError
from dispatch_engine.core.logging.logger import get_logger

logger = get_logger(__name__)

THROTTLE_STATUS_CODES = frozenset({429, 503})


class HttpTransport:
    """
    POSTs each payload to one endpoint.

    The connection pool is sized by ``max_connections``; keep it at least as
    large as the engine's concurrency cap so admitted calls never queue
    inside httpx.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        max_connections: int = 100,
        headers: dict[str, str] | None = None,
        content_type: str = "application/json",
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_connections = max_connections
        self._headers = {"Content-Type": content_type, **(headers or {})}
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HttpTransport":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(
                    max_connections=self.max_connections,
                    max_keepalive_connections=self.max_connections // 2,
                ),
            )
            self._owns_client = True
            logger.debug(
                "HTTP client initialized",
                stage=Stage.STARTUP,
                endpoint=self.endpoint,
                max_connections=self.max_connections,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            logger.debug("HTTP client closed", stage=Stage.SHUTDOWN)
        if self._owns_client:
            self._client = None

    def _ensure_client_initialized(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "HttpTransport not initialized. Use 'async with HttpTransport(endpoint) as transport:'"
            )
        return self._client

    async def invoke(self, payload: bytes) -> Any:
        """
        POST one payload.

        Returns:
            Decoded JSON response body, or the raw text if it is not JSON

        Raises:
            ThrottledError: 429 / 503
            TransientError: Other 5xx, timeouts and connection failures
            FatalError: Other 4xx
        """
        client = self._ensure_client_initialized()

        try:
            response = await client.post(self.endpoint, content=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransientError(
                f"Request timed out after {self.timeout}s",
                details={"endpoint": self.endpoint, "original_error": str(e)},
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"Cannot reach {self.endpoint}",
                details={"endpoint": self.endpoint, "original_error": str(e)},
            ) from e

        status = response.status_code
        if status < 400:
            return self._decode(response)

        details = {
            "endpoint": self.endpoint,
            "status_code": status,
            "response_text": response.text[:500] if response.text else None,
        }
        if status in THROTTLE_STATUS_CODES:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                details["retry_after"] = retry_after
            raise ThrottledError(f"Endpoint throttled the request (HTTP {status})", details=details)
        if status >= 500:
            raise TransientError(f"Endpoint returned HTTP {status}", details=details)
        raise FatalError(f"Endpoint rejected the request (HTTP {status})", details=details)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError:
            return response.text

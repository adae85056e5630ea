# /flowbot/services/http_service.py

import json
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from flowbot.utils.errors import ProviderError, UpstreamTimeoutError

# Generic outbound HTTP collaborator used by `http` nodes. No retries here:
# a node either gets an answer inside its timeout or fails the step.

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    status: int
    status_text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    duration_ms: int = 0


class HttpService:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.http_client = client or httpx.AsyncClient(follow_redirects=True)

    async def call(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: int = 10000,
    ) -> HttpResult:
        """
        Performs one request. JSON response bodies are decoded, anything
        else is returned as text.

        Raises:
            UpstreamTimeoutError: No response within `timeout_ms`.
            ProviderError: Connection-level failure (DNS, refused, TLS, ...).
        """
        method = (method or "GET").upper()
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        started = time.perf_counter()
        try:
            response = await self.http_client.request(method, url, timeout=timeout_ms / 1000, **request_kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"{method} {url} timed out after {timeout_ms}ms") from e
        except httpx.RequestError as e:
            raise ProviderError(f"{method} {url} failed: {e}") from e
        duration_ms = int((time.perf_counter() - started) * 1000)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = response.text

        logger.info(f"HTTP node request {method} {url} -> {response.status_code} in {duration_ms}ms")
        return HttpResult(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=dict(response.headers),
            body=data,
            duration_ms=duration_ms,
        )

    async def close(self):
        await self.http_client.aclose()

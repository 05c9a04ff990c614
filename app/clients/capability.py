"""HTTP client for the generation capability gateway.

Every capability (planner LLM, story LLM, image model, TTS, video composer...)
sits behind one gateway that accepts:

    POST {base_url}/capabilities/{name}
    {"context": {...}}

and answers with {"artifacts": {role: {"url", "content_type"}}, "output_text",
"data", "error"}. This module implements:
- Global rate limit via AsyncLimiter (CAPABILITY_MAX_RATE calls per second)
- Automatic retry with exponential backoff for transient errors (429, 5xx, timeouts)
- Proper error classification (retriable vs non-retriable)
- Per-call timeout (CAPABILITY_TIMEOUT_SECONDS) surfaced as CapabilityError

Usage:
    client = CapabilityClient(base_url)
    result = await client.invoke("story", {"source_text": "..."})
"""

import asyncio
from typing import Any

import httpx
import structlog
from aiolimiter import AsyncLimiter
from tenacity import (
    RetryError,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.capabilities import CapabilityResult
from app.config import (
    get_capability_api_key,
    get_capability_base_url,
    get_capability_max_rate,
    get_capability_timeout_seconds,
)
from app.exceptions import CapabilityError, ConfigurationError

log = structlog.get_logger()

RETRIABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_ATTEMPTS = 3
MAX_BACKOFF_SECONDS = 10


def _is_retriable_error(exception: BaseException) -> bool:
    """Determine if an error should trigger retry logic.

    Args:
        exception: Exception to classify

    Returns:
        True if error is retriable (429, 5xx, timeouts, connect errors), False otherwise
    """
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRIABLE_STATUS_CODES
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


class CapabilityClient:
    """Rate-limited, retrying client for the capability gateway.

    Usage:
        client = CapabilityClient("https://capabilities.internal", api_key="...")
        result = await client.invoke("image", {"script": "..."})
        await client.close()
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        max_rate: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Gateway URL. Defaults to CAPABILITY_BASE_URL.
            api_key: Bearer token. Defaults to CAPABILITY_API_KEY.
            timeout_seconds: Per-call timeout. Defaults to CAPABILITY_TIMEOUT_SECONDS.
            max_rate: Calls per second. Defaults to CAPABILITY_MAX_RATE.
            transport: Optional httpx transport (tests use httpx.MockTransport).

        Raises:
            ConfigurationError: If no base URL is configured.
        """
        self.base_url = (base_url or get_capability_base_url() or "").rstrip("/")
        if not self.base_url:
            raise ConfigurationError(
                "CAPABILITY_BASE_URL must be set to invoke capabilities over HTTP"
            )
        self.api_key = api_key if api_key is not None else get_capability_api_key()
        self.timeout_seconds = timeout_seconds or get_capability_timeout_seconds()
        self.client = httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=transport,
        )
        self.rate_limiter = AsyncLimiter(
            max_rate=max_rate or get_capability_max_rate(), time_period=1
        )

    @property
    def worst_case_call_seconds(self) -> float:
        """Longest one invoke() can take: every attempt times out, every backoff is maximal."""
        return self.timeout_seconds * MAX_ATTEMPTS + MAX_BACKOFF_SECONDS * (MAX_ATTEMPTS - 1)

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        retry=retry_if_exception(_is_retriable_error),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=MAX_BACKOFF_SECONDS),
        reraise=True,
    )
    async def _post(self, name: str, context: dict[str, Any]) -> dict[str, Any]:
        # httpx timeouts apply per read/write; the deadline bounds the whole attempt
        try:
            async with asyncio.timeout(self.timeout_seconds), self.rate_limiter:
                response = await self.client.post(
                    f"{self.base_url}/capabilities/{name}",
                    headers=self._get_headers(),
                    json={"context": context},
                )
        except TimeoutError as e:
            raise httpx.TimeoutException(
                f"no response within {self.timeout_seconds}s"
            ) from e
        if response.status_code in RETRIABLE_STATUS_CODES:
            log.warning(
                "capability_retriable_error",
                capability=name,
                status_code=response.status_code,
            )
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def invoke(self, name: str, context: dict[str, Any]) -> CapabilityResult:
        """Invoke one capability (rate limited, auto-retry).

        Args:
            name: Capability name, e.g. "story" or "frontend".
            context: JSON-serialisable context for the call.

        Returns:
            CapabilityResult parsed from the gateway response.

        Raises:
            CapabilityError: On non-retriable HTTP errors, after 3 failed
                attempts on retriable ones, or on an unparseable response.
        """
        log.info("capability_invoked", capability=name)
        try:
            payload = await self._post(name, context)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log.error(
                "capability_http_error",
                capability=name,
                status_code=status_code,
                response_body=e.response.text[:200],
            )
            raise CapabilityError(
                f"HTTP {status_code} from capability gateway",
                capability=name,
                retriable=status_code in RETRIABLE_STATUS_CODES,
            ) from e
        except httpx.TimeoutException as e:
            log.error("capability_timeout", capability=name, timeout=self.timeout_seconds)
            raise CapabilityError(
                f"timed out after {self.timeout_seconds}s",
                capability=name,
                retriable=True,
            ) from e
        except (httpx.HTTPError, RetryError) as e:
            log.error("capability_transport_error", capability=name, error=str(e))
            raise CapabilityError(
                f"transport error: {e}", capability=name, retriable=True
            ) from e
        except ValueError as e:
            raise CapabilityError("invalid JSON response", capability=name) from e

        if not isinstance(payload, dict):
            raise CapabilityError("response body is not a JSON object", capability=name)
        return CapabilityResult.from_payload(payload)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self.client.aclose()

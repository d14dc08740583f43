"""Shared aiohttp JSON client with error classification and retries."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import orjson

from .errors import AuthError, ExchangeRequestError, TransientNetworkError
from .util import ExponentialBackoff, retry_transient

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """
    Base for REST clients.

    Maps transport failures onto the error taxonomy:
    - connection refused / DNS failure -> TransientNetworkError(request_sent=False)
    - timeout, 429, 5xx -> TransientNetworkError (retried with backoff)
    - 401/403 -> AuthError
    - other 4xx -> ExchangeRequestError
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        max_attempts: int = 4,
        backoff_base_seconds: float = 0.25,
        backoff_max_seconds: float = 4.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            base_url: API base URL
            timeout_seconds: Total timeout per request
            max_attempts: Attempts per call including the first
            backoff_base_seconds: First retry delay
            backoff_max_seconds: Retry delay cap
            sleep: Sleep function used between retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request_json(self, path: str, params: Optional[dict] = None, allow_not_found: bool = False) -> Any:
        """Single GET attempt."""
        url = f"{self.base_url}{path}"
        session = await self._get_session()

        try:
            async with session.get(url, params=params) as resp:
                body = await resp.read()
                status = resp.status
        except aiohttp.ClientConnectorError as e:
            raise TransientNetworkError(f"GET {path}: cannot connect: {e}", request_sent=False) from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"GET {path}: timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"GET {path}: {e}") from e

        if status == 200:
            return orjson.loads(body) if body else None

        text = body[:200].decode(errors="replace")
        if status == 404 and allow_not_found:
            return None
        if status in (401, 403):
            raise AuthError(f"GET {path} returned {status}: {text}")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"GET {path} returned {status}: {text}", status=status)
        raise ExchangeRequestError(f"GET {path} returned {status}: {text}", status=status)

    async def get_json(self, path: str, params: Optional[dict] = None, allow_not_found: bool = False) -> Any:
        """
        GET a JSON document, retrying transient failures.

        Args:
            path: Path below the base URL
            params: Query parameters
            allow_not_found: Return None on 404 instead of raising

        Returns:
            Decoded JSON (None for an empty body or an allowed 404)
        """
        return await retry_transient(
            lambda: self._request_json(path, params, allow_not_found),
            max_attempts=self.max_attempts,
            backoff=ExponentialBackoff(self.backoff_base_seconds, self.backoff_max_seconds),
            sleep=self._sleep,
            description=f"GET {path}",
        )

"""HTTP client for the external token data provider."""

import asyncio
import aiohttp
import logging
import time
from typing import List, Dict, Any, Optional, Sequence

from ..config.settings import ProviderConfig
from ..exceptions import ProviderError, TransientProviderError, PermanentProviderError

logger = logging.getLogger(__name__)


class TokenProviderClient:
    """
    Polls the provider endpoint for raw token entries.

    The client performs a single request per ``fetch`` call and classifies
    failures as transient or permanent. Retrying is left to the caller.
    """

    def __init__(self, config: ProviderConfig, endpoint: Optional[str] = None):
        self.config = config
        self.endpoint = endpoint or config.endpoint
        self.session: Optional[aiohttp.ClientSession] = None
        self.rate_limiter = RateLimiter(config.rate_limit_requests_per_minute)

        self.stats = {
            "requests": 0,
            "transient_errors": 0,
            "permanent_errors": 0,
            "rate_limited": 0,
            "last_success_time": None
        }

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None or self.session.closed:
            headers = {"Accept": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"

            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                headers=headers
            )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def fetch(self, identifiers: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """
        Fetch raw entries for the given identifiers, or all known tokens.

        Raises:
            TransientProviderError: timeout, connection failure, 5xx, 429
            PermanentProviderError: other 4xx, non-JSON or unexpected payload shape
        """
        if self.session is None:
            await self.open()

        params = {}
        if identifiers:
            params['ids'] = ','.join(identifiers)

        await self.rate_limiter.acquire()
        self.stats["requests"] += 1

        try:
            async with self.session.get(self.endpoint, params=params) as response:
                if response.status == 429:
                    self.stats["rate_limited"] += 1
                    retry_after = _parse_retry_after(response.headers.get('Retry-After'))
                    raise self._transient(
                        "Provider rate limit exceeded", status=429, retry_after=retry_after
                    )

                if response.status >= 500:
                    raise self._transient(f"Provider server error {response.status}", status=response.status)

                if response.status >= 400:
                    body = await response.text()
                    raise self._permanent(
                        f"Provider rejected request with {response.status}: {body[:200]}",
                        status=response.status
                    )

                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise self._permanent(f"Malformed provider response: {e}", status=response.status)

        except ProviderError:
            raise
        except asyncio.TimeoutError:
            raise self._transient(
                f"Provider request timed out after {self.config.request_timeout_seconds}s"
            )
        except aiohttp.InvalidURL as e:
            raise self._permanent(f"Invalid provider endpoint: {e}")
        except aiohttp.ClientError as e:
            raise self._transient(f"Provider connection error: {e}")

        entries = self._extract_entries(payload)
        self.stats["last_success_time"] = time.time()
        logger.debug(f"Retrieved {len(entries)} entries from provider")
        return entries

    def _extract_entries(self, payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            for key in ('data', 'tokens'):
                if isinstance(payload.get(key), list):
                    payload = payload[key]
                    break

        if not isinstance(payload, list):
            raise self._permanent(
                f"Malformed provider response: expected a list of entries, got {type(payload).__name__}"
            )
        return payload

    def _transient(self, message: str, **kwargs) -> TransientProviderError:
        self.stats["transient_errors"] += 1
        return TransientProviderError(message, **kwargs)

    def _permanent(self, message: str, **kwargs) -> PermanentProviderError:
        self.stats["permanent_errors"] += 1
        return PermanentProviderError(message, **kwargs)

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.session is not None and not self.session.closed else "stopped",
            "endpoint": self.endpoint,
            "stats": self.stats.copy()
        }


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth parsing here; fall back to backoff
        return None


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.last_update = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire a token for making a request."""
        if self.requests_per_minute <= 0:
            return

        async with self.lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            rate = self.requests_per_minute / 60.0

            # Add tokens based on elapsed time
            self.tokens = min(self.requests_per_minute, self.tokens + elapsed * rate)
            self.last_update = now

            if self.tokens >= 1:
                self.tokens -= 1
            else:
                # Wait until we have a token
                wait_time = (1 - self.tokens) / rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = time.monotonic()

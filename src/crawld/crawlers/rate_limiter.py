"""httpx client for the GitHub REST API that stays inside its quotas.

Quotas the client works around:
- each token gets 5000 core requests per hour (60 without a token);
- search is capped at 30 requests per minute (10 without a token);
- bursts can trip the undocumented secondary limits, answered with 403/429.

Every request goes out with the configured token that has the most quota
left. Search calls are additionally spaced out by a minimum delay plus jitter.
"""

import asyncio
import hashlib
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

SEARCH_API_MIN_DELAY = 2.5
SEARCH_API_JITTER = 0.5


@dataclass
class TokenState:
    """Quota bookkeeping for one API token."""

    token: str
    fingerprint: str
    remaining: int = 5000
    reset_at: float = 0.0  # epoch seconds

    def usable(self, now: float) -> bool:
        return self.remaining > 0 or now >= self.reset_at


class TokenRotator:
    """Hands out the token with the most quota left.

    An empty pool means anonymous access, in which case ``get_token``
    returns None.
    """

    def __init__(self, tokens: List[str]):
        self.tokens = [
            TokenState(token=t, fingerprint=hashlib.sha256(t.encode()).hexdigest()[:16])
            for t in tokens
        ]
        self._lock = asyncio.Lock()

    async def get_token(self) -> Optional[str]:
        """Reserve one request on the best token, sleeping out an exhausted pool."""
        if not self.tokens:
            return None

        async with self._lock:
            while True:
                now = time.time()
                candidates = [t for t in self.tokens if t.usable(now)]
                if candidates:
                    best = max(candidates, key=lambda t: t.remaining)
                    best.remaining = max(best.remaining - 1, 0)
                    return best.token

                delay = min(t.reset_at for t in self.tokens) - now
                logger.warning(f"All GitHub tokens exhausted, sleeping {delay:.0f}s")
                await asyncio.sleep(max(delay, 0) + 1)

    async def update_limits(
        self, token: Optional[str], remaining: int, reset_timestamp: int
    ) -> None:
        """Record the quota GitHub reported for ``token``."""
        if token is None:
            return
        async with self._lock:
            state = next((t for t in self.tokens if t.token == token), None)
            if state is not None:
                state.remaining = remaining
                state.reset_at = float(reset_timestamp)

    def get_status(self) -> List[Dict[str, Any]]:
        now = time.time()
        return [
            {
                "hash": t.fingerprint,
                "remaining": t.remaining,
                "reset_at": datetime.fromtimestamp(t.reset_at, tz=timezone.utc).isoformat(),
                "available": t.usable(now),
            }
            for t in self.tokens
        ]


class RateLimitedClient:
    """Async GitHub client that rotates tokens and backs off when limited."""

    BASE_URL = "https://api.github.com"
    MAX_RETRIES = 3
    SECONDARY_RATE_LIMIT_BACKOFF = (60, 120, 300)

    def __init__(
        self,
        token_rotator: TokenRotator,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rotator = token_rotator
        self.timeout = timeout
        self.search_delay = SEARCH_API_MIN_DELAY
        self.search_jitter = SEARCH_API_JITTER
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._next_search_at = 0.0

    async def __aenter__(self) -> "RateLimitedClient":
        self._http()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def _throttle_search(self) -> None:
        wait = self._next_search_at - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)
        self._next_search_at = (
            time.monotonic() + self.search_delay + random.uniform(0, self.search_jitter)
        )

    @staticmethod
    def _headers(token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _is_secondary_rate_limit(self, response: httpx.Response) -> bool:
        if response.status_code not in (403, 429):
            return False
        if "Retry-After" in response.headers:
            return True
        try:
            message = str(response.json().get("message", "")).lower()
        except ValueError:
            return False
        return "secondary rate" in message or "abuse" in message

    def _backoff(self, response: httpx.Response, attempt: int) -> int:
        retry_after = response.headers.get("Retry-After", "")
        if retry_after.isdigit():
            return int(retry_after)
        schedule = self.SECONDARY_RATE_LIMIT_BACKOFF
        return schedule[min(attempt, len(schedule) - 1)]

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one API request, retrying on rate limiting.

        After ``MAX_RETRIES`` retries the last response is returned as is.
        """
        client = self._http()
        for attempt in range(self.MAX_RETRIES + 1):
            token = await self.rotator.get_token()
            response = await client.request(
                method, endpoint, headers=self._headers(token), params=params
            )

            remaining = int(response.headers.get("X-RateLimit-Remaining", 0))
            await self.rotator.update_limits(
                token, remaining, int(response.headers.get("X-RateLimit-Reset", 0))
            )
            secondary = self._is_secondary_rate_limit(response)
            # a spent token is retried right away, the rotator picks another one
            spent = response.status_code == 403 and remaining == 0 and token is not None
            if not (secondary or spent) or attempt == self.MAX_RETRIES:
                break

            if secondary:
                backoff = self._backoff(response, attempt)
                logger.warning(
                    f"Secondary rate limit on {endpoint}, retrying in {backoff}s "
                    f"({attempt + 1}/{self.MAX_RETRIES})"
                )
                await asyncio.sleep(backoff)

        if secondary or spent:
            logger.error(f"Giving up on {endpoint} after {self.MAX_RETRIES} retries")
        return response

    async def search_repos(
        self,
        query: str,
        sort: str = "stars",
        order: str = "desc",
        per_page: int = 100,
        max_pages: int = 10,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Collect up to ``max_pages`` pages of repository search results.

        Returns the items and GitHub's ``total_count``, which counts every
        match even past the 1000 results search will hand out.
        """
        items: List[Dict[str, Any]] = []
        total = 0
        for page in range(1, max_pages + 1):
            await self._throttle_search()
            response = await self.request(
                "GET",
                "/search/repositories",
                params={
                    "q": query,
                    "sort": sort,
                    "order": order,
                    "per_page": per_page,
                    "page": page,
                },
            )
            if response.status_code != 200:
                logger.warning(f"Search for {query!r} failed with HTTP {response.status_code}")
                break

            body = response.json()
            batch = body.get("items") or []
            if page == 1:
                total = body.get("total_count", 0)
            items.extend(batch)
            if len(batch) < per_page:
                break

        return items, total

"""GraphQL client for the DEX subgraph with rate limiting and retry logic."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from types import TracebackType
from typing import Any, ParamSpec, TypeVar

import aiohttp

from dex_candles.chains import ChainConfig
from dex_candles.errors import UpstreamUnavailableError
from dex_candles.ingestor.models import PoolInfo, SwapRecord

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
DEFAULT_PAGE_SIZE = 1000
DEFAULT_PAGE_DELAY_SECONDS = 0.5
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_MIN_INTERVAL_SECONDS = 1.0
DEFAULT_RESERVOIR = 60
DEFAULT_RESERVOIR_REFRESH_SECONDS = 60.0
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POOL_CANDIDATES = 20

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class SubgraphClientError(UpstreamUnavailableError):
    """Base exception for subgraph client errors."""


class SubgraphTransientError(SubgraphClientError):
    """Raised for retryable errors (429/5xx, timeouts, connection failures)."""


class SubgraphQueryError(SubgraphClientError):
    """Raised when the endpoint answers with GraphQL errors."""


class RetryError(SubgraphClientError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


class RateLimiter:
    """Shared outbound limiter for subgraph requests.

    Bounds in-flight requests, spaces request starts by a minimum interval
    and caps the number of requests per reservoir window.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        reservoir: int = DEFAULT_RESERVOIR,
        reservoir_refresh_seconds: float = DEFAULT_RESERVOIR_REFRESH_SECONDS,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            max_concurrent: Maximum requests in flight at once.
            min_interval_seconds: Minimum spacing between request starts.
            reservoir: Requests allowed per refresh window.
            reservoir_refresh_seconds: Length of the refresh window.
        """
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._min_interval = min_interval_seconds
        self._reservoir = reservoir
        self._window = reservoir_refresh_seconds
        self._last_request_time: float = 0.0
        self._recent: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        await self._semaphore.acquire()
        try:
            async with self._lock:
                await self._wait_for_reservoir()
                now = time.monotonic()
                elapsed = now - self._last_request_time
                if elapsed < self._min_interval:
                    await asyncio.sleep(self._min_interval - elapsed)
                self._last_request_time = time.monotonic()
                self._recent.append(self._last_request_time)
        except BaseException:
            self._semaphore.release()
            raise

    def release(self) -> None:
        self._semaphore.release()

    async def _wait_for_reservoir(self) -> None:
        while True:
            now = time.monotonic()
            while self._recent and now - self._recent[0] >= self._window:
                self._recent.popleft()
            if len(self._recent) < self._reservoir:
                return
            wait_time = self._window - (now - self._recent[0])
            logger.debug("Subgraph reservoir exhausted; waiting %.2fs", wait_time)
            await asyncio.sleep(wait_time)

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (SubgraphTransientError,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


@dataclass
class FetchResult:
    """Swaps returned by one paginated fetch.

    ``partial`` is set when pagination stopped on a limit or a failed page
    rather than at the end of the data.
    """

    swaps: list[SwapRecord] = field(default_factory=list)
    partial: bool = False
    pages: int = 0

    @property
    def oldest_timestamp_sec(self) -> int | None:
        return min((s.timestamp_sec for s in self.swaps), default=None)

    @property
    def newest_timestamp_sec(self) -> int | None:
        return max((s.timestamp_sec for s in self.swaps), default=None)


_TOKEN_FIELDS = "{ id symbol name decimals }"

V3_POOLS_QUERY = f"""
query GetPoolsByTVL($tokenAddress: String!, $first: Int!) {{
  pools(
    where: {{ or: [{{ token0_: {{ id: $tokenAddress }} }}, {{ token1_: {{ id: $tokenAddress }} }}] }}
    orderBy: totalValueLockedUSD
    orderDirection: desc
    first: $first
  ) {{
    id
    token0 {_TOKEN_FIELDS}
    token1 {_TOKEN_FIELDS}
    feeTier
    totalValueLockedUSD
    volumeUSD
  }}
}}
"""

_V3_SWAP_FIELDS = f"""
    id
    timestamp
    token0 {_TOKEN_FIELDS}
    token1 {_TOKEN_FIELDS}
    amount0
    amount1
    amount0USD
    amount1USD
    amountUSD
    token0PriceUSD
    token1PriceUSD
    sqrtPriceX96
    pool {{ id }}
    transaction {{ id blockNumber }}
"""

V3_SWAPS_QUERY = f"""
query GetSwaps($poolId: String!, $startTime: Int!, $endTime: Int!, $first: Int!, $skip: Int!) {{
  swaps(
    where: {{ pool: $poolId, timestamp_gte: $startTime, timestamp_lte: $endTime }}
    orderBy: timestamp
    orderDirection: desc
    first: $first
    skip: $skip
  ) {{{_V3_SWAP_FIELDS}  }}
}}
"""

V3_SWAPS_BEFORE_QUERY = f"""
query GetHistoricalSwaps($poolId: String!, $olderThan: Int!, $first: Int!, $skip: Int!) {{
  swaps(
    where: {{ pool: $poolId, timestamp_lt: $olderThan }}
    orderBy: timestamp
    orderDirection: desc
    first: $first
    skip: $skip
  ) {{{_V3_SWAP_FIELDS}  }}
}}
"""

V2_PAIRS_QUERY = f"""
query GetPairsByReserve($tokenAddress: String!, $first: Int!) {{
  pairs(
    where: {{ or: [{{ token0_: {{ id: $tokenAddress }} }}, {{ token1_: {{ id: $tokenAddress }} }}] }}
    orderBy: reserveUSD
    orderDirection: desc
    first: $first
  ) {{
    id
    token0 {_TOKEN_FIELDS}
    token1 {_TOKEN_FIELDS}
    reserveUSD
    volumeUSD
  }}
}}
"""

_V2_SWAP_FIELDS = f"""
    id
    timestamp
    amount0In
    amount0Out
    amount1In
    amount1Out
    amountUSD
    token0PriceUSD
    token1PriceUSD
    pair {{ id token0 {_TOKEN_FIELDS} token1 {_TOKEN_FIELDS} }}
    transaction {{ id blockNumber }}
"""

V2_SWAPS_QUERY = f"""
query GetSwaps($poolId: String!, $startTime: Int!, $endTime: Int!, $first: Int!, $skip: Int!) {{
  swaps(
    where: {{ pair: $poolId, timestamp_gte: $startTime, timestamp_lte: $endTime }}
    orderBy: timestamp
    orderDirection: desc
    first: $first
    skip: $skip
  ) {{{_V2_SWAP_FIELDS}  }}
}}
"""

V2_SWAPS_BEFORE_QUERY = f"""
query GetHistoricalSwaps($poolId: String!, $olderThan: Int!, $first: Int!, $skip: Int!) {{
  swaps(
    where: {{ pair: $poolId, timestamp_lt: $olderThan }}
    orderBy: timestamp
    orderDirection: desc
    first: $first
    skip: $skip
  ) {{{_V2_SWAP_FIELDS}  }}
}}
"""


class SubgraphClient:
    """Async client for the chain's DEX subgraph.

    All requests share one ``RateLimiter`` and transient failures are
    retried with exponential backoff. Swap fetches paginate with
    ``first``/``skip`` and return partial results instead of raising when a
    page fails mid-way.

    Example:
        ```python
        async with SubgraphClient(KATANA) as client:
            pools = await client.fetch_pools("0xee7d...")
            result = await client.fetch_swaps(pools[0].pool_id, start, end, 3000, 2000)
        ```
    """

    def __init__(
        self,
        chain: ChainConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        api_key: str | None = None,
        rate_limiter: RateLimiter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ) -> None:
        self._chain = chain
        self._session = session
        self._owns_session = session is None
        self._api_key = api_key
        self._rate_limiter = rate_limiter or RateLimiter()
        self._page_size = page_size
        self._page_delay = page_delay_seconds
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

        logger.info(
            "Initialized SubgraphClient for %s (%s) at %s",
            chain.name,
            chain.dex_version,
            chain.subgraph_url,
        )

    @property
    def chain(self) -> ChainConfig:
        return self._chain

    @property
    def page_size(self) -> int:
        return self._page_size

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> SubgraphClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _post(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """POST one GraphQL request and return its ``data`` object."""
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        session = self._get_session()
        try:
            async with session.post(
                self._chain.subgraph_url,
                json={"query": query, "variables": variables},
                headers=headers,
            ) as response:
                if response.status in RETRY_STATUS_CODES:
                    text = await response.text()
                    raise SubgraphTransientError(f"Subgraph HTTP {response.status}: {text[:200]}")
                if response.status != 200:
                    text = await response.text()
                    raise SubgraphClientError(f"Subgraph HTTP {response.status}: {text[:200]}")
                try:
                    body = await response.json(content_type=None)
                except ValueError as e:
                    # Gateways answer 200 with an HTML error page when the indexer is down.
                    raise SubgraphTransientError(f"Subgraph returned a non-JSON body: {e}") from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise SubgraphTransientError(f"Subgraph request failed: {e}") from e

        if not isinstance(body, dict):
            raise SubgraphQueryError("Subgraph returned a non-object response")
        errors = body.get("errors")
        if errors:
            message = "; ".join(str(err.get("message", err)) for err in errors if isinstance(err, dict)) or str(errors)
            raise SubgraphQueryError(f"Subgraph query error: {message}")
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Rate-limited, retried GraphQL request."""

        @with_retry(max_retries=self._max_retries, base_delay=self._retry_base_delay)
        async def attempt() -> dict[str, Any]:
            async with self._rate_limiter:
                return await self._post(query, variables)

        return await attempt()

    def _parse_swap(self, raw: dict[str, Any]) -> SwapRecord:
        if self._chain.dex_version == "v2":
            return SwapRecord.from_v2_dict(raw)
        return SwapRecord.from_v3_dict(raw)

    def _parse_pool(self, raw: dict[str, Any]) -> PoolInfo:
        if self._chain.dex_version == "v2":
            return PoolInfo.from_v2_dict(raw)
        return PoolInfo.from_v3_dict(raw)

    async def fetch_pools(self, token_address: str, *, limit: int = DEFAULT_POOL_CANDIDATES) -> list[PoolInfo]:
        """List candidate pools trading ``token_address``, deepest first.

        Raises:
            SubgraphClientError: If the request fails after retries.
        """
        v2 = self._chain.dex_version == "v2"
        data = await self._query(
            V2_PAIRS_QUERY if v2 else V3_POOLS_QUERY,
            {"tokenAddress": token_address.lower(), "first": limit},
        )
        pools: list[PoolInfo] = []
        for raw in data.get("pairs" if v2 else "pools") or []:
            try:
                pools.append(self._parse_pool(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed pool entity %s: %s", raw.get("id"), e)
        logger.debug("Found %d candidate pools for %s", len(pools), token_address)
        return pools

    async def fetch_swaps(
        self,
        pool_id: str,
        start_time_sec: int,
        end_time_sec: int,
        max_records: int,
        max_page_skip: int,
    ) -> FetchResult:
        """Fetch swaps for a pool within ``[start_time_sec, end_time_sec]``, newest first."""
        query = V2_SWAPS_QUERY if self._chain.dex_version == "v2" else V3_SWAPS_QUERY
        variables = {
            "poolId": pool_id.lower(),
            "startTime": int(start_time_sec),
            "endTime": int(end_time_sec),
        }
        logger.info(
            "Fetching swaps for pool %s from %d to %d (max_records=%d, max_skip=%d)",
            pool_id,
            start_time_sec,
            end_time_sec,
            max_records,
            max_page_skip,
        )
        return await self._paginate(query, variables, max_records=max_records, max_page_skip=max_page_skip)

    async def fetch_swaps_before(
        self,
        pool_id: str,
        older_than_sec: int,
        max_records: int,
        max_page_skip: int,
    ) -> FetchResult:
        """Fetch swaps for a pool strictly older than ``older_than_sec``, newest first."""
        query = V2_SWAPS_BEFORE_QUERY if self._chain.dex_version == "v2" else V3_SWAPS_BEFORE_QUERY
        variables = {"poolId": pool_id.lower(), "olderThan": int(older_than_sec)}
        logger.info(
            "Fetching swaps for pool %s older than %d (max_records=%d, max_skip=%d)",
            pool_id,
            older_than_sec,
            max_records,
            max_page_skip,
        )
        return await self._paginate(query, variables, max_records=max_records, max_page_skip=max_page_skip)

    async def _paginate(
        self,
        query: str,
        variables: dict[str, Any],
        *,
        max_records: int,
        max_page_skip: int,
    ) -> FetchResult:
        result = FetchResult()
        skip = 0
        reached_end = False

        while skip < max_page_skip and len(result.swaps) < max_records:
            try:
                data = await self._query(query, {**variables, "first": self._page_size, "skip": skip})
            except SubgraphClientError as e:
                logger.warning(
                    "Page fetch failed at skip=%d after %d swaps; returning partial result: %s",
                    skip,
                    len(result.swaps),
                    e,
                )
                result.partial = True
                return result

            batch = data.get("swaps") or []
            result.pages += 1
            if not batch:
                reached_end = True
                break

            for raw in batch:
                try:
                    result.swaps.append(self._parse_swap(raw))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed swap %s: %s", raw.get("id"), e)

            logger.debug("Fetched page skip=%d size=%d total=%d", skip, len(batch), len(result.swaps))

            if len(result.swaps) >= max_records:
                break
            if len(batch) < self._page_size:
                reached_end = True
                break

            skip += self._page_size
            if self._page_delay > 0:
                await asyncio.sleep(self._page_delay)

        if len(result.swaps) > max_records:
            del result.swaps[max_records:]
        if not reached_end:
            result.partial = True
            logger.warning(
                "Pagination stopped on limits with %d swaps (skip=%d, max_skip=%d, max_records=%d)",
                len(result.swaps),
                skip,
                max_page_skip,
                max_records,
            )
        return result

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from perp_snapshot.core.cache import TTLCache, make_cache_key
from perp_snapshot.core.errors import DataError, NetworkError
from perp_snapshot.core.models import Bar, TickerStats, bar_from_rest_row, coerce_float, coerce_int

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

H1_EXTRA_ATTEMPT_JITTER_SECONDS = (0.2, 0.4)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 2.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(attempt - 1, 0)))


class BinanceRESTClient:
    """Async Binance USDⓈ-M REST client sharing one keep-alive connection pool."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 6.0,
        retry_policy: RetryPolicy | None = None,
        *,
        min_interval_seconds: float = 0.0,
        max_connections: int = 32,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: TTLCache | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
                keepalive_expiry=60.0,
            ),
            headers={"Accept": "application/json"},
        )
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._min_interval_seconds = min_interval_seconds
        self._last_request_monotonic: float | None = None
        self._pace_lock = asyncio.Lock()
        self._cache = cache or TTLCache()
        self._sleep = sleep

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BinanceRESTClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def request(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        policy: RetryPolicy | None = None,
    ) -> Any:
        policy = policy or self._retry_policy
        max_attempts = max(1, policy.max_attempts)
        last_error: NetworkError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._get_once(path, params)
            except NetworkError as exc:
                last_error = exc
                if attempt >= max_attempts:
                    break
                await self._sleep_before_retry(attempt=attempt, policy=policy, path=path, error=exc)

        if last_error is not None:
            raise last_error
        raise RuntimeError("REST call exhausted retries without a concrete error")

    async def request_cached(
        self,
        path: str,
        params: Mapping[str, Any] | None,
        ttl_seconds: float,
        *,
        policy: RetryPolicy | None = None,
    ) -> Any:
        if ttl_seconds <= 0:
            return await self.request(path, params, policy=policy)
        return await self._cache.get_or_load(
            make_cache_key(path, params),
            lambda: self.request(path, params, policy=policy),
            ttl_seconds,
        )

    async def _get_once(self, path: str, params: Mapping[str, Any] | None) -> Any:
        await self._pace()
        try:
            response = await asyncio.wait_for(
                self._client.get(path, params=dict(params) if params else None),
                timeout=self._timeout_seconds,
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise NetworkError(f"Timeout calling {path}", path=path) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{exc.__class__.__name__} calling {path}", path=path) from exc

        if not 200 <= response.status_code < 300:
            retry_after = None
            if response.status_code in {418, 429}:
                retry_after = self._parse_retry_after_seconds(response)
            raise NetworkError(
                f"HTTP {response.status_code} {path}",
                path=path,
                status_code=response.status_code,
                retry_after_seconds=retry_after,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Malformed JSON body from {path}", path=path, status_code=response.status_code) from exc

    async def _pace(self) -> None:
        if self._min_interval_seconds <= 0:
            return
        async with self._pace_lock:
            now = time.monotonic()
            if self._last_request_monotonic is not None:
                wait = self._min_interval_seconds - (now - self._last_request_monotonic)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request_monotonic = time.monotonic()

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        delay_seconds = float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds())
        return max(0.0, delay_seconds)

    async def _sleep_before_retry(
        self,
        *,
        attempt: int,
        policy: RetryPolicy,
        path: str,
        error: NetworkError,
    ) -> None:
        if error.retry_after_seconds is not None:
            delay = min(error.retry_after_seconds, policy.max_delay_seconds)
        else:
            delay = policy.delay_for(attempt)
        if policy.jitter_seconds > 0:
            delay += random.uniform(0.0, policy.jitter_seconds)  # noqa: S311

        logger.warning(
            "Retrying Binance REST request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "status_code": error.status_code,
                "reason": str(error),
                "sleep_seconds": round(delay, 3),
            },
        )
        await self._sleep(delay)

    async def fetch_server_time(self) -> int:
        payload = await self.request("/fapi/v1/time")
        server_time = coerce_int(payload.get("serverTime")) if isinstance(payload, dict) else None
        if not server_time:
            raise DataError("Invalid serverTime", stage="server_time")
        return server_time

    async def fetch_exchange_info(self, ttl_seconds: float = 0.0) -> dict[str, Any]:
        payload = await self.request_cached("/fapi/v1/exchangeInfo", None, ttl_seconds)
        if not isinstance(payload, dict):
            raise DataError("exchangeInfo payload is not an object", stage="exchange_info")
        return payload

    async def fetch_ticker_24h(self, ttl_seconds: float = 0.0) -> list[TickerStats]:
        payload = await self.request_cached("/fapi/v1/ticker/24hr", None, ttl_seconds)
        if not isinstance(payload, list):
            raise DataError("ticker/24hr payload is not a list", stage="ticker")

        rows: list[TickerStats] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            symbol = item.get("symbol")
            if not isinstance(symbol, str) or not symbol:
                continue
            rows.append(
                TickerStats(
                    symbol=symbol,
                    quote_volume=coerce_float(item.get("quoteVolume")),
                    price_change_percent=coerce_float(item.get("priceChangePercent")),
                    last_price=coerce_float(item.get("lastPrice")),
                    close_time=coerce_int(item.get("closeTime")),
                )
            )
        return rows

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        limit: int,
        *,
        ttl_seconds: float = 0.0,
    ) -> list[Bar]:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        try:
            payload = await self.request_cached("/fapi/v1/klines", params, ttl_seconds)
        except NetworkError:
            if interval != "1h":
                raise
            # one more spaced-out attempt smooths over transient 1h inconsistencies upstream
            await self._sleep(random.uniform(*H1_EXTRA_ATTEMPT_JITTER_SECONDS))  # noqa: S311
            payload = await self.request_cached(
                "/fapi/v1/klines",
                params,
                ttl_seconds,
                policy=replace(self._retry_policy, max_attempts=1),
            )

        if not isinstance(payload, list):
            return []
        bars = [bar_from_rest_row(row) for row in payload]
        return [bar for bar in bars if bar is not None]

    async def fetch_last_closed_kline(self, symbol: str, interval: str, now: int) -> Bar | None:
        """Most recent bar whose close time is before ``now`` (epoch ms).

        The exchange returns the in-progress bar last, so two rows are requested.
        """
        payload = await self.request("/fapi/v1/klines", {"symbol": symbol.upper(), "interval": interval, "limit": 2})
        if not isinstance(payload, list):
            return None
        closed = [bar for bar in map(bar_from_rest_row, payload) if bar is not None and bar.close_time < now]
        if not closed:
            return None
        return closed[-1]

    async def fetch_funding_rate(self, symbol: str) -> float | None:
        payload = await self.request("/fapi/v1/fundingRate", {"symbol": symbol.upper(), "limit": 1})
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
            return None
        return coerce_float(payload[0].get("fundingRate"))

    async def fetch_open_interest(self, symbol: str) -> float | None:
        payload = await self.request("/fapi/v1/openInterest", {"symbol": symbol.upper()})
        if not isinstance(payload, dict):
            return None
        return coerce_float(payload.get("openInterest"))

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from perp_snapshot.core.enums import UniverseStrategy
from perp_snapshot.core.models import TickerStats
from perp_snapshot.sources.rest import BinanceRESTClient

logger = logging.getLogger(__name__)

CORE_SYMBOLS: tuple[str, ...] = ("BTCUSDT", "ETHUSDT")


def _metric(ticker: TickerStats, strategy: UniverseStrategy) -> float | None:
    if strategy is UniverseStrategy.GAINERS:
        return ticker.price_change_percent
    return ticker.quote_volume


def rank_symbols(
    tickers: Iterable[TickerStats],
    n: int,
    strategy: UniverseStrategy = UniverseStrategy.VOLUME,
    *,
    exclude: Iterable[str] = CORE_SYMBOLS,
) -> list[str]:
    """Top ``n`` USDT symbols by the strategy metric, descending, ties by symbol name."""
    if n <= 0:
        return []
    excluded = set(exclude)

    scored: dict[str, float] = {}
    for ticker in tickers:
        if not ticker.symbol.endswith("USDT") or ticker.symbol in excluded:
            continue
        value = _metric(ticker, strategy)
        if value is None:
            continue
        # duplicated rows keep the first occurrence
        scored.setdefault(ticker.symbol, value)

    ordered = sorted(scored.items(), key=lambda item: (-item[1], item[0]))
    return [symbol for symbol, _ in ordered[:n]]


class UniverseSelector:
    def __init__(
        self,
        rest_client: BinanceRESTClient,
        ticker_ttl_seconds: float = 30.0,
        *,
        core_symbols: Sequence[str] = CORE_SYMBOLS,
    ) -> None:
        self._rest = rest_client
        self._ticker_ttl_seconds = ticker_ttl_seconds
        self._core_symbols = tuple(symbol.upper() for symbol in core_symbols)

    async def select_top_n(
        self,
        n: int,
        strategy: UniverseStrategy | str = UniverseStrategy.VOLUME,
        *,
        include_symbols: Sequence[str] = (),
    ) -> list[str]:
        strategy = UniverseStrategy(strategy)
        tickers = await self._rest.fetch_ticker_24h(ttl_seconds=self._ticker_ttl_seconds)
        ranked = rank_symbols(tickers, n, strategy, exclude=self._core_symbols)

        forced = [symbol.upper() for symbol in include_symbols if symbol.upper() not in self._core_symbols]
        if forced:
            merged = list(dict.fromkeys([*forced, *ranked]))
            ranked = merged[: max(n, len(forced))]

        logger.debug(
            "Ranked universe",
            extra={"strategy": strategy.value, "requested": n, "selected": len(ranked)},
        )
        return ranked

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from perp_snapshot.core.config import Settings
from perp_snapshot.core.enums import INTERVAL_LABELS, SideDataMode, UniverseStrategy
from perp_snapshot.core.errors import SnapshotDeadlineError, SnapshotTooLargeError, UniverseIncompleteError
from perp_snapshot.core.models import Bar, CoreAsset, MarketRawSnapshot, TickerStats, UniverseItem
from perp_snapshot.core.time_utils import ms_to_iso, now_ms
from perp_snapshot.pipeline.concurrency import BoundedConcurrencyExecutor, TaskFactory
from perp_snapshot.sources.alt_backfill import H1_INTERVAL, AltH1BackfillCollector
from perp_snapshot.sources.exchange_info import ExchangeInfoCache
from perp_snapshot.sources.rest import BinanceRESTClient, RetryPolicy
from perp_snapshot.sources.universe import CORE_SYMBOLS, UniverseSelector
from perp_snapshot.sources.websocket import StreamingKlineCollector

logger = logging.getLogger(__name__)

BTC_SYMBOL, ETH_SYMBOL = CORE_SYMBOLS


@dataclass(frozen=True, slots=True)
class _KlineResult:
    symbol: str
    interval: str
    bars: list[Bar]
    from_cache: bool


@dataclass(frozen=True, slots=True)
class _SideResult:
    kind: str
    symbol: str
    value: float | None


@dataclass(frozen=True, slots=True)
class _WarmResult:
    symbol: str
    source: str


def latest_m15_close_times(
    core_assets: Sequence[CoreAsset | None],
    universe: Sequence[UniverseItem],
) -> list[int | None]:
    """Newest M15 close per tracked asset; ``None`` marks a core asset without M15 bars."""
    times: list[int | None] = []
    for asset in core_assets:
        bars = asset.klines.get("M15") if asset is not None else None
        times.append(bars[-1].close_time if bars else None)
    for item in universe:
        bars = item.klines.get("M15")
        if bars:
            times.append(bars[-1].close_time)
    return times


def feeds_are_fresh(close_times: Sequence[int | None], now: int, stale_threshold_seconds: float) -> bool:
    threshold_ms = stale_threshold_seconds * 1000
    return all(value is not None and now - value <= threshold_ms for value in close_times)


class SnapshotAssembler:
    """Reconcile streamed and REST market data into one :class:`MarketRawSnapshot`."""

    def __init__(
        self,
        *,
        settings: Settings,
        rest_client: BinanceRESTClient,
        exchange_info: ExchangeInfoCache,
        selector: UniverseSelector,
        collector: StreamingKlineCollector,
        backfill: AltH1BackfillCollector | None = None,
        executor: BoundedConcurrencyExecutor | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._rest = rest_client
        self._exchange_info = exchange_info
        self._selector = selector
        self._collector = collector
        self._backfill = backfill
        self._executor = executor or BoundedConcurrencyExecutor(settings.concurrency)
        self._clock_ms = clock_ms

    @property
    def exchange_info(self) -> ExchangeInfoCache:
        return self._exchange_info

    @property
    def selector(self) -> UniverseSelector:
        return self._selector

    @property
    def collector(self) -> StreamingKlineCollector:
        return self._collector

    @property
    def backfill(self) -> AltH1BackfillCollector | None:
        return self._backfill

    def start(self) -> None:
        self._collector.start()
        if self._backfill is not None:
            self._backfill.start()

    async def close(self) -> None:
        await self._collector.stop()
        if self._backfill is not None:
            await self._backfill.stop()
        await self._rest.close()

    def collector_health(self) -> dict[str, Any]:
        return {
            "klines": self._collector.health(),
            "alt_h1": self._backfill.get_stats() if self._backfill is not None else None,
        }

    async def assemble(
        self,
        *,
        strategy: UniverseStrategy | str | None = None,
        top_n: int | None = None,
        include_symbols: Sequence[str] = (),
    ) -> MarketRawSnapshot:
        deadline = self._settings.global_deadline_seconds
        started = time.perf_counter()
        try:
            async with asyncio.timeout(deadline):
                snapshot = await self._assemble(
                    strategy=UniverseStrategy(strategy or self._settings.universe_strategy),
                    top_n=self._settings.universe_top_n if top_n is None else top_n,
                    include_symbols=include_symbols,
                )
        except TimeoutError as exc:
            raise SnapshotDeadlineError(deadline_seconds=deadline) from exc

        duration_ms = round((time.perf_counter() - started) * 1000)
        logger.info(
            "Snapshot assembled",
            extra={
                "universe": len(snapshot.universe),
                "feeds_ok": snapshot.feeds_ok,
                "warnings": len(snapshot.data_warnings),
                "duration_ms": duration_ms,
            },
        )
        return replace(snapshot, duration_ms=duration_ms)

    async def _assemble(
        self,
        *,
        strategy: UniverseStrategy,
        top_n: int,
        include_symbols: Sequence[str],
    ) -> MarketRawSnapshot:
        settings = self._settings
        warnings: list[str] = []

        filters = await self._exchange_info.get_filters()
        ranked = await self._selector.select_top_n(top_n, strategy, include_symbols=include_symbols)
        await self._collector.set_alt_universe(ranked)
        if self._backfill is not None:
            await self._backfill.update_alt_symbols(ranked)

        alts = [symbol for symbol in ranked if symbol in filters and symbol not in CORE_SYMBOLS]
        for symbol in ranked:
            if symbol not in filters:
                warnings.append(f"not_tradable:{symbol}")

        await self._ensure_h1_warm(alts, warnings)

        klines = await self._collect_klines(alts, warnings)
        funding, open_interest = await self._collect_side_data(alts, warnings)
        tickers = {ticker.symbol: ticker for ticker in await self._rest.fetch_ticker_24h(settings.ticker_ttl_seconds)}

        btc = self._core_asset(BTC_SYMBOL, klines, funding, open_interest, warnings)
        eth = self._core_asset(ETH_SYMBOL, klines, funding, open_interest, warnings)
        universe = self._universe_items(alts, klines, funding, open_interest, tickers, warnings)

        expected = settings.expected_alt_count
        if expected is not None and len(universe) < expected:
            included = {item.symbol for item in universe}
            raise UniverseIncompleteError(
                expected=expected,
                actual=len(universe),
                dropped=[symbol for symbol in alts if symbol not in included],
            )

        assembled_at = self._clock_ms()
        feeds_ok = feeds_are_fresh(
            latest_m15_close_times([btc, eth], universe),
            assembled_at,
            settings.stale_threshold_seconds,
        )

        snapshot = MarketRawSnapshot(
            timestamp=ms_to_iso(assembled_at),
            feeds_ok=feeds_ok,
            btc=btc,
            eth=eth,
            universe=tuple(universe),
            exchange_filters=filters,
            data_warnings=tuple(warnings),
        )
        self._enforce_size(snapshot)
        return snapshot

    async def _ensure_h1_warm(self, alts: list[str], warnings: list[str]) -> None:
        now = self._clock_ms()

        def warm(symbol: str) -> TaskFactory[_WarmResult]:
            async def run() -> _WarmResult:
                if self._collector.get_bars(symbol, H1_INTERVAL, 1):
                    return _WarmResult(symbol, "cache")
                if self._backfill is not None:
                    bar = self._backfill.get_last_closed_h1(symbol)
                    if bar is not None:
                        self._collector.ingest_closed(symbol, H1_INTERVAL, bar)
                        return _WarmResult(symbol, "backfill")
                bar = await self._rest.fetch_last_closed_kline(symbol, H1_INTERVAL, now)
                if bar is None:
                    return _WarmResult(symbol, "missing")
                self._collector.ingest_closed(symbol, H1_INTERVAL, bar)
                return _WarmResult(symbol, "rest")

            return run

        results = await self._executor.run_all([warm(symbol) for symbol in alts], self._settings.concurrency)
        warmed = {result.value.symbol: result.value.source for result in results if result.ok}
        backfilled = sum(1 for source in warmed.values() if source in {"backfill", "rest"})
        drops = [symbol for symbol in alts if warmed.get(symbol, "missing") == "missing"]
        warnings.extend(f"h1_backfill_missing:{symbol}" for symbol in drops)

        if self._backfill is not None:
            self._backfill.report_backfill_metrics(drops, backfilled)
        logger.debug("H1 warm-up finished", extra={"backfilled": backfilled, "missing": len(drops)})

    async def _collect_klines(self, alts: list[str], warnings: list[str]) -> dict[str, dict[str, list[Bar]]]:
        settings = self._settings
        candles = settings.candles

        def fetch(symbol: str, interval: str) -> TaskFactory[_KlineResult]:
            async def run() -> _KlineResult:
                cached = self._collector.get_bars(symbol, interval, candles)
                if len(cached) >= candles:
                    return _KlineResult(symbol, interval, cached, from_cache=True)
                bars = await self._rest.fetch_klines(symbol, interval, candles, ttl_seconds=settings.klines_ttl_seconds)
                return _KlineResult(symbol, interval, bars, from_cache=False)

            return run

        wanted = [(symbol, interval) for symbol in CORE_SYMBOLS for interval in settings.core_intervals]
        wanted.extend((symbol, interval) for symbol in alts for interval in settings.alt_intervals)

        results = await self._executor.run_all([fetch(*pair) for pair in wanted], settings.concurrency)

        klines: dict[str, dict[str, list[Bar]]] = {}
        for result in results:
            if not result.ok or not result.value.bars:
                continue
            label = INTERVAL_LABELS.get(result.value.interval, result.value.interval)
            klines.setdefault(result.value.symbol, {})[label] = result.value.bars

        for symbol, interval in wanted:
            label = INTERVAL_LABELS.get(interval, interval)
            if label not in klines.get(symbol, {}):
                warnings.append(f"klines_missing:{symbol}:{label}")

        cache_hits = sum(1 for result in results if result.ok and result.value.from_cache)
        logger.debug("Kline fan-out finished", extra={"tasks": len(wanted), "cache_hits": cache_hits})
        return klines

    async def _collect_side_data(
        self,
        alts: list[str],
        warnings: list[str],
    ) -> tuple[dict[str, float | None], dict[str, float | None]]:
        settings = self._settings

        def lookup(kind: str, symbol: str) -> TaskFactory[_SideResult]:
            async def run() -> _SideResult:
                if kind == "funding":
                    return _SideResult(kind, symbol, await self._rest.fetch_funding_rate(symbol))
                return _SideResult(kind, symbol, await self._rest.fetch_open_interest(symbol))

            return run

        funding_symbols = list(CORE_SYMBOLS)
        if settings.funding_mode is SideDataMode.UNIVERSE:
            funding_symbols.extend(alts)
        oi_symbols = list(CORE_SYMBOLS)
        if settings.open_interest_mode is SideDataMode.UNIVERSE:
            oi_symbols.extend(alts)

        wanted = [("funding", symbol) for symbol in funding_symbols]
        wanted.extend(("oi", symbol) for symbol in oi_symbols)
        results = await self._executor.run_all([lookup(*pair) for pair in wanted], settings.concurrency)

        funding: dict[str, float | None] = {}
        open_interest: dict[str, float | None] = {}
        for result in results:
            if not result.ok:
                continue
            target = funding if result.value.kind == "funding" else open_interest
            target[result.value.symbol] = result.value.value

        for kind, symbol in wanted:
            if symbol not in (funding if kind == "funding" else open_interest):
                warnings.append(f"{kind}_missing:{symbol}")
        return funding, open_interest

    def _core_asset(
        self,
        symbol: str,
        klines: dict[str, dict[str, list[Bar]]],
        funding: dict[str, float | None],
        open_interest: dict[str, float | None],
        warnings: list[str],
    ) -> CoreAsset | None:
        sets = klines.get(symbol, {})
        if not sets.get("H1") or not sets.get("H4"):
            warnings.append(f"core_incomplete:{symbol}")
            return None
        return CoreAsset(
            klines={label: sets[label] for label in ("H4", "H1", "M15") if label in sets},
            funding=funding.get(symbol),
            oi_now=open_interest.get(symbol),
        )

    def _universe_items(
        self,
        alts: list[str],
        klines: dict[str, dict[str, list[Bar]]],
        funding: dict[str, float | None],
        open_interest: dict[str, float | None],
        tickers: dict[str, TickerStats],
        warnings: list[str],
    ) -> list[UniverseItem]:
        items: list[UniverseItem] = []
        for symbol in alts:
            sets = klines.get(symbol, {})
            if not sets.get("H1"):
                warnings.append(f"dropped_no_h1:{symbol}")
                continue
            ticker = tickers.get(symbol)
            items.append(
                UniverseItem(
                    symbol=symbol,
                    klines={label: sets[label] for label in ("H1", "M15") if label in sets},
                    funding=funding.get(symbol),
                    oi_now=open_interest.get(symbol),
                    volume24h_usd=ticker.quote_volume if ticker is not None else None,
                    last_price=ticker.last_price if ticker is not None else None,
                )
            )
        return items

    def _enforce_size(self, snapshot: MarketRawSnapshot) -> None:
        size = len(snapshot.to_json().encode("utf-8"))
        limit = self._settings.max_snapshot_bytes
        if size > limit:
            raise SnapshotTooLargeError(size=size, limit=limit)


def create_assembler(
    settings: Settings,
    *,
    rest_client: BinanceRESTClient | None = None,
    collector: StreamingKlineCollector | None = None,
    backfill: AltH1BackfillCollector | None = None,
) -> SnapshotAssembler:
    """Composition root: one REST pool, one exchange-info memo and one collector pair per process."""
    rest = rest_client or BinanceRESTClient(
        base_url=settings.rest_base_url,
        timeout_seconds=settings.rest_timeout_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.rest_max_attempts,
            base_delay_seconds=settings.rest_base_delay_seconds,
            max_delay_seconds=settings.rest_max_delay_seconds,
        ),
        min_interval_seconds=settings.rest_min_interval_seconds,
        max_connections=settings.rest_max_connections,
    )
    collector = collector or StreamingKlineCollector(
        base_url=settings.stream_base_url,
        core_symbols=CORE_SYMBOLS,
        core_intervals=settings.core_intervals,
        capacity=settings.ring_capacity,
        reconnect_base_seconds=settings.ws_reconnect_base_seconds,
        reconnect_max_seconds=settings.ws_reconnect_max_seconds,
    )
    backfill = backfill or AltH1BackfillCollector(
        url=settings.backfill_ws_url,
        excluded_symbols=CORE_SYMBOLS,
        reconnect_seconds=settings.backfill_reconnect_seconds,
        drops_limit=settings.backfill_drops_limit,
    )
    return SnapshotAssembler(
        settings=settings,
        rest_client=rest,
        exchange_info=ExchangeInfoCache(rest, ttl_seconds=settings.exchange_info_ttl_seconds),
        selector=UniverseSelector(rest, ticker_ttl_seconds=settings.ticker_ttl_seconds),
        collector=collector,
        backfill=backfill,
        executor=BoundedConcurrencyExecutor(settings.concurrency),
    )

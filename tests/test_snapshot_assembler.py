from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from perp_snapshot.core.config import Settings
from perp_snapshot.core.errors import SnapshotDeadlineError, SnapshotTooLargeError, UniverseIncompleteError
from perp_snapshot.core.models import Bar, MarketRawSnapshot
from perp_snapshot.pipeline.assembler import (
    SnapshotAssembler,
    feeds_are_fresh,
    latest_m15_close_times,
)
from perp_snapshot.pipeline.concurrency import BoundedConcurrencyExecutor
from perp_snapshot.sources.alt_backfill import AltH1BackfillCollector
from perp_snapshot.sources.exchange_info import ExchangeInfoCache
from perp_snapshot.sources.rest import BinanceRESTClient
from perp_snapshot.sources.universe import UniverseSelector
from perp_snapshot.sources.websocket import StreamingKlineCollector

NOW_MS = 1_767_999_600_000 + 60_000
INTERVAL_MS = {"4h": 4 * 3_600_000, "1h": 3_600_000, "15m": 900_000}
CANDLES = 10

SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT", "DOGEUSDT"]
VOLUMES = {"BTCUSDT": 9e9, "ETHUSDT": 5e9, "SOLUSDT": 9e8, "XRPUSDT": 8e8, "DOGEUSDT": 7e8}


def _kline_rows(interval: str, limit: int, *, lag_ms: int = 0) -> list[list[object]]:
    step = INTERVAL_MS[interval]
    last_open = ((NOW_MS - lag_ms) // step) * step - step
    rows = []
    for index in range(limit):
        open_time = last_open - (limit - 1 - index) * step
        rows.append([open_time, "1.0", "1.1", "0.9", "1.05", "1000", open_time + step - 1])
    return rows


def _exchange_symbol(symbol: str, status: str = "TRADING") -> dict[str, object]:
    return {
        "symbol": symbol,
        "status": status,
        "contractType": "PERPETUAL",
        "quoteAsset": "USDT",
        "filters": [
            {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
            {"filterType": "LOT_SIZE", "stepSize": "0.1", "minQty": "0.1"},
            {"filterType": "MIN_NOTIONAL", "notional": "5"},
        ],
    }


class MarketHandler:
    """Routes mocked Binance endpoints and records every request."""

    def __init__(
        self,
        *,
        failing_klines: set[str] = frozenset(),
        stale: set[tuple[str, str]] = frozenset(),
        statuses: dict[str, str] | None = None,
    ) -> None:
        self.failing_klines = failing_klines
        self.stale = stale
        self.statuses = statuses or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path == "/fapi/v1/exchangeInfo":
            payload = {"symbols": [_exchange_symbol(s, self.statuses.get(s, "TRADING")) for s in SYMBOLS]}
            return httpx.Response(200, request=request, json=payload)
        if path == "/fapi/v1/ticker/24hr":
            payload = [
                {"symbol": symbol, "quoteVolume": str(VOLUMES[symbol]), "priceChangePercent": "1.0", "lastPrice": "2.5"}
                for symbol in SYMBOLS
            ]
            return httpx.Response(200, request=request, json=payload)
        if path == "/fapi/v1/klines":
            symbol = params["symbol"]
            interval = params["interval"]
            if symbol in self.failing_klines:
                return httpx.Response(500, request=request)
            lag_ms = 2 * 3_600_000 if (symbol, interval) in self.stale else 0
            return httpx.Response(200, request=request, json=_kline_rows(interval, int(params["limit"]), lag_ms=lag_ms))
        if path == "/fapi/v1/fundingRate":
            return httpx.Response(200, request=request, json=[{"symbol": params["symbol"], "fundingRate": "0.0001"}])
        if path == "/fapi/v1/openInterest":
            return httpx.Response(200, request=request, json={"openInterest": "1234.5"})
        return httpx.Response(404, request=request)

    def kline_requests(self, symbol: str, interval: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.path == "/fapi/v1/klines"
            and request.url.params["symbol"] == symbol
            and request.url.params["interval"] == interval
        ]


class SlowTransport(httpx.AsyncBaseTransport):
    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, request=request, json={})


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"candles": CANDLES, "universe_top_n": 3}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _build(
    settings: Settings,
    transport: httpx.AsyncBaseTransport,
    prepare: Callable[[StreamingKlineCollector], None] | None = None,
    backfill: AltH1BackfillCollector | None = None,
) -> SnapshotAssembler:
    async def no_sleep(seconds: float) -> None:
        return None

    rest = BinanceRESTClient(base_url="https://fapi.binance.com", transport=transport, sleep=no_sleep)
    collector = StreamingKlineCollector(clock_ms=lambda: NOW_MS, capacity=settings.ring_capacity)
    if prepare is not None:
        prepare(collector)
    return SnapshotAssembler(
        settings=settings,
        rest_client=rest,
        exchange_info=ExchangeInfoCache(rest, ttl_seconds=settings.exchange_info_ttl_seconds),
        selector=UniverseSelector(rest, ticker_ttl_seconds=settings.ticker_ttl_seconds),
        collector=collector,
        backfill=backfill or AltH1BackfillCollector(),
        executor=BoundedConcurrencyExecutor(settings.concurrency),
        clock_ms=lambda: NOW_MS,
    )


def _assemble(assembler: SnapshotAssembler, **kwargs: object) -> MarketRawSnapshot:
    async def run() -> MarketRawSnapshot:
        try:
            return await assembler.assemble(**kwargs)
        finally:
            await assembler.close()

    return asyncio.run(run())


def test_snapshot_with_fresh_feeds_is_complete() -> None:
    handler = MarketHandler()
    snapshot = _assemble(_build(_settings(), httpx.MockTransport(handler)))

    assert snapshot.feeds_ok is True
    assert snapshot.data_warnings == ()
    assert [item.symbol for item in snapshot.universe] == ["SOLUSDT", "XRPUSDT", "DOGEUSDT"]
    assert snapshot.btc is not None and snapshot.eth is not None
    assert len(snapshot.btc.klines["H1"]) == CANDLES
    assert len(snapshot.btc.klines["H4"]) == CANDLES
    assert len(snapshot.btc.klines["M15"]) == CANDLES
    assert snapshot.btc.funding == 0.0001
    assert snapshot.btc.oi_now == 1234.5
    assert snapshot.universe[0].oi_now is None
    assert snapshot.universe[0].funding == 0.0001
    assert snapshot.universe[0].volume24h_usd == 9e8
    assert set(snapshot.exchange_filters) == set(SYMBOLS)
    assert snapshot.timestamp.endswith("Z")
    assert snapshot.duration_ms is not None

    decoded = json.loads(snapshot.to_json())
    assert decoded["universe"][0]["klines"]["H1"][-1]["closeTime"].endswith("Z")
    assert decoded["exchange_filters"]["SOLUSDT"]["minNotional"] == 5.0


def test_snapshot_bars_are_ascending_closed_and_bounded() -> None:
    snapshot = _assemble(_build(_settings(), httpx.MockTransport(MarketHandler())))

    assert snapshot.btc is not None
    for bars in [*snapshot.btc.klines.values(), *(item.klines["H1"] for item in snapshot.universe)]:
        assert len(bars) <= CANDLES
        assert all(earlier.open_time < later.open_time for earlier, later in zip(bars, bars[1:]))
        assert all(bar.close_time < NOW_MS for bar in bars)


def test_failing_alt_is_dropped_with_warning() -> None:
    handler = MarketHandler(failing_klines={"DOGEUSDT"})
    snapshot = _assemble(_build(_settings(), httpx.MockTransport(handler)))

    assert [item.symbol for item in snapshot.universe] == ["SOLUSDT", "XRPUSDT"]
    assert "h1_backfill_missing:DOGEUSDT" in snapshot.data_warnings
    assert "klines_missing:DOGEUSDT:H1" in snapshot.data_warnings
    assert "dropped_no_h1:DOGEUSDT" in snapshot.data_warnings
    assert snapshot.feeds_ok is True


def test_stale_alt_m15_flags_feeds_not_ok() -> None:
    handler = MarketHandler(stale={("XRPUSDT", "15m")})
    snapshot = _assemble(_build(_settings(alt_intervals=["1h", "15m"]), httpx.MockTransport(handler)))

    assert len(snapshot.universe) == 3
    assert snapshot.feeds_ok is False


def test_non_tradable_symbol_is_excluded_from_universe() -> None:
    handler = MarketHandler(statuses={"XRPUSDT": "BREAK"})
    snapshot = _assemble(_build(_settings(), httpx.MockTransport(handler)))

    assert [item.symbol for item in snapshot.universe] == ["SOLUSDT", "DOGEUSDT"]
    assert "not_tradable:XRPUSDT" in snapshot.data_warnings
    assert "XRPUSDT" not in snapshot.exchange_filters


def test_cached_bars_skip_rest_fetch() -> None:
    handler = MarketHandler()

    def prepare(collector: StreamingKlineCollector) -> None:
        for row in _kline_rows("4h", CANDLES):
            collector.ingest_closed(
                "BTCUSDT",
                "4h",
                Bar(
                    open_time=row[0],
                    open=1.0,
                    high=1.1,
                    low=0.9,
                    close=1.05,
                    volume=1000.0,
                    close_time=row[6],
                ),
            )

    snapshot = _assemble(_build(_settings(), httpx.MockTransport(handler), prepare))

    assert handler.kline_requests("BTCUSDT", "4h") == []
    assert len(handler.kline_requests("BTCUSDT", "1h")) == 1
    assert snapshot.btc is not None and len(snapshot.btc.klines["H4"]) == CANDLES


def test_hourly_warmup_pushes_last_closed_bar_into_cache() -> None:
    handler = MarketHandler()
    assembler = _build(_settings(), httpx.MockTransport(handler))
    _assemble(assembler)

    warmup_requests = [
        request for request in handler.kline_requests("SOLUSDT", "1h") if request.url.params["limit"] == "2"
    ]
    assert len(warmup_requests) == 1
    assert assembler.collector.get_bars("SOLUSDT", "1h", 5)
    assert assembler.collector_health()["alt_h1"]["last_backfill_count"] == 3


def test_incomplete_universe_raises_retryable_error() -> None:
    handler = MarketHandler(failing_klines={"DOGEUSDT"})
    assembler = _build(_settings(expected_alt_count=3), httpx.MockTransport(handler))

    with pytest.raises(UniverseIncompleteError) as exc_info:
        _assemble(assembler)

    assert exc_info.value.retryable is True
    assert exc_info.value.dropped == ["DOGEUSDT"]
    assert exc_info.value.to_dict()["stage"] == "universe_incomplete"


def test_oversized_snapshot_is_rejected() -> None:
    assembler = _build(_settings(max_snapshot_bytes=1024), httpx.MockTransport(MarketHandler()))

    with pytest.raises(SnapshotTooLargeError):
        _assemble(assembler)


def test_global_deadline_bounds_assembly() -> None:
    assembler = _build(_settings(global_deadline_seconds=0.05), SlowTransport())

    with pytest.raises(SnapshotDeadlineError):
        _assemble(assembler)


def test_feeds_are_fresh_requires_every_core_m15() -> None:
    threshold = 1800
    assert feeds_are_fresh([NOW_MS - 1000, NOW_MS - 2000], NOW_MS, threshold) is True
    assert feeds_are_fresh([NOW_MS - 1000, None], NOW_MS, threshold) is False
    assert feeds_are_fresh([NOW_MS - 1_800_001], NOW_MS, threshold) is False
    assert latest_m15_close_times([None], []) == [None]


def test_backfilled_hourly_bar_replaces_rest_warmup() -> None:
    handler = MarketHandler()
    hour_ms = INTERVAL_MS["1h"]
    open_time = (NOW_MS // hour_ms) * hour_ms - hour_ms
    backfill = AltH1BackfillCollector()
    backfill.handle_message(
        {
            "e": "kline",
            "s": "SOLUSDT",
            "k": {
                "t": open_time,
                "T": open_time + hour_ms - 1,
                "i": "1h",
                "o": "1.0",
                "h": "1.2",
                "l": "0.9",
                "c": "1.15",
                "v": "800",
                "x": True,
            },
        }
    )
    assembler = _build(_settings(), httpx.MockTransport(handler), backfill=backfill)

    snapshot = _assemble(assembler)

    sol_warmups = [
        request for request in handler.kline_requests("SOLUSDT", "1h") if request.url.params["limit"] == "2"
    ]
    xrp_warmups = [
        request for request in handler.kline_requests("XRPUSDT", "1h") if request.url.params["limit"] == "2"
    ]
    assert sol_warmups == []
    assert len(xrp_warmups) == 1
    cached = assembler.collector.get_bars("SOLUSDT", "1h", 1)
    assert len(cached) == 1
    assert cached[0].open_time == open_time
    assert cached[0].close == 1.15
    assert assembler.collector_health()["alt_h1"]["last_backfill_count"] == 3
    assert len(snapshot.universe) == 3


def test_explicit_zero_top_n_yields_empty_universe() -> None:
    snapshot = _assemble(_build(_settings(), httpx.MockTransport(MarketHandler())), top_n=0)

    assert snapshot.universe == ()
    assert snapshot.btc is not None and snapshot.eth is not None
    assert snapshot.feeds_ok is True

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from perp_snapshot.core.models import Bar
from perp_snapshot.sources.websocket import (
    BinanceWebSocketWorker,
    Connector,
    Sleep,
    SubscriptionDiff,
    control_frame,
    default_connector,
    diff_subscriptions,
    parse_kline_event,
    stream_name,
)

logger = logging.getLogger(__name__)

H1_INTERVAL = "1h"


class AltH1BackfillCollector:
    """Dedicated ``@kline_1h`` connection that keeps the last closed H1 bar per alt.

    It exists so a freshly promoted alt has at least one H1 bar by the time a
    snapshot is assembled, before the main collector's subscription catches up.
    """

    def __init__(
        self,
        *,
        url: str = "wss://fstream.binance.com/ws",
        symbols: Iterable[str] = (),
        excluded_symbols: Iterable[str] = ("BTCUSDT", "ETHUSDT"),
        reconnect_seconds: float = 1.0,
        drops_limit: int = 50,
        on_bar: Callable[[str, Bar], None] | None = None,
        connector: Connector = default_connector,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._url = url
        self._excluded = frozenset(symbol.upper() for symbol in excluded_symbols)
        self._symbols: frozenset[str] = self._normalize(symbols)
        self._drops_limit = drops_limit
        self._on_bar = on_bar
        self._bars: dict[str, Bar] = {}
        self._drops_no_h1: list[str] = []
        self._last_backfill_count = 0
        self._subscription_lock = asyncio.Lock()
        self._worker = BinanceWebSocketWorker(
            name="alt-h1",
            url_factory=lambda: self._url,
            on_message=self.handle_message,
            on_connect=self._subscribe_all,
            reconnect_delay=lambda attempt: reconnect_seconds,
            connector=connector,
            sleep=sleep,
        )

    @property
    def symbols(self) -> frozenset[str]:
        return self._symbols

    def start(self) -> None:
        self._worker.start()

    async def stop(self) -> None:
        await self._worker.stop()

    def handle_message(self, message: dict[str, Any]) -> None:
        event = parse_kline_event(message)
        if event is None or event.interval != H1_INTERVAL:
            return
        self._bars[event.symbol] = event.bar
        if self._on_bar is not None:
            self._on_bar(event.symbol, event.bar)

    async def update_alt_symbols(self, symbols: Iterable[str]) -> SubscriptionDiff:
        target = self._normalize(symbols)
        async with self._subscription_lock:
            diff = diff_subscriptions(
                (stream_name(symbol, H1_INTERVAL) for symbol in self._symbols),
                (stream_name(symbol, H1_INTERVAL) for symbol in target),
            )
            if self._worker.connected:
                if diff.subscribe:
                    await self._worker.send_json(control_frame("SUBSCRIBE", diff.subscribe))
                if diff.unsubscribe:
                    await self._worker.send_json(control_frame("UNSUBSCRIBE", diff.unsubscribe))
            self._symbols = target
            self._bars = {symbol: bar for symbol, bar in self._bars.items() if symbol in target}
        return diff

    def get_last_closed_h1(self, symbol: str) -> Bar | None:
        return self._bars.get(symbol.upper())

    def report_backfill_metrics(self, drops: Sequence[str], count: int) -> None:
        self._drops_no_h1 = list(drops)[: self._drops_limit]
        self._last_backfill_count = count

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected": self._worker.connected,
            "alt_h1_subscribed": len(self._symbols),
            "alt_h1_ready": sum(1 for symbol in self._symbols if symbol in self._bars),
            "drops_no_h1": list(self._drops_no_h1),
            "last_backfill_count": self._last_backfill_count,
        }

    async def _subscribe_all(self) -> None:
        if not self._symbols:
            return
        streams = [stream_name(symbol, H1_INTERVAL) for symbol in sorted(self._symbols)]
        await self._worker.send_json(control_frame("SUBSCRIBE", streams))

    def _normalize(self, symbols: Iterable[str]) -> frozenset[str]:
        return frozenset(symbol.upper() for symbol in symbols if symbol and symbol.upper() not in self._excluded)

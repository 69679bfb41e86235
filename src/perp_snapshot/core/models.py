from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from .time_utils import ms_to_iso


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            number = float(normalized)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    number = coerce_float(value)
    if number is None:
        return None
    return int(number)


@dataclass(frozen=True, slots=True)
class Bar:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "openTime": ms_to_iso(self.open_time),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "closeTime": ms_to_iso(self.close_time),
        }


def bar_from_rest_row(row: Any) -> Bar | None:
    """Build a bar from a ``/fapi/v1/klines`` array row; ``None`` when unusable."""
    if not isinstance(row, (list, tuple)) or len(row) < 7:
        return None
    open_time = coerce_int(row[0])
    close_time = coerce_int(row[6])
    prices = [coerce_float(item) for item in row[1:6]]
    if open_time is None or close_time is None or any(item is None for item in prices):
        return None
    open_, high, low, close, volume = prices
    return Bar(
        open_time=open_time,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=volume,
        close_time=close_time,
    )


@dataclass(frozen=True, slots=True)
class ExchangeFilter:
    tick_size: float
    step_size: float
    min_qty: float
    min_notional: float

    def to_dict(self) -> dict[str, float]:
        return {
            "tickSize": self.tick_size,
            "stepSize": self.step_size,
            "minQty": self.min_qty,
            "minNotional": self.min_notional,
        }


@dataclass(frozen=True, slots=True)
class TickerStats:
    symbol: str
    quote_volume: float | None
    price_change_percent: float | None
    last_price: float | None
    close_time: int | None


def _klines_to_dict(klines: dict[str, list[Bar]]) -> dict[str, list[dict[str, Any]]]:
    return {label: [bar.to_dict() for bar in bars] for label, bars in klines.items()}


@dataclass(frozen=True, slots=True)
class CoreAsset:
    klines: dict[str, list[Bar]]
    funding: float | None = None
    oi_now: float | None = None
    oi_hist: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "klines": _klines_to_dict(self.klines),
            "funding": self.funding,
            "oi_now": self.oi_now,
            "oi_hist": list(self.oi_hist),
        }


@dataclass(frozen=True, slots=True)
class UniverseItem:
    symbol: str
    klines: dict[str, list[Bar]]
    funding: float | None = None
    oi_now: float | None = None
    oi_hist: tuple[dict[str, Any], ...] = ()
    depth1pct_usd: float | None = None
    spread_bps: float | None = None
    volume24h_usd: float | None = None
    last_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "klines": _klines_to_dict(self.klines),
            "funding": self.funding,
            "oi_now": self.oi_now,
            "oi_hist": list(self.oi_hist),
            "depth1pct_usd": self.depth1pct_usd,
            "spread_bps": self.spread_bps,
            "volume24h_usd": self.volume24h_usd,
            "last_price": self.last_price,
        }


@dataclass(frozen=True, slots=True)
class MarketRawSnapshot:
    timestamp: str
    feeds_ok: bool
    btc: CoreAsset | None
    eth: CoreAsset | None
    universe: tuple[UniverseItem, ...]
    exchange_filters: dict[str, ExchangeFilter]
    data_warnings: tuple[str, ...] = ()
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "feeds_ok": self.feeds_ok,
            "data_warnings": list(self.data_warnings),
            "btc": self.btc.to_dict() if self.btc is not None else None,
            "eth": self.eth.to_dict() if self.eth is not None else None,
            "universe": [item.to_dict() for item in self.universe],
            "exchange_filters": {symbol: item.to_dict() for symbol, item in self.exchange_filters.items()},
        }
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


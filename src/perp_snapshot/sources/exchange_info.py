from __future__ import annotations

import logging
import time
from typing import Any

from perp_snapshot.core.cache import Clock, TTLCache
from perp_snapshot.core.models import ExchangeFilter, coerce_float
from perp_snapshot.sources.rest import BinanceRESTClient

logger = logging.getLogger(__name__)

_FILTERS_KEY = "exchange_filters"


def parse_exchange_filters(payload: dict[str, Any]) -> dict[str, ExchangeFilter]:
    """Keep actively trading USDT perpetuals whose trading filters are complete and positive."""
    symbols = payload.get("symbols")
    if not isinstance(symbols, list):
        return {}

    filters: dict[str, ExchangeFilter] = {}
    for entry in symbols:
        if not isinstance(entry, dict):
            continue
        symbol = entry.get("symbol")
        if not isinstance(symbol, str) or not symbol:
            continue
        if entry.get("status") != "TRADING":
            continue
        if entry.get("contractType") not in (None, "PERPETUAL"):
            continue
        if entry.get("quoteAsset") not in (None, "USDT"):
            continue

        by_type = {
            item.get("filterType"): item
            for item in entry.get("filters") or []
            if isinstance(item, dict)
        }
        price_filter = by_type.get("PRICE_FILTER", {})
        lot_size = by_type.get("LOT_SIZE", {})
        min_notional = by_type.get("MIN_NOTIONAL", {})

        tick_size = coerce_float(price_filter.get("tickSize"))
        step_size = coerce_float(lot_size.get("stepSize"))
        min_qty = coerce_float(lot_size.get("minQty"))
        notional = coerce_float(min_notional.get("notional", min_notional.get("minNotional")))

        values = (tick_size, step_size, min_qty, notional)
        if any(value is None or value <= 0 for value in values):
            logger.debug("Dropping symbol with incomplete filters", extra={"symbol": symbol})
            continue

        filters[symbol] = ExchangeFilter(
            tick_size=tick_size,
            step_size=step_size,
            min_qty=min_qty,
            min_notional=notional,
        )
    return filters


class ExchangeInfoCache:
    """Process-wide memo of tradable symbols and their trading filters.

    Owned by the composition root. A refresh in progress is shared by every
    concurrent caller; a failed refresh propagates and nothing stale is served.
    """

    def __init__(
        self,
        rest_client: BinanceRESTClient,
        ttl_seconds: float = 600.0,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._rest = rest_client
        self._ttl_seconds = ttl_seconds
        self._memo = TTLCache(clock=clock)

    async def get_filters(self) -> dict[str, ExchangeFilter]:
        filters = await self._memo.get_or_load(_FILTERS_KEY, self._load, self._ttl_seconds)
        return dict(filters)

    def invalidate(self) -> None:
        self._memo.invalidate()

    async def _load(self) -> dict[str, ExchangeFilter]:
        payload = await self._rest.fetch_exchange_info()
        filters = parse_exchange_filters(payload)
        logger.info("Refreshed exchange filters", extra={"symbols": len(filters)})
        return filters

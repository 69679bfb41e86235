from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from perp_snapshot.core.enums import ConnectionState
from perp_snapshot.core.models import Bar, coerce_float, coerce_int
from perp_snapshot.core.time_utils import now_ms

logger = logging.getLogger(__name__)

StreamKey = tuple[str, str]
Connector = Callable[[str], Any]
Sleep = Callable[[float], Awaitable[None]]

_request_ids = itertools.count(1)


def default_connector(url: str) -> Any:
    return websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=20,
        close_timeout=5,
        max_size=2**22,
    )


def stream_name(symbol: str, interval: str) -> str:
    return f"{symbol.lower()}@kline_{interval}"


def control_frame(method: str, streams: Iterable[str]) -> dict[str, Any]:
    return {"method": method, "params": list(streams), "id": next(_request_ids)}


@dataclass(frozen=True, slots=True)
class KlineEvent:
    symbol: str
    interval: str
    bar: Bar


@dataclass(frozen=True, slots=True)
class SubscriptionDiff:
    subscribe: tuple[str, ...] = ()
    unsubscribe: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.subscribe and not self.unsubscribe


def diff_subscriptions(current: Iterable[str], target: Iterable[str]) -> SubscriptionDiff:
    current_set = set(current)
    target_set = set(target)
    return SubscriptionDiff(
        subscribe=tuple(sorted(target_set - current_set)),
        unsubscribe=tuple(sorted(current_set - target_set)),
    )


def parse_kline_event(message: Any) -> KlineEvent | None:
    """Closed kline from a combined (``{"data": ...}``) or raw stream frame, else ``None``."""
    if not isinstance(message, dict):
        return None
    payload = message.get("data") if isinstance(message.get("data"), dict) else message
    kline = payload.get("k")
    if not isinstance(kline, dict):
        return None
    if payload.get("e", "kline") != "kline":
        return None
    if kline.get("x") is not True:
        return None

    symbol = payload.get("s") or kline.get("s")
    interval = kline.get("i")
    if not isinstance(symbol, str) or not isinstance(interval, str):
        return None

    open_time = coerce_int(kline.get("t"))
    close_time = coerce_int(kline.get("T"))
    values = [coerce_float(kline.get(field)) for field in ("o", "h", "l", "c", "v")]
    if open_time is None or close_time is None or any(value is None for value in values):
        return None
    open_, high, low, close, volume = values
    return KlineEvent(
        symbol=symbol.upper(),
        interval=interval,
        bar=Bar(
            open_time=open_time,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
            close_time=close_time,
        ),
    )


class RingBuffer:
    """Fixed-capacity closed bars, ascending by open time, oldest evicted first."""

    def __init__(self, capacity: int = 200) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._bars: deque[Bar] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._bars.maxlen or 0

    def __len__(self) -> int:
        return len(self._bars)

    def push_closed_bar(self, bar: Bar) -> bool:
        if self._bars:
            last = self._bars[-1]
            if bar.open_time == last.open_time:
                self._bars[-1] = bar
                return True
            if bar.open_time < last.open_time:
                for index, existing in enumerate(self._bars):
                    if existing.open_time == bar.open_time:
                        self._bars[index] = bar
                        return True
                # late bar with no slot would break ordering
                return False
        self._bars.append(bar)
        return True

    def last_n(self, n: int) -> list[Bar]:
        if n <= 0 or not self._bars:
            return []
        bars = list(self._bars)
        return bars[-n:]

    def latest(self) -> Bar | None:
        if not self._bars:
            return None
        return self._bars[-1]

    def last_age_ms(self, now: int) -> int | None:
        latest = self.latest()
        if latest is None:
            return None
        return max(0, now - latest.close_time)


class BinanceWebSocketWorker:
    """One reconnecting WebSocket connection.

    Parsed JSON frames go to ``on_message``; ``on_connect`` runs after every
    successful handshake so subscriptions can be replayed.
    """

    def __init__(
        self,
        *,
        name: str,
        url_factory: Callable[[], str],
        on_message: Callable[[dict[str, Any]], None],
        on_connect: Callable[[], Awaitable[None]] | None = None,
        reconnect_delay: Callable[[int], float] = lambda attempt: 2.0,
        connector: Connector = default_connector,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._name = name
        self._url_factory = url_factory
        self._on_message = on_message
        self._on_connect = on_connect
        self._reconnect_delay = reconnect_delay
        self._connector = connector
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._websocket: Any = None
        self._failed_attempts = 0
        self._connections = 0
        self._stopping = False
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def connections(self) -> int:
        return self._connections

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run_forever(), name=f"ws-worker-{self._name}")

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def run_forever(self) -> None:
        while not self._stopping:
            try:
                await self._run_once()
            except ConnectionClosed as exc:
                logger.warning("WebSocket closed", extra={"worker": self._name, "reason": str(exc)})
            except Exception:
                logger.exception("WebSocket worker failed", extra={"worker": self._name})
            finally:
                self._websocket = None
                self._state = ConnectionState.DISCONNECTED

            if self._stopping:
                break
            delay = self._reconnect_delay(self._failed_attempts)
            self._failed_attempts += 1
            logger.info(
                "Scheduling WebSocket reconnect",
                extra={"worker": self._name, "attempt": self._failed_attempts, "sleep_seconds": delay},
            )
            await self._sleep(delay)

    async def _run_once(self) -> None:
        self._state = ConnectionState.CONNECTING
        async with self._connector(self._url_factory()) as websocket:
            self._websocket = websocket
            self._state = ConnectionState.CONNECTED
            self._failed_attempts = 0
            self._connections += 1
            logger.info("WebSocket connected", extra={"worker": self._name})
            if self._on_connect is not None:
                await self._on_connect()

            async for payload in websocket:
                raw_text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
                try:
                    message = json.loads(raw_text)
                except json.JSONDecodeError:
                    logger.debug("Dropping non-JSON WebSocket payload", extra={"worker": self._name})
                    continue
                if isinstance(message, dict):
                    self._on_message(message)

    async def send_json(self, message: dict[str, Any]) -> bool:
        websocket = self._websocket
        if websocket is None or not self.connected:
            return False
        try:
            await websocket.send(json.dumps(message, separators=(",", ":")))
        except ConnectionClosed:
            logger.warning("Control frame dropped on closed socket", extra={"worker": self._name})
            return False
        return True


class StreamingKlineCollector:
    """Closed-kline cache fed by one combined-stream connection.

    Core symbols are subscribed on every interval in ``core_intervals``; the alt
    set only on ``alt_interval`` and is changed incrementally through
    :meth:`set_alt_universe`. Frames are parsed on the receive loop and handed to
    a writer task through a queue; only that writer (and :meth:`ingest_closed`)
    mutates the ring buffers.
    """

    def __init__(
        self,
        *,
        base_url: str = "wss://fstream.binance.com/stream",
        core_symbols: Iterable[str] = ("BTCUSDT", "ETHUSDT"),
        core_intervals: Iterable[str] = ("4h", "1h", "15m"),
        alt_interval: str = "1h",
        alt_symbols: Iterable[str] = (),
        capacity: int = 200,
        reconnect_base_seconds: float = 0.5,
        reconnect_max_seconds: float = 5.0,
        connector: Connector = default_connector,
        sleep: Sleep = asyncio.sleep,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._base_url = base_url
        self._core_symbols = tuple(symbol.upper() for symbol in core_symbols)
        self._core_intervals = tuple(core_intervals)
        self._alt_interval = alt_interval
        self._capacity = capacity
        self._reconnect_base_seconds = reconnect_base_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._clock_ms = clock_ms
        self._rings: dict[StreamKey, RingBuffer] = {}
        self._alt_symbols: frozenset[str] = self._normalize_alts(alt_symbols)
        self._events: asyncio.Queue[KlineEvent] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._subscription_lock = asyncio.Lock()
        self._worker = BinanceWebSocketWorker(
            name="klines",
            url_factory=self._stream_url,
            on_message=self.handle_message,
            on_connect=self._subscribe_all,
            reconnect_delay=self.reconnect_delay,
            connector=connector,
            sleep=sleep,
        )

    @property
    def state(self) -> ConnectionState:
        return self._worker.state

    @property
    def alt_symbols(self) -> frozenset[str]:
        return self._alt_symbols

    def reconnect_delay(self, attempt: int) -> float:
        return min(self._reconnect_max_seconds, self._reconnect_base_seconds * (2**attempt))

    def start(self) -> None:
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = asyncio.create_task(self._drain_events(), name="kline-writer")
        self._worker.start()

    async def stop(self) -> None:
        await self._worker.stop()
        task, self._writer_task = self._writer_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def flush(self) -> None:
        """Wait until every queued event has been written to its buffer."""
        await self._events.join()

    def handle_message(self, message: dict[str, Any]) -> None:
        event = parse_kline_event(message)
        if event is None:
            return
        self._events.put_nowait(event)

    async def _drain_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self.ingest_closed(event.symbol, event.interval, event.bar)
            finally:
                self._events.task_done()

    def ingest_closed(self, symbol: str, interval: str, bar: Bar) -> None:
        key = (symbol.upper(), interval)
        ring = self._rings.get(key)
        if ring is None:
            ring = RingBuffer(self._capacity)
            self._rings[key] = ring
        ring.push_closed_bar(bar)

    def get_bars(self, symbol: str, interval: str, need: int) -> list[Bar]:
        ring = self._rings.get((symbol.upper(), interval))
        if ring is None:
            return []
        return ring.last_n(need)

    async def set_alt_universe(self, symbols: Iterable[str]) -> SubscriptionDiff:
        target = self._normalize_alts(symbols)
        # diff, frames and swap must not interleave with another caller
        async with self._subscription_lock:
            diff = diff_subscriptions(
                (stream_name(symbol, self._alt_interval) for symbol in self._alt_symbols),
                (stream_name(symbol, self._alt_interval) for symbol in target),
            )
            if self._worker.connected:
                if diff.subscribe:
                    await self._worker.send_json(control_frame("SUBSCRIBE", diff.subscribe))
                if diff.unsubscribe:
                    await self._worker.send_json(control_frame("UNSUBSCRIBE", diff.unsubscribe))
            self._alt_symbols = target
        if not diff.is_empty:
            logger.info(
                "Alt universe updated",
                extra={"subscribed": len(diff.subscribe), "unsubscribed": len(diff.unsubscribe)},
            )
        return diff

    def health(self) -> dict[str, Any]:
        now = self._clock_ms()
        return {
            "state": self._worker.state.value,
            "connected": self._worker.connected,
            "streams": len(self._rings),
            "alt_subscribed": len(self._alt_symbols),
            "last_closed_age_ms_by_key": {
                f"{symbol}:{interval}": ring.last_age_ms(now)
                for (symbol, interval), ring in sorted(self._rings.items())
            },
        }

    def subscribed_streams(self) -> list[str]:
        streams = [
            stream_name(symbol, interval) for symbol in self._core_symbols for interval in self._core_intervals
        ]
        streams.extend(stream_name(symbol, self._alt_interval) for symbol in sorted(self._alt_symbols))
        return streams

    async def _subscribe_all(self) -> None:
        streams = self.subscribed_streams()
        if streams:
            await self._worker.send_json(control_frame("SUBSCRIBE", streams))

    def _stream_url(self) -> str:
        base = self._base_url.rstrip("/")
        if base.endswith("/stream"):
            return f"{base}?streams={'/'.join(self.subscribed_streams())}"
        return base

    def _normalize_alts(self, symbols: Iterable[str]) -> frozenset[str]:
        return frozenset(
            symbol.upper() for symbol in symbols if symbol and symbol.upper() not in self._core_symbols
        )

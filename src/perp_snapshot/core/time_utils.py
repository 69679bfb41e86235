from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def ms_to_iso(value_ms: int) -> str:
    moment = datetime.fromtimestamp(value_ms / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


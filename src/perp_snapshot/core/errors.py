from __future__ import annotations

from typing import Any


class SnapshotError(RuntimeError):
    """Base for every failure surfaced by the acquisition layer."""

    stage = "unknown"
    retryable = False

    def __init__(self, message: str, *, stage: str | None = None, symbol: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.symbol = symbol

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "stage": self.stage,
            "symbol": self.symbol,
            "retryable": self.retryable,
        }


class NetworkError(SnapshotError):
    """Timeout, transport failure, non-2xx status or undecodable body."""

    stage = "network"

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
        stage: str | None = None,
        symbol: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage, symbol=symbol)
        self.path = path
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds


class DataError(SnapshotError):
    """A record is missing fields or carries invalid values."""

    stage = "data"


class UniverseIncompleteError(SnapshotError):
    stage = "universe_incomplete"
    retryable = True

    def __init__(self, *, expected: int, actual: int, dropped: list[str] | None = None) -> None:
        super().__init__(f"Universe incomplete: expected {expected} alt symbols, got {actual}")
        self.expected = expected
        self.actual = actual
        self.dropped = list(dropped or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"expected": self.expected, "actual": self.actual, "dropped": self.dropped})
        return payload


class SnapshotTooLargeError(SnapshotError):
    stage = "snapshot_size"

    def __init__(self, *, size: int, limit: int) -> None:
        super().__init__(f"Snapshot too large: {size} bytes > {limit} bytes")
        self.size = size
        self.limit = limit


class SnapshotDeadlineError(SnapshotError):
    stage = "deadline"
    retryable = True

    def __init__(self, *, deadline_seconds: float) -> None:
        super().__init__(f"Snapshot assembly exceeded {deadline_seconds:.1f}s deadline")
        self.deadline_seconds = deadline_seconds

from __future__ import annotations

from datetime import datetime, timezone
import time


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def round_half_up(x: float) -> int:
    """Round to nearest int, halves away from zero for x >= 0 (unlike builtin round)."""
    return int(x + 0.5) if x >= 0 else -int(-x + 0.5)


class Stopwatch:
    """
    Elapsed wall time in milliseconds.

    Usage:
        with Stopwatch() as sw:
            ...
        log.info("done", extra={"extra": {"ms": sw.ms}})
    """

    def __init__(self) -> None:
        self._t0 = 0.0
        self.ms = 0.0

    def __enter__(self) -> "Stopwatch":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        self.ms = (time.perf_counter() - self._t0) * 1e3

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger("kan")

if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

MAX_TIMINGS = 2000

_lock = threading.Lock()
_counters: dict[str, int] = defaultdict(int)
_timings_ms: dict[str, list[float]] = defaultdict(list)


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    payload = {"event": event, "level": logging.getLevelName(level).lower(), **fields}
    logger.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def increment(name: str, value: int = 1) -> None:
    with _lock:
        _counters[name] += value


def observe_ms(name: str, value: float) -> None:
    with _lock:
        series = _timings_ms[name]
        series.append(float(value))
        if len(series) > MAX_TIMINGS:
            del series[:-MAX_TIMINGS]


@contextmanager
def timed(name: str) -> Iterator[None]:
    t0 = time.perf_counter()
    try:
        yield
    finally:
        observe_ms(name, (time.perf_counter() - t0) * 1000.0)


def _p95(values: list[float]) -> float:
    ordered = sorted(values)
    return ordered[max(0, int(0.95 * len(ordered)) - 1)]


def snapshot() -> dict[str, Any]:
    with _lock:
        return {
            "counters": dict(_counters),
            "timings_ms": {
                name: {"count": len(values), "p95": _p95(values) if values else 0.0}
                for name, values in _timings_ms.items()
            },
        }

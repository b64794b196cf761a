# orderflow/infra/timings.py
from __future__ import annotations
import statistics
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List

# recent samples per kind; oldest fall off once MAX_SAMPLES is reached
MAX_SAMPLES = 5_000


@dataclass
class _Series:
    samples: Deque[float] = field(
        default_factory=lambda: deque(maxlen=MAX_SAMPLES)
    )
    calls: int = 0
    errors: int = 0


_SERIES: Dict[str, _Series] = {}


def clock() -> float:
    return time.perf_counter()


def record_timing(kind: str, value: float, failed: bool = False) -> None:
    s = _SERIES.get(kind)
    if s is None:
        s = _SERIES[kind] = _Series()
    s.samples.append(float(value))
    s.calls += 1
    if failed:
        s.errors += 1


class timeit:
    """Time an awaited block and file it under ``kind``.

        async with timeit("gateway.create_charge"):
            await gateway.create_charge(...)

    A block that raises still records its duration and counts as an error.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = clock()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, clock() - self._t0,
                      failed=exc_type is not None)


def _summary(kind: str, s: _Series) -> Dict[str, Any]:
    vals = sorted(s.samples)
    if not vals:
        return {"kind": kind, "calls": s.calls, "errors": s.errors,
                "mean": 0.0, "std": 0.0, "p95": 0.0}
    p95 = vals[min(len(vals) - 1, int(len(vals) * 0.95))]
    return {
        "kind": kind,
        "calls": s.calls,
        "errors": s.errors,
        "mean": statistics.fmean(vals),
        "std": statistics.pstdev(vals) if len(vals) > 1 else 0.0,
        "p95": p95,
    }


def aggregates() -> List[Dict[str, Any]]:
    return [_summary(k, s) for k, s in sorted(_SERIES.items())]


def reset() -> None:
    _SERIES.clear()

"""
In-process latency samples, served by `/api/admin/timings`.

Samples are appended on the hot path and only reduced to mean/std when
someone asks. Everything runs on one event loop, so no locking.
"""
from __future__ import annotations
import statistics
import time
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List

_SAMPLES: DefaultDict[str, List[float]] = defaultdict(list)


class timeit:
    """Record how long the wrapped block takes under `kind`.

        async with timeit("gateway.push"):
            await gateway.initiate_push(...)
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self) -> "timeit":
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        _SAMPLES[self.kind].append(time.perf_counter() - self.started)


def aggregates() -> List[Dict[str, Any]]:
    out = []
    for kind in sorted(_SAMPLES):
        samples = _SAMPLES[kind]
        out.append({
            "kind": kind,
            "n": len(samples),
            "mean": statistics.fmean(samples),
            "std": statistics.pstdev(samples),
        })
    return out

# tikiti/infra/timings.py
"""
In-process latency samples.

Hot paths only append a float per sample; aggregation happens when someone
asks (the admin timings route, or the shutdown flush to a collector).
Kinds are dotted: "db.*" for units of work, "gateway.*" for Daraja calls.
"""
from __future__ import annotations
import gzip
import json
import os
import socket
import statistics
import time
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI

_SAMPLES: Dict[str, List[float]] = {}


def record_timing(kind: str, value: float) -> None:
    _SAMPLES.setdefault(kind, []).append(float(value))


def reset() -> None:
    _SAMPLES.clear()


class timeit:
    """async with timeit("gateway.stkpush"): ...

    Recorded whether or not the body raises; a failing Daraja call costs
    time too.
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self.started)


def _p95(ordered: List[float]) -> float:
    # nearest rank
    rank = max(1, -(-95 * len(ordered) // 100))
    return ordered[rank - 1]


def _aggregate(vals: List[float]) -> Dict[str, float]:
    ordered = sorted(vals)
    return {
        "n": len(ordered),
        "mean": statistics.fmean(ordered),
        "std": statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        "p95": _p95(ordered),
        "max": ordered[-1],
    }


def snapshot(prefix: str = "") -> Dict[str, Dict[str, float]]:
    """{"db.create_order": {"n", "mean", "std", "p95", "max"}, ...}"""
    return {
        kind: _aggregate(vals)
        for kind, vals in sorted(_SAMPLES.items())
        if vals and kind.startswith(prefix)
    }


async def flush_to_collector(
    metrics_url: str,
    run_id: str,
    client: Optional[httpx.AsyncClient] = None,
    worker_id: Optional[str] = None,
) -> int:
    """
    POST one gzipped NDJSON line per kind to {metrics_url}/v1/metric/flush.
    Samples are dropped only after the collector acknowledged them; the
    accepted count is returned.
    """
    aggregates = snapshot()
    if not aggregates:
        return 0

    body = gzip.compress(b"".join(
        json.dumps({"kind": kind, **agg}, separators=(",", ":")).encode()
        + b"\n"
        for kind, agg in aggregates.items()
    ))
    headers = {
        "content-type": "application/x-ndjson",
        "content-encoding": "gzip",
        "x-run-id": run_id,
        "x-worker-id": worker_id or f"{os.getpid()}@{socket.gethostname()}",
    }
    url = f"{metrics_url.rstrip('/')}/v1/metric/flush"

    if client is None:
        async with httpx.AsyncClient(timeout=10.0) as own:
            r = await own.post(url, content=body, headers=headers)
    else:
        r = await client.post(url, content=body, headers=headers)
    r.raise_for_status()

    reset()
    return int(r.json().get("accepted", 0))


def install_shutdown_flush(app: FastAPI) -> None:
    """Flush on shutdown when METRICS_URL and METRICS_RUN_ID are set."""

    @app.on_event("shutdown")
    async def _flush_timings():
        metrics_url = os.getenv("METRICS_URL", "")
        run_id = os.getenv("METRICS_RUN_ID", "")
        if not metrics_url or not run_id:
            return
        try:
            accepted = await flush_to_collector(metrics_url, run_id)
        except httpx.HTTPError as e:
            print(f"timings flush to {metrics_url} failed: {e}")
            return
        print(f"timings flushed to {metrics_url}: {accepted} kinds accepted")

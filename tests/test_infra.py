import gzip
import json

import httpx
import pytest

from tikiti.helpers import money_str, to_cents, to_js_iso
from tikiti.infra import timings
from tikiti.infra.sql import async_url, backend_name


@pytest.mark.parametrize("url,expected", [
    ("sqlite:///./t.db", "sqlite+aiosqlite:///./t.db"),
    ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
])
def test_async_url(url, expected):
    assert async_url(url) == expected


def test_backend_name():
    assert backend_name("sqlite:///x.db") == "SQLite"
    assert backend_name("postgres://h/db") == "PostgreSQL"


def test_money():
    assert to_cents("1000") == 100000
    assert to_cents("19.999") == 2000
    assert money_str(150) == "1.50"
    assert money_str(None) is None
    with pytest.raises(ValueError):
        to_cents("NaN")


def test_js_iso():
    assert to_js_iso(0.5) == "1970-01-01T00:00:00.500Z"


async def test_timings_snapshot():
    for _ in range(2):
        async with timings.timeit("db.x"):
            pass
    snap = timings.snapshot()
    assert snap["db.x"]["n"] == 2
    assert snap["db.x"]["mean"] >= 0.0
    assert snap["db.x"]["max"] >= snap["db.x"]["p95"]


def test_snapshot_aggregates_and_prefix():
    for v in range(1, 21):
        timings.record_timing("db.order", v / 100)
    timings.record_timing("gateway.token", 0.5)

    snap = timings.snapshot("db.")
    assert list(snap) == ["db.order"]
    agg = snap["db.order"]
    assert agg["n"] == 20
    assert agg["p95"] == pytest.approx(0.19)
    assert agg["max"] == pytest.approx(0.20)
    assert agg["mean"] == pytest.approx(0.105)


async def test_flush_to_collector():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"accepted": 2})

    timings.record_timing("db.a", 0.1)
    timings.record_timing("gateway.b", 0.2)
    async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)) as client:
        accepted = await timings.flush_to_collector(
            "http://collector/", "run-1", client=client, worker_id="w1")

    assert accepted == 2
    req = seen[0]
    assert str(req.url) == "http://collector/v1/metric/flush"
    assert req.headers["x-run-id"] == "run-1"
    assert req.headers["x-worker-id"] == "w1"
    lines = gzip.decompress(req.content).decode().splitlines()
    assert [json.loads(line)["kind"] for line in lines] == ["db.a",
                                                            "gateway.b"]
    assert timings.snapshot() == {}


async def test_flush_keeps_samples_on_collector_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    timings.record_timing("db.a", 0.1)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await timings.flush_to_collector("http://collector", "run-1",
                                             client=client)
    assert timings.snapshot()["db.a"]["n"] == 1


async def test_flush_without_samples_sends_nothing():
    assert await timings.flush_to_collector("http://collector", "r") == 0


async def test_timeit_records_on_error():
    with pytest.raises(RuntimeError):
        async with timings.timeit("gateway.x"):
            raise RuntimeError("boom")
    assert timings.snapshot()["gateway.x"]["n"] == 1

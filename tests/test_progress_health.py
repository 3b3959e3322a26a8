import asyncio
from collections import namedtuple

import pytest

from chainstream.application.health import HealthMonitor, overall_status
from chainstream.application.metrics import MetricsCollector
from chainstream.application.progress import ProgressChannel
from chainstream.application.provider_pool import ProviderPool
from chainstream.domain.errors import RPCError
from chainstream.domain.models import ProgressEvent, ProviderHealthSnapshot

from conftest import FakeTransport


def _event(sid="s1", n=0, status="backfilling"):
    return ProgressEvent(type="progress", session_id=sid, status=status, progress=float(n),
                         current_chunk=n, total_chunks=10, message=f"chunk {n}")


@pytest.mark.asyncio
async def test_fan_out_by_session_and_wildcard():
    channel = ProgressChannel(maxsize=10)
    only_s1 = channel.subscribe("s1")
    everything = channel.subscribe()
    assert channel.publish(_event("s1", 1)) == 2
    assert channel.publish(_event("s2", 2)) == 1

    assert (await only_s1.get()).current_chunk == 1
    assert only_s1.pending() == 0
    assert [(await everything.get()).session_id for _ in range(2)] == ["s1", "s2"]
    assert channel.last_event("s2").current_chunk == 2


@pytest.mark.asyncio
async def test_slow_subscriber_is_dropped_without_blocking():
    channel = ProgressChannel(maxsize=2)
    slow = channel.subscribe("s1")
    fast = channel.subscribe("s1")
    for n in range(2):
        channel.publish(_event(n=n))
    assert (await fast.get()).current_chunk == 0
    assert (await fast.get()).current_chunk == 1

    assert channel.publish(_event(n=2)) == 1
    assert slow.dropped and slow.closed
    assert channel.subscriber_count == 1
    assert channel.dropped_subscribers == 1
    assert [e async for e in slow] == []


@pytest.mark.asyncio
async def test_async_iteration_ends_on_close():
    channel = ProgressChannel()
    sub = channel.subscribe("s1")

    async def collect():
        return [e.current_chunk async for e in sub]

    task = asyncio.create_task(collect())
    for n in range(3):
        channel.publish(_event(n=n))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    channel.close()
    received = await asyncio.wait_for(task, timeout=1)
    assert received == list(range(len(received)))
    assert channel.subscriber_count == 0


@pytest.mark.parametrize("counts,expected", [
    ([], "healthy"),
    ([(2, 0), (1, 1)], "healthy"),
    ([(2, 0), (0, 2)], "degraded"),
    ([(0, 2), (0, 1)], "down"),
])
def test_overall_status(counts, expected):
    chains = [ProviderHealthSnapshot(chain=f"c{i}", healthy=h, unhealthy=u) for i, (h, u) in enumerate(counts)]
    assert overall_status(chains) == expected


class _Sessions:
    def sessions_by_state(self):
        return {"backfilling": 2, "failed": 1}


@pytest.mark.asyncio
async def test_monitor_samples_pool_and_sessions(settings):
    settings.unhealthy_threshold = 1
    settings.rpc_urls = {"ethereum": ["https://a.example", "https://b.example"]}

    def handler(url):
        def answer(method, params):
            if url.startswith("https://a"):
                raise RPCError("down")
            return "0x1"
        return answer

    pool = ProviderPool.for_chain(settings, "ethereum", transport_factory=lambda ep: FakeTransport(ep.url, handler(ep.url)))
    monitor = HealthMonitor(pool, _Sessions(), interval_s=0.01, history_size=3)
    assert monitor.snapshot.overall == "healthy"      # nothing probed yet

    await pool.probe_all()
    snap = monitor.sample()
    assert snap.overall == "healthy"
    assert (snap.chains[0].healthy, snap.chains[0].unhealthy) == (1, 1)
    assert snap.sessions_by_state == {"backfilling": 2, "failed": 1}
    d = snap.to_dict()
    assert d["chains"]["ethereum"]["unhealthy"] == 1
    assert len(d["chains"]["ethereum"]["endpoints"]) == 2

    monitor.start()
    await asyncio.sleep(0.05)
    await monitor.stop()
    assert len(monitor.history) == 3


Usage = namedtuple("Usage", "total used free")


def _healthy_pool(settings):
    settings.rpc_urls = {"ethereum": ["https://a.example"]}
    return ProviderPool.for_chain(settings, "ethereum",
                                  transport_factory=lambda ep: FakeTransport(ep.url, lambda m, p: "0x1"))


def test_low_disk_space_degrades_and_alerts(settings):
    monitor = HealthMonitor(_healthy_pool(settings), data_dir=settings.data_dir / "not-yet-created",
                            disk_usage=lambda path: Usage(total=1_000, used=950, free=50))
    snap = monitor.sample()
    assert snap.overall == "degraded"
    assert snap.storage["healthy"] is False and snap.storage["free_percent"] == 5.0
    assert [(a.level, a.message) for a in monitor.alerts] == [
        ("warning", "Low disk space"), ("warning", "System health degraded")]
    assert snap.to_dict()["storage"]["free_bytes"] == 50


def test_enough_disk_space_is_healthy(settings):
    monitor = HealthMonitor(_healthy_pool(settings), data_dir=settings.data_dir,
                            disk_usage=lambda path: Usage(total=1_000, used=500, free=500))
    snap = monitor.sample()
    assert snap.overall == "healthy"
    assert snap.storage["free_percent"] == 50.0
    assert list(monitor.alerts) == []


@pytest.mark.asyncio
async def test_unreachable_chain_raises_error_alert_and_alerts_are_bounded(settings):
    settings.unhealthy_threshold = 1
    settings.rpc_urls = {"ethereum": ["https://a.example"]}

    def down(method, params):
        raise RPCError("down")

    pool = ProviderPool.for_chain(settings, "ethereum", transport_factory=lambda ep: FakeTransport(ep.url, down))
    monitor = HealthMonitor(pool, max_alerts=5)
    await pool.probe_all()
    snap = monitor.sample()
    assert snap.overall == "down"
    assert monitor.alerts[-1].level == "error"
    assert monitor.alerts[-1].data == {"chains": ["ethereum"]}
    for _ in range(10):
        monitor.sample()
    assert len(monitor.alerts) == 5
    assert len(monitor.recent_alerts(3)) == 3


def test_metrics_collector_rates():
    now = [100.0]
    metrics = MetricsCollector(latency_window=3, clock=lambda: now[0])
    assert metrics.rpc_success_rate() == 100.0
    assert metrics.user_stats("u1") is None

    metrics.record_chunk("u1", 200, 2.0)
    metrics.record_chunk("u2", 100, 1.0)
    metrics.record_error("u1")
    for ok, ms in ((True, 10), (True, 20), (False, 30), (True, 40)):
        metrics.record_rpc(ok, ms)
    now[0] = 110.0

    assert metrics.blocks_per_second() == 30.0
    assert metrics.rpc_success_rate() == 75.0
    assert metrics.avg_rpc_latency_ms() == 30.0         # last three only
    assert metrics.user_stats("u1") == {"blocks_processed": 200, "chunks_processed": 1,
                                        "processing_seconds": 2.0, "errors": 1, "avg_chunk_seconds": 2.0}
    snap = metrics.snapshot()
    assert snap["chunks_processed"] == 2 and snap["avg_chunk_seconds"] == 1.5
    assert snap["active_users"] == 2


@pytest.mark.asyncio
async def test_pool_calls_feed_metrics(settings):
    settings.rpc_urls = {"ethereum": ["https://a.example", "https://b.example"]}

    def handler(url):
        def answer(method, params):
            if url.startswith("https://a"):
                raise RPCError("down")
            return "0x1"
        return answer

    pool = ProviderPool.for_chain(settings, "ethereum", transport_factory=lambda ep: FakeTransport(ep.url, handler(ep.url)))
    assert await pool.call("ethereum", "eth_blockNumber") == "0x1"
    assert (pool.metrics.rpc_requests, pool.metrics.rpc_failures) == (2, 1)
    snap = HealthMonitor(pool).sample()
    assert snap.metrics["rpc_success_rate"] == 50.0

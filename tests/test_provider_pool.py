import asyncio

import pytest

from chainstream.application.provider_pool import ProviderPool
from chainstream.domain.errors import ProviderExhausted, RPCError, UnsupportedChain

from conftest import FakeTransport

URLS = ["https://primary.example", "https://secondary.example", "https://tertiary.example"]


def _pool(settings, handlers, chain="ethereum"):
    """Pool whose endpoints answer through ``handlers[url]``."""
    settings.rpc_urls = {chain: list(handlers)}
    transports = {}

    def factory(ep):
        transports[ep.url] = FakeTransport(ep.url, handlers[ep.url])
        return transports[ep.url]

    return ProviderPool.for_chain(settings, chain, transport_factory=factory), transports


def _fail(method, params):
    raise RPCError("HTTP 502", code=502)


def _ok(method, params):
    return "0x10"


@pytest.mark.asyncio
async def test_failover_to_second_priority(settings):
    pool, transports = _pool(settings, {URLS[0]: _fail, URLS[1]: _ok})
    for _ in range(5):
        assert await pool.call("ethereum", "eth_blockNumber") == "0x10"
    primary, secondary = pool.endpoints("ethereum")
    assert primary.total_failures == settings.unhealthy_threshold
    assert not primary.is_healthy
    assert secondary.is_healthy and secondary.consecutive_failures == 0
    assert secondary.last_latency_ms is not None
    # once unhealthy the primary is skipped
    assert len(transports[URLS[0]].calls) == settings.unhealthy_threshold
    assert len(transports[URLS[1]].calls) == 5


@pytest.mark.asyncio
async def test_all_endpoints_failing_raises_exhausted(settings):
    pool, _ = _pool(settings, {URLS[0]: _fail, URLS[1]: _fail})
    with pytest.raises(ProviderExhausted) as exc:
        await pool.call("ethereum", "eth_getLogs", [{}])
    assert exc.value.chain == "ethereum"
    assert exc.value.method == "eth_getLogs"
    assert isinstance(exc.value.last_error, RPCError)


@pytest.mark.asyncio
async def test_all_unhealthy_still_tried(settings):
    settings.unhealthy_threshold = 1
    answers = {"n": 0}

    def recovers(method, params):
        answers["n"] += 1
        if answers["n"] == 1:
            raise RPCError("down")
        return "0x1"

    pool, _ = _pool(settings, {URLS[0]: recovers})
    with pytest.raises(ProviderExhausted):
        await pool.call("ethereum", "eth_blockNumber")
    assert not pool.endpoints("ethereum")[0].is_healthy
    assert await pool.call("ethereum", "eth_blockNumber") == "0x1"
    assert pool.endpoints("ethereum")[0].is_healthy


@pytest.mark.asyncio
async def test_timeout_fails_over_without_stalling(settings):
    settings.rpc_timeout_s = 0.05

    async def hang(method, params):
        await asyncio.sleep(10)

    class SlowTransport:
        url = URLS[0]

        async def call(self, method, params):
            await hang(method, params)

        async def aclose(self):
            pass

    settings.rpc_urls = {"ethereum": URLS[:2]}
    fast = FakeTransport(URLS[1], _ok)
    pool = ProviderPool.for_chain(
        settings, "ethereum",
        transport_factory=lambda ep: SlowTransport() if ep.priority == 0 else fast)
    result = await asyncio.wait_for(pool.call("ethereum", "eth_blockNumber"), timeout=1)
    assert result == "0x10"
    assert "timed out" in pool.endpoints("ethereum")[0].last_error


@pytest.mark.asyncio
async def test_passthrough_code_is_an_answer(settings):
    def not_found(method, params):
        raise RPCError("Contract not found", code=20)

    pool, transports = _pool(settings, {URLS[0]: not_found, URLS[1]: _ok}, chain="starknet")
    with pytest.raises(RPCError) as exc:
        await pool.call("starknet", "starknet_getClassHashAt", [{"block_number": 1}, "0x1"], passthrough_codes=(20,))
    assert exc.value.code == 20
    assert pool.endpoints("starknet")[0].consecutive_failures == 0
    assert transports[URLS[1]].calls == []


@pytest.mark.asyncio
async def test_probe_marks_and_recovers(settings):
    settings.unhealthy_threshold = 2
    state = {"up": False}

    def flappy(method, params):
        if not state["up"]:
            raise RPCError("down")
        return "0x5"

    pool, transports = _pool(settings, {URLS[0]: flappy, URLS[1]: _ok})
    await pool.probe_all()
    await pool.probe_all()
    snap = pool.health_snapshot("ethereum")[0]
    assert (snap.healthy, snap.unhealthy, snap.total) == (1, 1, 2)
    assert transports[URLS[0]].calls[0][0] == "eth_blockNumber"

    state["up"] = True
    assert (await pool.probe_all())[URLS[0]] is True
    assert pool.health_snapshot("ethereum")[0].healthy == 2


@pytest.mark.asyncio
async def test_health_loop_runs_in_background(settings):
    settings.health_check_interval_s = 0.01
    pool, transports = _pool(settings, {URLS[0]: _ok})
    pool.start_health_checks()
    await asyncio.sleep(0.05)
    await pool.aclose()
    assert len(transports[URLS[0]].calls) >= 2
    assert transports[URLS[0]].closed


def test_single_chain_initialization(settings):
    pool = ProviderPool.for_chain(settings, "lisk", transport_factory=lambda ep: FakeTransport(ep.url, _ok))
    assert pool.chains == ["lisk"]
    all_chains = ProviderPool(settings, transport_factory=lambda ep: FakeTransport(ep.url, _ok))
    assert set(all_chains.chains) == {"ethereum", "lisk", "starknet"}
    with pytest.raises(UnsupportedChain):
        pool.ensure_chain("dogechain")

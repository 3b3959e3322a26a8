"""
Provider Pool.

Holds the ranked RPC endpoints of each chain, executes a call against the best
healthy endpoint with failover, and probes every endpoint on a fixed interval.
One pool per process; chains are initialized eagerly (all, or only the target
chain) or lazily on first use.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Collection, Iterable, Sequence

import httpx
from loguru import logger

from ..adapters.rpc_httpx import HttpxRPC
from ..config import CHAINS, ChainConfig, Settings, get_chain
from ..domain.errors import ProviderExhausted, RPCError
from ..domain.models import Endpoint, ProviderHealthSnapshot
from ..domain.value_types import ChainId
from ..ports.rpc import RPCTransport
from .metrics import MetricsCollector
from .rate_limit import TokenBucket

TransportFactory = Callable[[Endpoint], RPCTransport]

LIVENESS_METHOD = {"evm": "eth_blockNumber", "starknet": "starknet_blockNumber"}

_FAILOVER_ERRORS = (RPCError, httpx.HTTPError, OSError, asyncio.TimeoutError)


class ProviderPool:
    def __init__(
        self,
        settings: Settings,
        *,
        chains: Iterable[str] | None = None,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or MetricsCollector(clock=clock)
        self._factory = transport_factory or self._default_transport
        self._clock = clock
        self._configs: dict[ChainId, ChainConfig] = {}
        self._endpoints: dict[ChainId, list[Endpoint]] = {}
        self._transports: dict[tuple[ChainId, str], RPCTransport] = {}
        self._limiters: dict[ChainId, TokenBucket] = {}
        self._health_task: asyncio.Task[None] | None = None
        for chain in (CHAINS if chains is None else chains):
            self.ensure_chain(chain)

    @classmethod
    def for_chain(cls, settings: Settings, chain: str, **kwargs: Any) -> "ProviderPool":
        """Initialize only the target chain's endpoints."""
        return cls(settings, chains=[chain], **kwargs)

    def _default_transport(self, ep: Endpoint) -> RPCTransport:
        return HttpxRPC(ep.url, timeout_s=self.settings.rpc_timeout_s)

    # ---------- registry ----------------------------------------------------

    def ensure_chain(self, chain: str) -> ChainConfig:
        cfg = get_chain(chain)
        if cfg.chain_id in self._endpoints:
            return cfg
        urls = self.settings.endpoints_for(cfg.chain_id)
        eps = [Endpoint(url=u, chain=cfg.chain_id, priority=i) for i, u in enumerate(urls)]
        self._configs[cfg.chain_id] = cfg
        self._endpoints[cfg.chain_id] = eps
        for ep in eps:
            self._transports[(cfg.chain_id, ep.url)] = self._factory(ep)
        self._limiters[cfg.chain_id] = TokenBucket(self.settings.requests_per_second, clock=self._clock)
        logger.info(f"[Pool] {cfg.chain_id}: {len(eps)} endpoints initialized")
        return cfg

    @property
    def chains(self) -> list[ChainId]:
        return list(self._endpoints)

    def chain_config(self, chain: str) -> ChainConfig:
        return self.ensure_chain(chain)

    def endpoints(self, chain: str) -> list[Endpoint]:
        cfg = self.ensure_chain(chain)
        return sorted(self._endpoints[cfg.chain_id], key=lambda e: e.priority)

    def _ranked(self, chain: ChainId) -> list[Endpoint]:
        eps = self.endpoints(chain)
        healthy = [e for e in eps if e.is_healthy]
        if not healthy:
            logger.warning(f"[Pool] all {chain} endpoints unhealthy, trying every endpoint in priority order")
            return eps
        return healthy

    # ---------- calls -------------------------------------------------------

    async def call(
        self,
        chain: str,
        method: str,
        params: Sequence[Any] = (),
        *,
        passthrough_codes: Collection[int] = (),
    ) -> Any:
        """
        Execute ``method`` against the ranked endpoints of ``chain``.

        RPC errors whose code is in ``passthrough_codes`` are answers, not endpoint
        failures: they are raised immediately and do not count against health.
        Raises ProviderExhausted once every endpoint has failed.
        """
        cfg = self.ensure_chain(chain)
        limiter = self._limiters[cfg.chain_id]
        last_error: BaseException | None = None
        for ep in self._ranked(cfg.chain_id):
            await limiter.acquire()
            started = self._clock()
            try:
                result = await asyncio.wait_for(
                    self._transports[(cfg.chain_id, ep.url)].call(method, params),
                    timeout=self.settings.rpc_timeout_s,
                )
            except RPCError as e:
                if e.code is not None and e.code in passthrough_codes:
                    await self._record_success(ep, started)
                    raise
                last_error = e
            except _FAILOVER_ERRORS as e:
                last_error = e if not isinstance(e, asyncio.TimeoutError) else RPCError(
                    f"{method} timed out after {self.settings.rpc_timeout_s}s", endpoint=ep.url)
            else:
                await self._record_success(ep, started)
                self.metrics.record_rpc(True, (self._clock() - started) * 1000.0)
                return result
            await self._record_failure(ep, last_error)
            self.metrics.record_rpc(False, (self._clock() - started) * 1000.0)
            logger.warning(f"[Pool] {cfg.chain_id}.{method} failed on {ep.url} (priority {ep.priority}): {last_error}")
        logger.error(f"[Pool] {cfg.chain_id}.{method}: all providers exhausted")
        raise ProviderExhausted(cfg.chain_id, method, last_error)

    async def _record_success(self, ep: Endpoint, started: float) -> None:
        async with ep.lock:
            ep.last_latency_ms = (self._clock() - started) * 1000.0
            ep.consecutive_failures = 0
            ep.last_checked_at = time.time()
            ep.last_error = None
            if not ep.is_healthy:
                logger.info(f"[Pool] {ep.chain} endpoint recovered: {ep.url}")
            ep.is_healthy = True

    async def _record_failure(self, ep: Endpoint, error: BaseException | None) -> None:
        async with ep.lock:
            ep.consecutive_failures += 1
            ep.total_failures += 1
            ep.last_checked_at = time.time()
            ep.last_error = str(error) if error is not None else None
            if ep.is_healthy and ep.consecutive_failures >= self.settings.unhealthy_threshold:
                ep.is_healthy = False
                logger.warning(f"[Pool] endpoint marked unhealthy: {ep.url} ({ep.consecutive_failures} failures)")

    # ---------- health probing ---------------------------------------------

    async def probe(self, ep: Endpoint) -> bool:
        method = LIVENESS_METHOD[self._configs[ep.chain].family]
        await self._limiters[ep.chain].acquire()
        started = self._clock()
        try:
            await asyncio.wait_for(self._transports[(ep.chain, ep.url)].call(method, []),
                                   timeout=self.settings.rpc_timeout_s)
        except _FAILOVER_ERRORS as e:
            await self._record_failure(ep, e)
            logger.debug(f"[Pool] probe failed {ep.url}: {type(e).__name__}: {e}")
            return False
        await self._record_success(ep, started)
        return True

    async def probe_all(self) -> dict[str, bool]:
        eps = [ep for chain_eps in self._endpoints.values() for ep in chain_eps]
        results = await asyncio.gather(*(self.probe(ep) for ep in eps))
        return {ep.url: ok for ep, ok in zip(eps, results)}

    async def _health_loop(self) -> None:
        while True:
            await self.probe_all()
            await asyncio.sleep(self.settings.health_check_interval_s)

    def start_health_checks(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="provider-health")

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def health_snapshot(self, chain: str | None = None) -> list[ProviderHealthSnapshot]:
        chains = [get_chain(chain).chain_id] if chain is not None else list(self._endpoints)
        out: list[ProviderHealthSnapshot] = []
        for c in chains:
            eps = self.endpoints(c)
            healthy = sum(1 for e in eps if e.is_healthy)
            out.append(ProviderHealthSnapshot(
                chain=c, healthy=healthy, unhealthy=len(eps) - healthy,
                endpoints=tuple(e.health_dict() for e in eps),
            ))
        return out

    async def aclose(self) -> None:
        await self.stop_health_checks()
        for t in self._transports.values():
            await t.aclose()

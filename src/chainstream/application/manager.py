"""
Session Manager: supervises concurrent Indexing Sessions.

At most one live session per (user, contract, chain); a duplicate start returns
the running handle. ``shutdown_all`` parks every session in ``paused`` (each one
writes its checkpoint) and abandons whatever has not acknowledged in time. The
health monitor runs from the first start until shutdown.
"""
from __future__ import annotations

import asyncio
import os
import signal
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from ..adapters.checkpoint_json import JsonCheckpointStore, safe_name
from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_sink import ParquetTransactionStore
from ..config import Settings, get_chain
from ..domain.errors import SessionNotFound, ShuttingDown
from ..domain.models import SessionCheckpoint
from ..domain.normalize import normalize_address
from ..domain.tiers import TierLimits, get_tier
from ..domain.value_types import SessionId
from ..ports.rpc import ContractFetcher
from ..ports.storage import CheckpointStore
from .deployment import DeploymentBlockLocator
from .fetchers import make_fetcher
from .health import HealthMonitor
from .progress import ProgressChannel
from .provider_pool import ProviderPool
from .session import IndexingSession, checkpoint_status, make_session_id
from .validation import HorizontalValidator

FetcherFactory = Callable[[str, TierLimits], ContractFetcher]


@dataclass(slots=True)
class SessionHandle:
    session: IndexingSession
    task: asyncio.Task

    @property
    def session_id(self) -> SessionId:
        return self.session.session_id

    @property
    def status(self) -> str:
        return self.session.status

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> SessionCheckpoint | None:
        return await self.task


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        pool: ProviderPool,
        *,
        channel: ProgressChannel | None = None,
        checkpoints: CheckpointStore | None = None,
        locator: DeploymentBlockLocator | None = None,
        fetcher_factory: FetcherFactory | None = None,
    ) -> None:
        self.settings = settings
        self.pool = pool
        self.channel = channel or ProgressChannel(settings.progress_queue_size)
        self.checkpoints = checkpoints or JsonCheckpointStore(settings.data_dir)
        self.locator = locator or DeploymentBlockLocator(probe_attempts=settings.locator_probe_attempts)
        self.validator = HorizontalValidator(gap_warning_blocks=settings.gap_warning_blocks)
        self.metrics = pool.metrics
        self.monitor = HealthMonitor(pool, self, interval_s=settings.monitor_interval_s,
                                     data_dir=settings.data_dir, metrics=self.metrics)
        self._fetcher_factory = fetcher_factory or (lambda chain, tier: make_fetcher(self.pool, chain, tier))
        self._sessions: dict[SessionId, SessionHandle] = {}
        self._stores: dict[tuple[str, str], ParquetTransactionStore] = {}
        self._lock = asyncio.Lock()
        self._shutting_down = False
        self._shutdown_task: asyncio.Task | None = None

    # ---------- lookup -------------------------------------------------------

    def get(self, session_id: str) -> SessionHandle | None:
        return self._sessions.get(SessionId(session_id))

    def _require(self, session_id: str) -> SessionHandle:
        handle = self.get(session_id)
        if handle is None:
            raise SessionNotFound(session_id)
        return handle

    @property
    def handles(self) -> list[SessionHandle]:
        return list(self._sessions.values())

    def active(self) -> list[SessionHandle]:
        return [h for h in self._sessions.values() if not h.done()]

    def store_for(self, address: str, chain: str) -> ParquetTransactionStore:
        key = (chain, address.lower())
        if key not in self._stores:
            self._stores[key] = ParquetTransactionStore(self.settings.data_dir, address, chain)
        return self._stores[key]

    def manifest_path(self, session_id: str) -> str:
        return os.path.join(os.fspath(self.settings.data_dir), "manifests", f"{safe_name(session_id)}.jsonl")

    # ---------- lifecycle ----------------------------------------------------

    async def start(self, user_id: str, contract_address: str, chain: str, tier: str | TierLimits) -> SessionHandle:
        cfg = get_chain(chain)
        address = normalize_address(contract_address, cfg.family)
        limits = get_tier(tier)
        session_id = make_session_id(user_id, address, cfg.chain_id)
        async with self._lock:
            if self._shutting_down:
                raise ShuttingDown(f"cannot start {session_id}: manager is shutting down")
            existing = self._sessions.get(session_id)
            if existing is not None and not existing.done():
                logger.info(f"[Manager] {session_id} already running ({existing.status}), returning existing handle")
                return existing

            session = IndexingSession(
                user_id=user_id, contract_address=address, chain=cfg.chain_id, tier=limits,
                fetcher=self._fetcher_factory(cfg.chain_id, limits),
                checkpoints=self.checkpoints,
                sink=self.store_for(address, cfg.chain_id),
                settings=self.settings,
                blocks_per_day=cfg.blocks_per_day,
                locator=self.locator,
                validator=self.validator,
                manifest=JSONLManifest(self.manifest_path(session_id)),
                channel=self.channel,
                metrics=self.metrics,
            )
            self.monitor.start()
            task = asyncio.create_task(session.run(), name=f"session:{session_id}")
            task.add_done_callback(self._on_done)
            handle = SessionHandle(session=session, task=task)
            self._sessions[session_id] = handle
        logger.info(f"[Manager] started {session_id} (tier={limits.name})")
        return handle

    @staticmethod
    def _on_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Manager] {task.get_name()} ended with {type(exc).__name__}: {exc}")

    async def stop(self, session_id: str, *, wait: bool = True) -> dict[str, Any]:
        handle = self._require(session_id)
        handle.session.stop("requested")
        if wait and not handle.done():
            await asyncio.gather(handle.task, return_exceptions=True)
        return handle.session.status_dict()

    async def pause(self, session_id: str) -> dict[str, Any]:
        handle = self._require(session_id)
        handle.session.pause()
        return handle.session.status_dict()

    async def resume(self, session_id: str) -> dict[str, Any]:
        handle = self._require(session_id)
        handle.session.resume()
        return handle.session.status_dict()

    async def get_status(self, session_id: str) -> dict[str, Any]:
        handle = self.get(session_id)
        if handle is not None:
            return handle.session.status_dict()
        cp = await self.checkpoints.load(SessionId(session_id))
        if cp is None:
            raise SessionNotFound(session_id)
        return checkpoint_status(cp)

    def sessions_by_state(self) -> dict[str, int]:
        return dict(Counter(h.status for h in self._sessions.values()))

    # ---------- shutdown -----------------------------------------------------

    async def shutdown_all(self, timeout: float | None = None) -> dict[str, int]:
        """Pause every session, wait for acknowledgement, then cancel the workers."""
        timeout = self.settings.shutdown_timeout_s if timeout is None else timeout
        async with self._lock:
            self._shutting_down = True
            live = self.active()
        await self.monitor.stop()
        if not live:
            return {"paused": 0, "abandoned": 0}

        logger.info(f"[Manager] shutting down {len(live)} session(s), timeout {timeout}s")
        for h in live:
            h.session.pause()
        waiters = {asyncio.create_task(h.session.wait_paused()): h for h in live}
        done, pending = await asyncio.wait(waiters, timeout=timeout)
        for w in pending:
            w.cancel()
            logger.warning(f"[Manager] {waiters[w].session_id} did not pause within {timeout}s, abandoning")

        for h in live:
            if not h.done():
                h.task.cancel()
        await asyncio.gather(*(h.task for h in live), *pending, return_exceptions=True)
        logger.info(f"[Manager] shutdown complete: {len(done)} paused, {len(pending)} abandoned")
        return {"paused": len(done), "abandoned": len(pending)}

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"[Manager] signal handler for {sig.name} not supported on this platform")

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_task is not None:
            return
        logger.warning(f"[Manager] received {sig.name}, shutting down")
        self._shutdown_task = asyncio.create_task(self.shutdown_all(), name="shutdown-all")

    async def wait_shutdown(self) -> None:
        if self._shutdown_task is not None:
            await self._shutdown_task

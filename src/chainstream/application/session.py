"""
Indexing Session: one (user, contract, chain) ingestion lifecycle.

    initializing -> backfilling -> live-polling
                         |              |
                         +-> stopped <--+      (paused / failed reachable from any active state)

Chunks are processed strictly in order. A chunk is fetched, validated, upserted
and only then is the checkpoint advanced and durably written, so a crash resumes
at ``last_confirmed_block + 1``. Pause and stop are cooperative: they are checked
before every chunk and interrupt the live-polling sleep, never an in-flight call.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from ..config import Settings
from ..domain.errors import ChainstreamError, ContractNotFound, LimitReached, LocatorFailure, ValidationFailure
from ..domain.models import Chunk, ChunkManifestRecord, ProgressEvent, SessionCheckpoint
from ..domain.tiers import TierLimits, get_tier
from ..domain.value_types import Address, EventType, SessionId, SessionStatus, StopReason, TERMINAL_STATUSES
from ..ports.rpc import ContractFetcher
from ..ports.storage import CheckpointStore, ManifestSink, TransactionSink
from .deployment import DeploymentBlockLocator
from .planning import plan_chunks, plan_start_block
from .metrics import MetricsCollector
from .progress import ProgressChannel
from .validation import HorizontalValidator

_CHUNK_ERRORS = (ChainstreamError, OSError)


def make_session_id(user_id: str, contract_address: str, chain: str) -> SessionId:
    return SessionId(f"{user_id}:{chain}:{contract_address.lower()}")


def budget_month(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m")


class IndexingSession:
    def __init__(
        self,
        *,
        user_id: str,
        contract_address: Address,
        chain: str,
        tier: str | TierLimits,
        fetcher: ContractFetcher,
        checkpoints: CheckpointStore,
        sink: TransactionSink,
        settings: Settings,
        blocks_per_day: int,
        locator: DeploymentBlockLocator | None = None,
        validator: HorizontalValidator | None = None,
        manifest: ManifestSink | None = None,
        channel: ProgressChannel | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_id = user_id
        self.address = contract_address
        self.chain = chain
        self.tier = get_tier(tier)
        self.session_id = make_session_id(user_id, contract_address, chain)
        self.fetcher = fetcher
        self.checkpoints = checkpoints
        self.sink = sink
        self.settings = settings
        self.blocks_per_day = blocks_per_day
        self.locator = locator or DeploymentBlockLocator(probe_attempts=settings.locator_probe_attempts)
        self.validator = validator or HorizontalValidator(gap_warning_blocks=settings.gap_warning_blocks)
        self.manifest = manifest
        self.channel = channel
        self.metrics = metrics
        self._clock = clock

        self.checkpoint: SessionCheckpoint | None = None
        self.plan: list[Chunk] = []
        self._in_flight: Chunk | None = None
        self.caught_up = asyncio.Event()
        self.finished = asyncio.Event()
        self._signal = asyncio.Event()
        self._paused_ack = asyncio.Event()
        self._pause_requested = False
        self._stop_requested = False
        self._stop_reason: StopReason = "requested"
        self._resume_status: SessionStatus = "backfilling"
        self._tag = f"[Session {self.session_id}]"

    # ------------------------------------------------------------------ control

    @property
    def status(self) -> SessionStatus:
        return self.checkpoint.status if self.checkpoint else "initializing"

    def pause(self) -> None:
        self._pause_requested = True
        self._paused_ack.clear()
        self._signal.set()

    def resume(self) -> None:
        self._pause_requested = False
        self._signal.set()

    def stop(self, reason: StopReason = "requested") -> None:
        self._stop_requested = True
        self._stop_reason = reason
        self._signal.set()

    async def wait_paused(self) -> None:
        """Returns once the session has parked in ``paused`` or has finished."""
        await self._paused_ack.wait()

    def progress(self) -> float:
        cp = self.checkpoint
        if cp is None or cp.start_block is None or cp.target_block is None:
            return 0.0
        total = cp.target_block - cp.start_block + 1
        if total <= 0:
            return 100.0
        done = 0 if cp.last_confirmed_block is None else cp.last_confirmed_block - cp.start_block + 1
        return round(max(0.0, min(100.0, done * 100.0 / total)), 2)

    def current_step(self) -> str:
        cp = self.checkpoint
        if cp is None:
            return "initializing"
        if cp.status == "backfilling":
            return f"backfilling chunk {min(cp.current_chunk_index + 1, cp.total_chunks)}/{cp.total_chunks}"
        if cp.status == "live-polling":
            return f"live-polling from block {cp.next_block()}"
        if cp.status == "stopped" and cp.stop_reason:
            return f"stopped ({cp.stop_reason})"
        return cp.status

    def status_dict(self) -> dict[str, Any]:
        return checkpoint_status(self.checkpoint, progress=self.progress(), current_step=self.current_step(),
                                 session_id=self.session_id)

    # --------------------------------------------------------------- lifecycle

    async def run(self) -> SessionCheckpoint | None:
        try:
            if not await self._initialize():
                return self.checkpoint
            if not await self._backfill():
                return self.checkpoint
            if self.tier.continuous_sync:
                await self._live_poll()
            else:
                await self._finish("completed", f"backfill complete at block {self.checkpoint.last_confirmed_block}")
            return self.checkpoint
        except asyncio.CancelledError:
            logger.warning(f"{self._tag} cancelled in {self.status}; checkpoint at block "
                           f"{self.checkpoint.last_confirmed_block if self.checkpoint else None}")
            raise
        except Exception as e:
            logger.exception(f"{self._tag} crashed: {e}")
            if self.checkpoint is not None and self.checkpoint.status not in TERMINAL_STATUSES:
                if self._in_flight is not None:
                    self.checkpoint.failed_chunk = self._failed_chunk(self._in_flight, f"{type(e).__name__}: {e}")
                await self._fail(f"internal error: {type(e).__name__}: {e}")
            raise
        finally:
            self.finished.set()
            self._paused_ack.set()

    async def _initialize(self) -> bool:
        cp = await self.checkpoints.load(self.session_id)
        if cp is None:
            cp = SessionCheckpoint(
                session_id=self.session_id, user_id=self.user_id,
                contract_address=self.address, chain=self.chain, tier=self.tier.name,
            )
        self.checkpoint = cp
        previous_tier = cp.tier
        cp.status = "initializing"
        cp.tier = self.tier.name
        cp.chunk_size = self.settings.chunk_size
        cp.max_blocks_per_month = self.tier.max_blocks_per_month
        cp.max_history_blocks = self.tier.history_blocks(self.blocks_per_day)
        cp.stop_reason = None
        cp.failed_chunk = None

        try:
            head = await self.fetcher.fetch_block_number()
        except ChainstreamError as e:
            return await self._fail(f"cannot read head block: {e}")

        if cp.start_block is not None and cp.last_confirmed_block is None and previous_tier != cp.tier:
            # nothing confirmed yet, so the history window of the new tier applies
            logger.info(f"{self._tag} tier changed {previous_tier} -> {cp.tier} before any chunk was confirmed; "
                        f"re-deriving start block")
            cp.start_block = None
        if cp.start_block is None:
            if not await self._locate_start(cp, head):
                return False
        else:
            logger.info(f"{self._tag} resuming from block {cp.next_block()} (chunk {cp.current_chunk_index})")

        nxt = cp.next_block()
        self.plan = plan_chunks(nxt, head, self.settings.chunk_size, first_index=cp.current_chunk_index)
        cp.target_block = max(head, cp.last_confirmed_block or 0)
        cp.total_chunks = cp.current_chunk_index + len(self.plan)
        await self._transition("backfilling", f"planned {len(self.plan)} chunk(s) for blocks {nxt}..{head}")
        return True

    async def _locate_start(self, cp: SessionCheckpoint, head: int) -> bool:
        deployment: int | None = None
        cp.degraded_start = False
        try:
            deployment = await self.locator.find_deployment_block(self.fetcher, self.address, head=head)
        except ContractNotFound as e:
            await self._fail(str(e))
            return False
        except LocatorFailure as e:
            cp.degraded_start = True
            logger.warning(f"{self._tag} degraded start, deployment block unknown: {e}")
        cp.deployment_block = deployment
        cp.start_block = plan_start_block(deployment, head, cp.max_history_blocks,
                                          fallback_window=self.settings.fallback_window_blocks)
        cp.last_confirmed_block = None
        cp.current_chunk_index = 0
        logger.info(f"{self._tag} start block {cp.start_block} (deployment={deployment}, head={head})")
        return True

    async def _backfill(self) -> bool:
        for chunk in self.plan:
            if not await self._gate():
                return False
            if not await self._run_budgeted(chunk):
                return False
        return True

    async def _live_poll(self) -> None:
        cp = self.checkpoint
        self._emit("completion", f"backfill complete at block {cp.last_confirmed_block}")
        await self._transition("live-polling", f"caught up at block {cp.last_confirmed_block}")
        self.caught_up.set()
        while True:
            if not await self._gate():
                return
            try:
                head = await self.fetcher.fetch_block_number()
            except ChainstreamError as e:
                logger.warning(f"{self._tag} head poll failed, retrying in {self.settings.polling_interval_s}s: {e}")
                head = None
            nxt = cp.next_block()
            if head is not None and nxt is not None and nxt <= head:
                chunk = Chunk(index=cp.current_chunk_index, start=nxt, end=head)
                cp.target_block = head
                cp.total_chunks = chunk.index + 1
                if not await self._run_budgeted(chunk):
                    return
            await self._sleep(self.settings.polling_interval_s)

    # ------------------------------------------------------------------ chunks

    async def _run_budgeted(self, chunk: Chunk) -> bool:
        allowed = await self._within_budget(chunk)
        if allowed is None or not await self._process_chunk(allowed):
            return False
        if allowed.end < chunk.end:
            await self._limit_reached(chunk.end - allowed.end)
            return False
        return True

    async def _process_chunk(self, chunk: Chunk) -> bool:
        self._in_flight = chunk
        ok = await self._attempt_chunk(chunk)
        self._in_flight = None
        return ok

    async def _attempt_chunk(self, chunk: Chunk) -> bool:
        cp = self.checkpoint
        max_attempts = self.settings.max_chunk_attempts
        last_error: BaseException | None = None
        issues: tuple[str, ...] = ()
        while chunk.attempts < max_attempts:
            chunk.attempts += 1
            chunk.status = "fetching"
            await self._record(chunk)
            started = time.monotonic()
            try:
                data = await self.fetcher.fetch_range(self.address, chunk.start, chunk.end)
                chunk.status = "validating"
                result = self.validator.validate(chunk, data)
                if not result.ok:
                    raise ValidationFailure(result.errors)
                written = await self.sink.upsert_chunk(chunk, data.transactions)
            except _CHUNK_ERRORS as e:
                last_error = e
                issues = tuple(str(i) for i in getattr(e, "issues", ()))
                chunk.status = "failed"
                chunk.last_error = f"{type(e).__name__}: {e}"
                await self._record(chunk)
                if self.metrics is not None:
                    self.metrics.record_error(self.user_id)
                logger.warning(f"{self._tag} chunk {chunk.index} [{chunk.start}, {chunk.end}] "
                               f"attempt {chunk.attempts}/{max_attempts} failed: {chunk.last_error}")
                if chunk.attempts < max_attempts:
                    await self._backoff(chunk.attempts)
                continue

            chunk.status = "persisted"
            chunk.last_error = None
            chunk.warnings = (*data.warnings, *(str(w) for w in result.warnings))
            for w in result.warnings:
                logger.warning(f"{self._tag} chunk {chunk.index}: {w}")
            cp.last_confirmed_block = chunk.end
            cp.current_chunk_index = chunk.index + 1
            cp.total_chunks = max(cp.total_chunks, cp.current_chunk_index)
            cp.blocks_fetched_month += chunk.span()
            cp.transactions_persisted += written
            cp.last_message = (f"chunk {chunk.index} [{chunk.start}, {chunk.end}] persisted: "
                               f"{written} transaction(s), {len(data.events)} event(s)")
            await self.checkpoints.save(cp)
            await self._record(chunk, transactions=len(data.transactions), events=len(data.events))
            if self.metrics is not None:
                self.metrics.record_chunk(self.user_id, chunk.span(), time.monotonic() - started)
            logger.info(f"{self._tag} {cp.last_message}")
            self._emit("progress", cp.last_message)
            return True

        cp.failed_chunk = self._failed_chunk(chunk, chunk.last_error, issues)
        await self._fail(f"chunk {chunk.index} [{chunk.start}, {chunk.end}] failed after "
                         f"{chunk.attempts} attempt(s): {last_error}")
        return False

    @staticmethod
    def _failed_chunk(chunk: Chunk, error: str | None, issues: tuple[str, ...] = ()) -> dict[str, Any]:
        return {
            "index": chunk.index,
            "start": chunk.start,
            "end": chunk.end,
            "attempts": chunk.attempts,
            "error": error,
            "issues": list(issues),
        }

    async def _backoff(self, attempt: int) -> None:
        delay = self.settings.retry_base_s * self.settings.retry_factor ** (attempt - 1)
        if delay > 0:
            await asyncio.sleep(delay)

    async def _within_budget(self, chunk: Chunk) -> Chunk | None:
        """The part of ``chunk`` the monthly block budget still allows, or None once it is spent."""
        cp = self.checkpoint
        month = budget_month(self._clock())
        if cp.budget_month != month:
            cp.budget_month = month
            cp.blocks_fetched_month = 0
        budget = cp.max_blocks_per_month
        if budget is None or cp.blocks_fetched_month + chunk.span() <= budget:
            return chunk
        remaining = budget - cp.blocks_fetched_month
        if remaining <= 0:
            await self._limit_reached(chunk.span())
            return None
        logger.info(f"{self._tag} chunk {chunk.index} truncated to {remaining} block(s) by the monthly budget")
        return Chunk(index=chunk.index, start=chunk.start, end=chunk.start + remaining - 1)

    async def _limit_reached(self, requested: int) -> None:
        cp = self.checkpoint
        limit = LimitReached(cp.blocks_fetched_month, cp.max_blocks_per_month, requested)
        logger.info(f"{self._tag} {limit}")
        await self._finish("limit_reached", str(limit))

    async def _record(self, chunk: Chunk, *, transactions: int = 0, events: int = 0) -> None:
        if self.manifest is None:
            return
        await self.manifest.append(ChunkManifestRecord(
            session_id=self.session_id, chunk_index=chunk.index,
            from_block=chunk.start, to_block=chunk.end,
            status=chunk.status, attempts=chunk.attempts, error=chunk.last_error,
            transactions=transactions, events=events, warnings=len(chunk.warnings),
            updated_at=self._clock(),
        ))

    # ------------------------------------------------------- pause/stop gates

    async def _gate(self) -> bool:
        """False once the session has stopped; blocks while paused."""
        while True:
            if self._stop_requested:
                await self._finish(self._stop_reason, f"stopped ({self._stop_reason})")
                return False
            if not self._pause_requested:
                if self.status == "paused":
                    await self._transition(self._resume_status, "resumed")
                return True
            if self.status != "paused":
                self._resume_status = self.status
                await self._transition("paused", f"paused at block {self.checkpoint.last_confirmed_block}")
            self._paused_ack.set()
            self._signal.clear()
            await self._signal.wait()

    async def _sleep(self, seconds: float) -> None:
        if self._pause_requested or self._stop_requested:
            return
        self._signal.clear()
        try:
            await asyncio.wait_for(self._signal.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------ transitions

    async def _transition(self, status: SessionStatus, message: str) -> None:
        cp = self.checkpoint
        cp.status = status
        cp.last_message = message
        await self.checkpoints.save(cp)
        logger.info(f"{self._tag} -> {status}: {message}")
        self._emit("progress", message)

    async def _finish(self, reason: StopReason, message: str) -> None:
        cp = self.checkpoint
        cp.status = "stopped"
        cp.stop_reason = reason
        cp.last_message = message
        await self.checkpoints.save(cp)
        logger.info(f"{self._tag} stopped ({reason}): {message}")
        self._emit("completion", message)

    async def _fail(self, message: str) -> bool:
        cp = self.checkpoint
        cp.status = "failed"
        cp.last_message = message
        await self.checkpoints.save(cp)
        logger.error(f"{self._tag} failed: {message}")
        self._emit("error", message)
        return False

    def _emit(self, kind: EventType, message: str) -> None:
        if self.channel is None:
            return
        cp = self.checkpoint
        self.channel.publish(ProgressEvent(
            type=kind, session_id=self.session_id, status=self.status,
            progress=self.progress(),
            current_chunk=cp.current_chunk_index if cp else 0,
            total_chunks=cp.total_chunks if cp else 0,
            message=message, timestamp=self._clock(),
        ))


def checkpoint_status(cp: SessionCheckpoint | None, *, progress: float | None = None,
                      current_step: str | None = None, session_id: str | None = None) -> dict[str, Any]:
    """Status view of a session; also used for sessions only known from disk."""
    if cp is None:
        return {"session_id": session_id, "status": "initializing", "progress": 0.0,
                "current_step": "initializing", "current_chunk": 0, "total_chunks": 0,
                "last_confirmed_block": None, "last_message": "", "stop_reason": None, "failed_chunk": None}
    if progress is None:
        span = (cp.target_block - cp.start_block + 1) if cp.target_block is not None and cp.start_block is not None else 0
        done = (cp.last_confirmed_block - cp.start_block + 1) if cp.last_confirmed_block is not None and span else 0
        progress = round(max(0.0, min(100.0, done * 100.0 / span)), 2) if span > 0 else 0.0
    return {
        "session_id": cp.session_id,
        "status": cp.status,
        "progress": progress,
        "current_step": current_step or cp.status,
        "current_chunk": cp.current_chunk_index,
        "total_chunks": cp.total_chunks,
        "last_confirmed_block": cp.last_confirmed_block,
        "last_message": cp.last_message,
        "stop_reason": cp.stop_reason,
        "failed_chunk": cp.failed_chunk,
    }

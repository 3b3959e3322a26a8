from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable


@dataclass(slots=True)
class WorkCounters:
    blocks_processed: int = 0
    chunks_processed: int = 0
    processing_seconds: float = 0.0
    errors: int = 0

    def avg_chunk_seconds(self) -> float:
        return self.processing_seconds / self.chunks_processed if self.chunks_processed else 0.0


class MetricsCollector:
    """
    In-process throughput counters: blocks and chunks per user, RPC outcomes and
    a rolling window of RPC latencies. Shared by the provider pool and every
    session of one manager; nothing here is persisted.
    """

    def __init__(self, *, latency_window: int = 100, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.started_at = clock()
        self.totals = WorkCounters()
        self.users: dict[str, WorkCounters] = {}
        self.rpc_requests = 0
        self.rpc_failures = 0
        self.rpc_latencies_ms: deque[float] = deque(maxlen=latency_window)

    def _user(self, user_id: str) -> WorkCounters:
        return self.users.setdefault(user_id, WorkCounters())

    def record_chunk(self, user_id: str, blocks: int, seconds: float) -> None:
        for c in (self.totals, self._user(user_id)):
            c.blocks_processed += blocks
            c.chunks_processed += 1
            c.processing_seconds += seconds

    def record_error(self, user_id: str) -> None:
        self.totals.errors += 1
        self._user(user_id).errors += 1

    def record_rpc(self, success: bool, latency_ms: float) -> None:
        self.rpc_requests += 1
        if not success:
            self.rpc_failures += 1
        self.rpc_latencies_ms.append(latency_ms)

    # ---------- derived -----------------------------------------------------

    def uptime_s(self) -> float:
        return max(0.0, self._clock() - self.started_at)

    def blocks_per_second(self) -> float:
        elapsed = self.uptime_s()
        return self.totals.blocks_processed / elapsed if elapsed > 0 else 0.0

    def rpc_success_rate(self) -> float:
        """Percent of RPC calls that succeeded; 100 before the first call."""
        if not self.rpc_requests:
            return 100.0
        return (self.rpc_requests - self.rpc_failures) * 100.0 / self.rpc_requests

    def avg_rpc_latency_ms(self) -> float:
        lat = self.rpc_latencies_ms
        return sum(lat) / len(lat) if lat else 0.0

    def user_stats(self, user_id: str) -> dict[str, Any] | None:
        c = self.users.get(user_id)
        if c is None:
            return None
        return {**asdict(c), "avg_chunk_seconds": round(c.avg_chunk_seconds(), 4)}

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_s": round(self.uptime_s(), 3),
            **asdict(self.totals),
            "blocks_per_second": round(self.blocks_per_second(), 3),
            "avg_chunk_seconds": round(self.totals.avg_chunk_seconds(), 4),
            "rpc_requests": self.rpc_requests,
            "rpc_failures": self.rpc_failures,
            "rpc_success_rate": round(self.rpc_success_rate(), 2),
            "avg_rpc_latency_ms": round(self.avg_rpc_latency_ms(), 2),
            "active_users": len(self.users),
        }

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections import deque
from typing import Any, Callable, Protocol

from loguru import logger

from ..domain.models import HealthAlert, HealthSnapshot, ProviderHealthSnapshot
from .metrics import MetricsCollector
from .provider_pool import ProviderPool

DiskUsage = Callable[[str], Any]


class SessionCounter(Protocol):
    def sessions_by_state(self) -> dict[str, int]: ...


def overall_status(chains: tuple[ProviderHealthSnapshot, ...] | list[ProviderHealthSnapshot]) -> str:
    """healthy: every chain has a healthy endpoint; down: none anywhere; degraded otherwise."""
    if not chains:
        return "healthy"
    with_healthy = sum(1 for c in chains if c.healthy > 0)
    if with_healthy == len(chains):
        return "healthy"
    if with_healthy == 0:
        return "down"
    return "degraded"


class HealthMonitor:
    """
    Samples provider health, session states, free disk space under the data
    directory and the shared metrics on a fixed interval, keeping the recent
    history and a bounded list of alerts. Observation only: it never takes
    corrective action.
    """

    def __init__(
        self,
        pool: ProviderPool,
        sessions: SessionCounter | None = None,
        *,
        interval_s: float = 30.0,
        history_size: int = 100,
        data_dir: str | os.PathLike[str] | None = None,
        metrics: MetricsCollector | None = None,
        min_free_percent: float = 10.0,
        max_alerts: int = 50,
        disk_usage: DiskUsage = shutil.disk_usage,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pool = pool
        self.sessions = sessions
        self.interval_s = interval_s
        self.history: deque[HealthSnapshot] = deque(maxlen=history_size)
        self.alerts: deque[HealthAlert] = deque(maxlen=max_alerts)
        self.data_dir = os.fspath(data_dir) if data_dir is not None else None
        self.metrics = metrics or pool.metrics
        self.min_free_percent = min_free_percent
        self._disk_usage = disk_usage
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    def storage_health(self) -> dict[str, Any]:
        if self.data_dir is None:
            return {}
        path = self.data_dir
        while not os.path.exists(path) and os.path.dirname(path) != path:
            path = os.path.dirname(path)
        try:
            usage = self._disk_usage(path)
        except OSError as e:
            logger.warning(f"[Health] cannot read disk usage for {path}: {e}")
            return {"healthy": False, "path": self.data_dir, "error": str(e)}
        free_percent = usage.free * 100.0 / usage.total if usage.total else 0.0
        return {
            "healthy": free_percent >= self.min_free_percent,
            "path": self.data_dir,
            "free_percent": round(free_percent, 2),
            "free_bytes": usage.free,
            "total_bytes": usage.total,
        }

    def sample(self) -> HealthSnapshot:
        chains = tuple(self.pool.health_snapshot())
        storage = self.storage_health()
        overall = overall_status(chains)
        if overall == "healthy" and storage and not storage["healthy"]:
            overall = "degraded"
        snap = HealthSnapshot(
            checked_at=self._clock(),
            overall=overall,
            chains=chains,
            sessions_by_state=self.sessions.sessions_by_state() if self.sessions is not None else {},
            storage=storage,
            metrics=self.metrics.snapshot(),
        )
        self.history.append(snap)
        if snap.overall != "healthy":
            logger.warning(f"[Health] {snap.overall}: " + ", ".join(
                f"{c.chain} {c.healthy}/{c.total}" for c in chains))
        self.check_alerts(snap)
        return snap

    def check_alerts(self, snap: HealthSnapshot) -> None:
        if snap.storage and not snap.storage["healthy"]:
            self.add_alert("warning", "Low disk space", snap.storage)
        down = [c.chain for c in snap.chains if c.healthy == 0]
        if down:
            self.add_alert("error", "RPC endpoints unhealthy", {"chains": down})
        if snap.overall == "degraded":
            self.add_alert("warning", "System health degraded", {"overall": snap.overall})

    def add_alert(self, level: str, message: str, data: dict[str, Any] | None = None) -> HealthAlert:
        alert = HealthAlert(level=level, message=message, timestamp=self._clock(), data=dict(data or {}))
        self.alerts.append(alert)
        log = logger.error if level == "error" else logger.warning
        log(f"[Health] alert [{level.upper()}] {message}")
        return alert

    def recent_alerts(self, limit: int = 10) -> list[HealthAlert]:
        return list(self.alerts)[-limit:]
    @property
    def snapshot(self) -> HealthSnapshot:
        """Latest sample, taken now if none exists yet."""
        return self.history[-1] if self.history else self.sample()

    async def _loop(self) -> None:
        while True:
            self.sample()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="health-monitor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

from __future__ import annotations

import asyncio
import json
import os
import shutil
import time

from loguru import logger

from ..domain.models import SessionCheckpoint
from ..domain.value_types import SessionId
from ..ports.storage import CheckpointStore


def safe_name(session_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id)


class JsonCheckpointStore(CheckpointStore):
    """
    One JSON file per session under ``<root>/checkpoints``.
    Writes go to ``.tmp`` + fsync + os.replace; the previous file is kept as ``.backup``.
    """

    def __init__(self, root_dir: str | os.PathLike[str]) -> None:
        self.dir = os.path.join(os.fspath(root_dir), "checkpoints")
        os.makedirs(self.dir, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def path(self, session_id: str) -> str:
        return os.path.join(self.dir, f"{safe_name(session_id)}.json")

    async def load(self, session_id: SessionId) -> SessionCheckpoint | None:
        raw = await asyncio.to_thread(self._read, self.path(session_id))
        return SessionCheckpoint.from_dict(raw) if raw is not None else None

    async def save(self, checkpoint: SessionCheckpoint) -> None:
        checkpoint.updated_at = time.time()
        data = json.dumps(checkpoint.to_dict(), indent=2, sort_keys=True)
        lock = self._locks.setdefault(checkpoint.session_id, asyncio.Lock())
        async with lock:
            await asyncio.to_thread(self._write_atomic, self.path(checkpoint.session_id), data)

    async def list_ids(self) -> list[SessionId]:
        ids: list[SessionId] = []
        for name in sorted(os.listdir(self.dir)):
            if not name.endswith(".json"):
                continue
            raw = await asyncio.to_thread(self._read, os.path.join(self.dir, name))
            if raw and raw.get("session_id"):
                ids.append(SessionId(raw["session_id"]))
        return ids

    @staticmethod
    def _write_atomic(path: str, data: str) -> None:
        tmp, backup = path + ".tmp", path + ".backup"
        if os.path.exists(path):
            shutil.copy2(path, backup)
        with open(tmp, "w") as f:
            f.write(data); f.flush(); os.fsync(f.fileno())
        os.replace(tmp, path)

    @staticmethod
    def _read(path: str) -> dict | None:
        for candidate in (path, path + ".backup"):
            if not os.path.exists(candidate):
                continue
            try:
                with open(candidate, "r") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"[Checkpoint] unreadable {candidate}: {e}")
        return None

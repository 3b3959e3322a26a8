# chainstream/ports/storage.py
from __future__ import annotations

from typing import Iterable, Protocol

from ..domain.models import Chunk, ChunkManifestRecord, SessionCheckpoint, TransactionRecord
from ..domain.value_types import SessionId


class CheckpointStore(Protocol):
    """Port for the durable, single-writer state of an indexing session."""

    async def load(self, session_id: SessionId) -> SessionCheckpoint | None:
        """Return the last durably written checkpoint, or None if the session is new."""

    async def save(self, checkpoint: SessionCheckpoint) -> None:
        """Atomically replace the checkpoint; returns only once the write is durable."""

    async def list_ids(self) -> list[SessionId]:
        """Return every session id with a checkpoint on disk."""


class TransactionSink(Protocol):
    """Port for the per-(contract, chain) transaction dataset, keyed by transaction hash."""

    async def upsert_chunk(self, chunk: Chunk, records: Iterable[TransactionRecord]) -> int:
        """Persist the chunk's records, skipping hashes owned by other chunks. Returns rows written."""

    async def contains(self, tx_hash: str) -> bool:
        """Return True if the hash is already persisted."""


class ManifestSink(Protocol):
    """Port for appending chunk status records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkManifestRecord) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""

from __future__ import annotations
import os, glob, json, asyncio
from typing import Iterable

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from ..domain.errors import StorageError
from ..domain.models import Chunk, TransactionRecord
from ..ports.storage import TransactionSink

TX_SCHEMA = pa.schema([
    pa.field("hash",         pa.large_string()),
    pa.field("block_number", pa.int64()),
    pa.field("timestamp",    pa.int64()),
    pa.field("sender",       pa.large_string()),
    pa.field("recipient",    pa.large_string()),
    pa.field("value",        pa.large_string()),   # big ints as strings
    pa.field("gas_used",     pa.large_string()),
    pa.field("success",      pa.bool_()),
    pa.field("event_count",  pa.int32()),
    pa.field("events_json",  pa.large_string()),   # raw event payload
])

TX_COLS: tuple[str, ...] = tuple(f.name for f in TX_SCHEMA)


def _records_to_table(records: Iterable[TransactionRecord]) -> pa.Table:
    recs = list(records)
    arrays = {
        "hash":         pa.array([r.hash for r in recs],         type=TX_SCHEMA.field("hash").type),
        "block_number": pa.array([r.block_number for r in recs], type=TX_SCHEMA.field("block_number").type),
        "timestamp":    pa.array([r.timestamp for r in recs],    type=TX_SCHEMA.field("timestamp").type),
        "sender":       pa.array([r.sender for r in recs],       type=TX_SCHEMA.field("sender").type),
        "recipient":    pa.array([r.recipient for r in recs],    type=TX_SCHEMA.field("recipient").type),
        "value":        pa.array([r.value for r in recs],        type=TX_SCHEMA.field("value").type),
        "gas_used":     pa.array([r.gas_used for r in recs],     type=TX_SCHEMA.field("gas_used").type),
        "success":      pa.array([r.success for r in recs],      type=TX_SCHEMA.field("success").type),
        "event_count":  pa.array([len(r.events) for r in recs],  type=TX_SCHEMA.field("event_count").type),
        "events_json":  pa.array(
            [json.dumps([e.to_dict() for e in r.events], separators=(",", ":")) for r in recs],
            type=TX_SCHEMA.field("events_json").type,
        ),
    }
    return pa.Table.from_pydict(arrays, schema=TX_SCHEMA).sort_by([
        ("block_number", "ascending"),
        ("hash", "ascending"),
    ])


class ParquetTransactionStore(TransactionSink):
    """
    Append-only transaction dataset for one (contract, chain): one Parquet file per
    persisted chunk, written tmp + os.replace. Upsert is on transaction hash: a
    chunk re-persisted after a retry replaces its own file, and hashes already owned
    by another chunk (boundary double counts) are skipped.
    """
    def __init__(self, root_dir: str | os.PathLike[str], address: str, chain: str, *, codec: str = "zstd") -> None:
        self.key_dir = os.path.join(os.fspath(root_dir), "transactions", f"{chain}__{address.lower()}")
        os.makedirs(self.key_dir, exist_ok=True)
        self.codec = codec
        self._lock = asyncio.Lock()
        self._owner: dict[str, str] | None = None   # tx hash -> file name

    def _path(self, chunk: Chunk) -> str:
        return os.path.join(self.key_dir, f"chunk_{chunk.start:012d}_{chunk.end:012d}.parquet")

    def _files(self) -> list[str]:
        return sorted(glob.glob(os.path.join(self.key_dir, "chunk_*.parquet")))

    def _load_index(self) -> dict[str, str]:
        owner: dict[str, str] = {}
        for path in self._files():
            name = os.path.basename(path)
            for h in pq.read_table(path, columns=["hash"]).column("hash").to_pylist():
                owner.setdefault(h, name)
        return owner

    async def _index(self) -> dict[str, str]:
        if self._owner is None:
            self._owner = await asyncio.to_thread(self._load_index)
        return self._owner

    async def contains(self, tx_hash: str) -> bool:
        async with self._lock:
            return tx_hash.lower() in await self._index()

    async def upsert_chunk(self, chunk: Chunk, records: Iterable[TransactionRecord]) -> int:
        path = self._path(chunk)
        name = os.path.basename(path)
        async with self._lock:
            owner = await self._index()
            keep: dict[str, TransactionRecord] = {}
            for r in records:
                if owner.get(r.hash, name) != name:
                    continue
                keep.setdefault(r.hash, r)
            try:
                table = _records_to_table(keep.values())
                await asyncio.to_thread(self._write_table, table, path)
            except (pa.ArrowException, OverflowError) as e:
                raise StorageError(f"cannot write chunk {chunk.index} to {name}: {e}") from e
            for h in [h for h, n in owner.items() if n == name and h not in keep]:
                del owner[h]
            for h in keep:
                owner[h] = name
            return len(keep)

    def _write_table(self, table: pa.Table, path: str) -> None:
        tmp = path + ".tmp"
        pq.write_table(table, tmp, compression=self.codec)
        with open(tmp, "rb") as f:
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def read_table(self) -> pa.Table:
        """Whole dataset, deduplicated on hash, sorted by (block_number, hash)."""
        files = self._files()
        if not files:
            return pa.Table.from_pylist([], schema=TX_SCHEMA)
        table = pa.concat_tables([pq.read_table(p, schema=TX_SCHEMA) for p in files])
        table = table.sort_by([("block_number", "ascending"), ("hash", "ascending")])
        seen: set[str] = set()
        mask = []
        for h in table.column("hash").to_pylist():
            mask.append(h not in seen)
            seen.add(h)
        return table.filter(pa.array(mask, type=pa.bool_()))

    def to_frame(self) -> pd.DataFrame:
        return self.read_table().to_pandas()

    def count(self) -> int:
        return self.read_table().num_rows

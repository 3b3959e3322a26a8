from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, asdict, fields
from typing import Any

from .value_types import Address, ChainId, ChunkStatus, EventType, SessionId, SessionStatus, Severity, StopReason, TxHash


@dataclass(slots=True)
class Endpoint:
    url: str
    chain: ChainId
    priority: int                      # lower is tried first
    is_healthy: bool = True
    consecutive_failures: int = 0
    total_failures: int = 0
    last_latency_ms: float | None = None
    last_checked_at: float | None = None
    last_error: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def health_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "priority": self.priority,
            "healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_latency_ms": self.last_latency_ms,
            "last_checked_at": self.last_checked_at,
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class Chunk:
    index: int
    start: int                         # inclusive
    end: int                           # inclusive
    status: ChunkStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    warnings: tuple[str, ...] = ()

    def span(self) -> int: return self.end - self.start + 1

    def contains(self, block: int) -> bool: return self.start <= block <= self.end


@dataclass(slots=True, frozen=True)
class EventRecord:
    address: Address
    block_number: int
    tx_hash: TxHash
    log_index: int
    topics: tuple[str, ...]            # EVM topics / Starknet keys
    data: tuple[str, ...]              # EVM: single hex blob; Starknet: felt list

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "topics": list(self.topics),
            "data": list(self.data),
        }


@dataclass(slots=True, frozen=True)
class TransactionRecord:
    hash: TxHash
    block_number: int
    timestamp: int | None
    sender: str | None
    recipient: str | None
    value: str                         # big ints as strings
    gas_used: str
    success: bool
    events: tuple[EventRecord, ...] = ()


@dataclass(slots=True)
class FetchedRange:
    from_block: int
    to_block: int
    transactions: list[TransactionRecord] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def span(self) -> int: return self.to_block - self.from_block + 1


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    kind: str                          # out_of_range | duplicate_hash | duplicate_event | gap | ordering
    severity: Severity
    message: str
    block: int | None = None
    tx_hash: str | None = None

    def __str__(self) -> str: return f"{self.kind}: {self.message}"


@dataclass(slots=True, frozen=True)
class ValidationResult:
    ok: bool
    issues: tuple[ValidationIssue, ...] = ()

    @property
    def errors(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "error")

    @property
    def warnings(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "warning")


@dataclass(slots=True)
class SessionCheckpoint:
    session_id: SessionId
    user_id: str
    contract_address: Address
    chain: ChainId
    tier: str
    status: SessionStatus = "initializing"
    deployment_block: int | None = None
    start_block: int | None = None
    target_block: int | None = None
    last_confirmed_block: int | None = None
    current_chunk_index: int = 0
    total_chunks: int = 0
    chunk_size: int = 0
    max_blocks_per_month: int | None = None
    max_history_blocks: int | None = None
    blocks_fetched_month: int = 0
    budget_month: str | None = None
    transactions_persisted: int = 0
    degraded_start: bool = False
    stop_reason: StopReason | None = None
    failed_chunk: dict[str, Any] | None = None
    last_message: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def next_block(self) -> int | None:
        if self.last_confirmed_block is None:
            return self.start_block
        return self.last_confirmed_block + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SessionCheckpoint":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


@dataclass(slots=True, frozen=True)
class ChunkManifestRecord:
    session_id: SessionId
    chunk_index: int
    from_block: int
    to_block: int
    status: ChunkStatus
    attempts: int
    error: str | None = None
    transactions: int = 0
    events: int = 0
    warnings: int = 0
    updated_at: float = 0.0


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    type: EventType
    session_id: SessionId
    status: SessionStatus
    progress: float                    # percent, 0..100
    current_chunk: int
    total_chunks: int
    message: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ProviderHealthSnapshot:
    chain: ChainId
    healthy: int
    unhealthy: int
    endpoints: tuple[dict[str, Any], ...] = ()

    @property
    def total(self) -> int: return self.healthy + self.unhealthy


@dataclass(slots=True, frozen=True)
class HealthSnapshot:
    checked_at: float
    overall: str                       # healthy | degraded | down
    chains: tuple[ProviderHealthSnapshot, ...]
    sessions_by_state: dict[str, int]
    storage: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at,
            "overall": self.overall,
            "chains": {
                c.chain: {"healthy": c.healthy, "unhealthy": c.unhealthy, "endpoints": list(c.endpoints)}
                for c in self.chains
            },
            "sessions_by_state": dict(self.sessions_by_state),
            "storage": dict(self.storage),
            "metrics": dict(self.metrics),
        }


@dataclass(slots=True, frozen=True)
class HealthAlert:
    level: str                         # warning | error
    message: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level, "message": self.message, "timestamp": self.timestamp, "data": dict(self.data)}

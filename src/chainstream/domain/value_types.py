from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash  = NewType("TxHash", str)    # 0x-prefixed, lowercase
ChainId = NewType("ChainId", str)   # "ethereum" | "lisk" | "starknet" | ...
SessionId = NewType("SessionId", str)

ChainFamily   = Literal["evm", "starknet"]
ChunkStatus   = Literal["pending", "fetching", "validating", "persisted", "failed"]
SessionStatus = Literal["initializing", "backfilling", "live-polling", "paused", "stopped", "failed"]
StopReason    = Literal["completed", "limit_reached", "requested", "shutdown"]
EventType     = Literal["progress", "error", "completion"]
Severity      = Literal["error", "warning"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"stopped", "failed"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"initializing", "backfilling", "live-polling"})

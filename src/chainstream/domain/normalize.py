from __future__ import annotations

from typing import Any, Iterable, Mapping

from eth_utils import is_address

from .models import EventRecord, TransactionRecord
from .value_types import Address, ChainFamily, TxHash


# ---------- scalar helpers ----------------------------------------------------

def hex_to_int(v: Any, default: int | None = None) -> int | None:
    """Handles 0x..., decimal strings and native ints; None -> default."""
    if v is None:
        return default
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    if not s:
        return default
    return int(s, 16) if s.startswith("0x") else int(s)

def to_hex_block(n: int) -> str: return hex(int(n))

def hex_lower(v: Any) -> str | None:
    """Normalize to lowercase hex with '0x' or None."""
    if v is None:
        return None
    s = v if isinstance(v, str) else v.decode()
    s = s.lower()
    return s if s.startswith("0x") else "0x" + s

def felt_hex(v: Any) -> str | None:
    """Starknet felts come with or without leading zeros; pad to 32 bytes."""
    n = hex_to_int(v)
    if n is None:
        return None
    return "0x" + format(n, "064x")


# ---------- addresses ---------------------------------------------------------

def normalize_address(address: str, family: ChainFamily) -> Address:
    s = str(address).strip()
    if family == "evm":
        if not is_address(s):
            raise ValueError(f"Invalid EVM address: {address!r}")
        return Address(s.lower())
    try:
        out = felt_hex(s)
    except ValueError:
        out = None
    if out is None or not s.lower().startswith("0x"):
        raise ValueError(f"Invalid Starknet address: {address!r}")
    return Address(out)


# ---------- EVM ---------------------------------------------------------------

def evm_log_to_event(rl: Mapping[str, Any]) -> EventRecord | None:
    if rl.get("removed"):
        return None
    block = hex_to_int(rl.get("blockNumber"))
    if block is None:
        raise ValueError(f"log without blockNumber: {rl.get('transactionHash')}")
    topics = tuple(hex_lower(t) or "" for t in rl.get("topics") or ())
    return EventRecord(
        address=Address((rl.get("address") or "").lower()),
        block_number=block,
        tx_hash=TxHash((rl.get("transactionHash") or rl.get("transaction_hash") or "").lower()),
        log_index=hex_to_int(rl.get("logIndex"), 0),
        topics=topics,
        data=(str(rl.get("data") or "0x"),),
    )

def evm_tx_to_record(
    tx: Mapping[str, Any],
    receipt: Mapping[str, Any] | None,
    *,
    timestamp: int | None,
    events: Iterable[EventRecord] = (),
) -> TransactionRecord:
    receipt = receipt or {}
    recipient = tx.get("to") or receipt.get("contractAddress")
    status = hex_to_int(receipt.get("status"))
    return TransactionRecord(
        hash=TxHash(str(tx["hash"]).lower()),
        block_number=hex_to_int(tx.get("blockNumber") or receipt.get("blockNumber"), 0),
        timestamp=timestamp,
        sender=hex_lower(tx.get("from")),
        recipient=hex_lower(recipient),
        value=str(hex_to_int(tx.get("value"), 0)),
        gas_used=str(hex_to_int(receipt.get("gasUsed"), 0)),
        success=status == 1 if status is not None else bool(receipt),
        events=tuple(events),
    )


# ---------- Starknet ----------------------------------------------------------

_STARKNET_OK = {"SUCCEEDED", "ACCEPTED_ON_L2", "ACCEPTED_ON_L1"}

def starknet_event_to_event(ev: Mapping[str, Any], log_index: int) -> EventRecord:
    block = hex_to_int(ev.get("block_number"))
    if block is None:
        raise ValueError(f"event without block_number: {ev.get('transaction_hash')}")
    return EventRecord(
        address=Address(felt_hex(ev.get("from_address")) or ""),
        block_number=block,
        tx_hash=TxHash(felt_hex(ev.get("transaction_hash")) or ""),
        log_index=log_index,
        topics=tuple(felt_hex(k) or "" for k in ev.get("keys") or ()),
        data=tuple(felt_hex(d) or "" for d in ev.get("data") or ()),
    )

def _starknet_fee(receipt: Mapping[str, Any]) -> int:
    fee = receipt.get("actual_fee")
    if isinstance(fee, Mapping):
        fee = fee.get("amount")
    return hex_to_int(fee, 0)

def starknet_tx_to_record(
    tx: Mapping[str, Any],
    receipt: Mapping[str, Any] | None,
    *,
    block_number: int,
    timestamp: int | None,
    contract: Address,
    events: Iterable[EventRecord] = (),
) -> TransactionRecord:
    receipt = receipt or {}
    status = receipt.get("execution_status") or receipt.get("status") or receipt.get("finality_status")
    return TransactionRecord(
        hash=TxHash(felt_hex(tx.get("transaction_hash") or receipt.get("transaction_hash")) or ""),
        block_number=hex_to_int(receipt.get("block_number"), block_number),
        timestamp=timestamp,
        sender=felt_hex(tx.get("sender_address") or tx.get("contract_address")),
        recipient=contract,
        value="0",
        gas_used=str(_starknet_fee(receipt)),
        success=str(status).upper() in _STARKNET_OK,
        events=tuple(events),
    )

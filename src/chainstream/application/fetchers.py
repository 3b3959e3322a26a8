"""
Contract Data Fetchers.

Event-first retrieval: one log/event query for the contract over the range (the
authoritative set of what must be captured), then transaction + receipt detail
only for the distinct hashes it references, in batches of the tier's size. A
failed detail fetch drops that transaction with a warning; a failed event query
fails the whole range.
"""
from __future__ import annotations

import asyncio
from typing import Any, Mapping

from loguru import logger

from ..domain.errors import ProviderExhausted, RPCError
from ..domain.models import EventRecord, FetchedRange, TransactionRecord
from ..domain.normalize import (
    evm_log_to_event, evm_tx_to_record, felt_hex, hex_to_int,
    starknet_event_to_event, starknet_tx_to_record, to_hex_block,
)
from ..domain.tiers import TierLimits
from ..domain.value_types import Address, ChainId, TxHash
from ..ports.rpc import ContractFetcher
from .provider_pool import ProviderPool

_DETAIL_ERRORS = (ProviderExhausted, RPCError, KeyError, ValueError, TypeError)
_SHAPE_ERRORS = (KeyError, ValueError, TypeError, AttributeError)

STARKNET_CONTRACT_NOT_FOUND = 20
STARKNET_EVENTS_PAGE = 1_000

TimestampCache = dict[int, "asyncio.Future[int | None]"]


def _malformed(method: str, err: Exception) -> RPCError:
    return RPCError(f"malformed {method} result: {type(err).__name__}: {err}")


def _distinct_hashes(events: list[EventRecord]) -> list[TxHash]:
    seen: dict[TxHash, None] = {}
    for ev in events:
        seen.setdefault(ev.tx_hash, None)
    return list(seen)


class _BaseFetcher(ContractFetcher):
    def __init__(self, pool: ProviderPool, chain: str, *, batch_size: int = 5) -> None:
        self.pool = pool
        self.chain = pool.ensure_chain(chain).chain_id
        self.batch_size = max(1, batch_size)

    @classmethod
    def for_tier(cls, pool: ProviderPool, chain: str, tier: TierLimits) -> "_BaseFetcher":
        return cls(pool, chain, batch_size=tier.batch_size)

    async def _call(self, method: str, *params: Any) -> Any:
        return await self.pool.call(self.chain, method, params)

    async def _detail(self, tx_hash: TxHash, events: list[EventRecord], ts_cache: TimestampCache) -> TransactionRecord | None:
        raise NotImplementedError

    async def _fetch_timestamp(self, block: int) -> int | None:
        raise NotImplementedError

    async def _block_timestamp(self, block: int, cache: TimestampCache) -> int | None:
        # concurrent details in one block share a single lookup
        task = cache.get(block)
        if task is None:
            task = cache[block] = asyncio.ensure_future(self._fetch_timestamp(block))
        return await task

    async def _resolve(self, events: list[EventRecord], out: FetchedRange) -> None:
        by_tx: dict[TxHash, list[EventRecord]] = {}
        for ev in events:
            by_tx.setdefault(ev.tx_hash, []).append(ev)
        hashes = _distinct_hashes(events)
        ts_cache: TimestampCache = {}
        for i in range(0, len(hashes), self.batch_size):
            batch = hashes[i:i + self.batch_size]
            results = await asyncio.gather(
                *(self._detail(h, by_tx[h], ts_cache) for h in batch), return_exceptions=True)
            for h, res in zip(batch, results):
                if isinstance(res, BaseException):
                    if not isinstance(res, _DETAIL_ERRORS):
                        raise res
                    msg = f"dropped transaction {h}: {type(res).__name__}: {res}"
                    logger.warning(f"[Fetcher] {self.chain} {msg}")
                    out.warnings.append(msg)
                elif res is None:
                    msg = f"dropped transaction {h}: not found"
                    logger.warning(f"[Fetcher] {self.chain} {msg}")
                    out.warnings.append(msg)
                else:
                    out.transactions.append(res)
        logger.debug(
            f"[Fetcher] {self.chain} {out.from_block}-{out.to_block}: "
            f"{len(events)} events, {len(out.transactions)}/{len(hashes)} transactions"
        )


class EvmFetcher(_BaseFetcher):

    async def fetch_block_number(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber"))

    async def has_code_at(self, address: Address, block: int) -> bool:
        code = await self._call("eth_getCode", address, to_hex_block(block))
        return bool(code) and str(code).lower() not in ("0x", "0x0")

    async def _fetch_timestamp(self, block: int) -> int | None:
        blk = await self._call("eth_getBlockByNumber", to_hex_block(block), False)
        return hex_to_int(blk.get("timestamp")) if blk else None

    async def _detail(self, tx_hash: TxHash, events: list[EventRecord], ts_cache: TimestampCache) -> TransactionRecord | None:
        tx, receipt = await asyncio.gather(
            self._call("eth_getTransactionByHash", tx_hash),
            self._call("eth_getTransactionReceipt", tx_hash),
        )
        if not tx:
            return None
        block = hex_to_int(tx.get("blockNumber"), events[0].block_number)
        ts = await self._block_timestamp(block, ts_cache)
        return evm_tx_to_record(tx, receipt, timestamp=ts, events=events)

    async def fetch_range(self, address: Address, from_block: int, to_block: int) -> FetchedRange:
        params = {"address": address, "fromBlock": to_hex_block(from_block), "toBlock": to_hex_block(to_block)}
        raw = await self._call("eth_getLogs", params)
        try:
            events = [ev for ev in (evm_log_to_event(rl) for rl in raw or []) if ev is not None]
        except _SHAPE_ERRORS as e:
            raise _malformed("eth_getLogs", e) from e
        out = FetchedRange(from_block=from_block, to_block=to_block, events=events)
        await self._resolve(events, out)
        return out


class StarknetFetcher(_BaseFetcher):

    async def fetch_block_number(self) -> int:
        return hex_to_int(await self._call("starknet_blockNumber"))

    async def has_code_at(self, address: Address, block: int) -> bool:
        try:
            await self.pool.call(
                self.chain, "starknet_getClassHashAt", ({"block_number": block}, address),
                passthrough_codes=(STARKNET_CONTRACT_NOT_FOUND,),
            )
        except RPCError as e:
            if e.code == STARKNET_CONTRACT_NOT_FOUND:
                return False
            raise
        return True

    async def _fetch_timestamp(self, block: int) -> int | None:
        blk = await self._call("starknet_getBlockWithTxHashes", {"block_number": block})
        return hex_to_int(blk.get("timestamp")) if blk else None

    async def _detail(self, tx_hash: TxHash, events: list[EventRecord], ts_cache: TimestampCache) -> TransactionRecord | None:
        tx, receipt = await asyncio.gather(
            self._call("starknet_getTransactionByHash", tx_hash),
            self._call("starknet_getTransactionReceipt", tx_hash),
        )
        if not tx:
            return None
        block = events[0].block_number
        ts = await self._block_timestamp(block, ts_cache)
        return starknet_tx_to_record(
            tx, receipt, block_number=block, timestamp=ts, contract=events[0].address, events=events)

    async def _events_page(self, address: Address, from_block: int, to_block: int, token: str | None) -> Mapping[str, Any]:
        flt: dict[str, Any] = {
            "from_block": {"block_number": from_block},
            "to_block": {"block_number": to_block},
            "address": address,
            "chunk_size": STARKNET_EVENTS_PAGE,
        }
        if token:
            flt["continuation_token"] = token
        return await self._call("starknet_getEvents", flt) or {}

    async def fetch_range(self, address: Address, from_block: int, to_block: int) -> FetchedRange:
        events: list[EventRecord] = []
        per_tx: dict[str, int] = {}
        token: str | None = None
        while True:
            page = await self._events_page(address, from_block, to_block, token)
            try:
                for raw in page.get("events") or []:
                    txh = felt_hex(raw.get("transaction_hash")) or ""
                    idx = per_tx.get(txh, 0)
                    per_tx[txh] = idx + 1
                    events.append(starknet_event_to_event(raw, idx))
                token = page.get("continuation_token")
            except _SHAPE_ERRORS as e:
                raise _malformed("starknet_getEvents", e) from e
            if not token:
                break
        out = FetchedRange(from_block=from_block, to_block=to_block, events=events)
        await self._resolve(events, out)
        return out


FETCHERS: dict[str, type[_BaseFetcher]] = {"evm": EvmFetcher, "starknet": StarknetFetcher}


def make_fetcher(pool: ProviderPool, chain: str, tier: TierLimits) -> _BaseFetcher:
    cfg = pool.ensure_chain(chain)
    return FETCHERS[cfg.family].for_tier(pool, cfg.chain_id, tier)

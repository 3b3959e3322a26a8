"""Shared fixtures: settings rooted in tmp_path, in-memory fetchers and JSON-RPC transports."""
from __future__ import annotations

from typing import Any, Callable, Sequence

import pytest

from chainstream.config import Settings
from chainstream.domain.errors import ProviderExhausted, RPCError
from chainstream.domain.models import EventRecord, FetchedRange, TransactionRecord
from chainstream.domain.value_types import Address, ChainId, TxHash

CONTRACT = Address("0x" + "ab" * 20)


def tx_hash(block: int, n: int = 0) -> TxHash:
    return TxHash("0x" + format(block * 1000 + n, "064x"))


def make_tx(block: int, n: int = 0, *, address: str = CONTRACT, log_index: int = 0) -> TransactionRecord:
    h = tx_hash(block, n)
    ev = EventRecord(address=Address(address), block_number=block, tx_hash=h,
                     log_index=log_index, topics=("0x" + "11" * 32,), data=("0x",))
    return TransactionRecord(hash=h, block_number=block, timestamp=1_700_000_000 + block,
                             sender="0x" + "01" * 20, recipient=address, value="0",
                             gas_used="21000", success=True, events=(ev,))


class FakeFetcher:
    """
    Deterministic chain: the contract has code from ``deployment`` on and one
    transaction in every ``tx_every``-th block. ``fail_ranges`` maps a
    (from, to) range to how many more times fetching it should fail.
    """

    def __init__(self, *, deployment: int = 1_000, head: int = 1_050, tx_every: int = 5,
                 chain: str = "ethereum") -> None:
        self.chain = ChainId(chain)
        self.deployment = deployment
        self.head = head
        self.tx_every = tx_every
        self.fail_ranges: dict[tuple[int, int], int] = {}
        self.fail_head = False
        self.ranges: list[tuple[int, int]] = []
        self.code_probes: list[int] = []
        self.on_fetch: Callable[[int, int], None] | None = None

    async def fetch_block_number(self) -> int:
        if self.fail_head:
            raise ProviderExhausted(self.chain, "eth_blockNumber", RPCError("down"))
        return self.head

    async def has_code_at(self, address: Address, block: int) -> bool:
        self.code_probes.append(block)
        return block >= self.deployment

    async def fetch_range(self, address: Address, from_block: int, to_block: int) -> FetchedRange:
        self.ranges.append((from_block, to_block))
        if self.on_fetch is not None:
            self.on_fetch(from_block, to_block)
        left = self.fail_ranges.get((from_block, to_block), 0)
        if left:
            self.fail_ranges[(from_block, to_block)] = left - 1
            raise ProviderExhausted(self.chain, "eth_getLogs", RPCError("boom"))
        txs = [make_tx(b, address=address) for b in range(from_block, to_block + 1) if b % self.tx_every == 0]
        return FetchedRange(from_block=from_block, to_block=to_block, transactions=txs,
                            events=[ev for t in txs for ev in t.events])


class FakeTransport:
    """JSON-RPC transport answering from ``handler(method, params)``; exceptions are raised as-is."""

    def __init__(self, url: str, handler: Callable[[str, Sequence[Any]], Any]) -> None:
        self.url = url
        self.handler = handler
        self.calls: list[tuple[str, list[Any]]] = []
        self.closed = False

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        self.calls.append((method, list(params)))
        return self.handler(method, params)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        chunk_size=20,
        polling_interval_s=0.01,
        retry_base_s=0,
        rpc_timeout_s=2,
        requests_per_second=10_000,
        shutdown_timeout_s=2,
        rpc_urls={},
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()

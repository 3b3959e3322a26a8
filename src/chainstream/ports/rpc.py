# chainstream/ports/rpc.py
from __future__ import annotations

from typing import Any, Protocol, Sequence

from ..domain.models import FetchedRange
from ..domain.value_types import Address, ChainId


class RPCTransport(Protocol):
    """Port for one JSON-RPC endpoint. Raises RPCError on any non-result answer."""

    url: str

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        """Return the ``result`` member of the JSON-RPC response."""

    async def aclose(self) -> None:
        """Release connections."""


class ContractFetcher(Protocol):
    """Port for a chain-aware contract activity client built on the provider pool."""

    chain: ChainId

    async def fetch_block_number(self) -> int:
        """Return the latest block number."""

    async def fetch_range(self, address: Address, from_block: int, to_block: int) -> FetchedRange:
        """Return transactions and events touching ``address`` in [from_block, to_block] inclusive."""

    async def has_code_at(self, address: Address, block: int) -> bool:
        """Return True if contract code exists for ``address`` at ``block``."""

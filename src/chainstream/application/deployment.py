"""
Deployment Block Locator.

Binary search over [0, head] with "contract has code at B" as the monotonic
predicate: O(log head) probes instead of scanning empty history.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from ..domain.errors import ChainstreamError, ContractNotFound, LocatorFailure
from ..domain.value_types import Address
from ..ports.rpc import ContractFetcher

Predicate = Callable[[int], Awaitable[bool]]


async def find_boundary(predicate: Predicate, lo: int, hi: int) -> int:
    """
    Smallest block in [lo, hi] where ``predicate`` is true, assuming it is false
    below the boundary and true at/after it, and true at ``hi``.
    """
    while lo < hi:
        mid = (lo + hi) // 2
        if await predicate(mid):
            hi = mid
        else:
            lo = mid + 1
    return lo


class DeploymentBlockLocator:
    def __init__(self, *, probe_attempts: int = 3, retry_delay_s: float = 0.5) -> None:
        self.probe_attempts = max(1, probe_attempts)
        self.retry_delay_s = retry_delay_s
        self._cache: dict[tuple[str, str], int] = {}
        self.probes = 0                    # predicate calls, for diagnostics

    def cached(self, chain: str, address: str) -> int | None:
        return self._cache.get((chain, address.lower()))

    async def _probe(self, fetcher: ContractFetcher, address: Address, block: int) -> bool:
        last: Exception | None = None
        for attempt in range(1, self.probe_attempts + 1):
            self.probes += 1
            try:
                return await fetcher.has_code_at(address, block)
            except ChainstreamError as e:
                last = e
                logger.warning(f"[Locator] {fetcher.chain} code probe at {block} failed "
                               f"(attempt {attempt}/{self.probe_attempts}): {e}")
                if attempt < self.probe_attempts and self.retry_delay_s:
                    await asyncio.sleep(self.retry_delay_s * attempt)
        raise LocatorFailure(f"code probe at block {block} failed: {last}", block=block) from last

    async def find_deployment_block(self, fetcher: ContractFetcher, address: Address, *, head: int | None = None) -> int:
        """
        Raises ContractNotFound if the head block has no code for ``address``
        and LocatorFailure if a probe keeps failing.
        """
        key = (fetcher.chain, address.lower())
        if key in self._cache:
            return self._cache[key]
        if head is None:
            try:
                head = await fetcher.fetch_block_number()
            except ChainstreamError as e:
                raise LocatorFailure(f"cannot read head block: {e}") from e

        if not await self._probe(fetcher, address, head):
            raise ContractNotFound(fetcher.chain, address, head)
        if head == 0 or await self._probe(fetcher, address, 0):
            block = 0
        else:
            block = await find_boundary(lambda b: self._probe(fetcher, address, b), 1, head)

        logger.info(f"[Locator] {fetcher.chain} {address} deployed at block {block}")
        self._cache[key] = block
        return block

import math

import pytest

from chainstream.application.deployment import DeploymentBlockLocator, find_boundary
from chainstream.domain.errors import ContractNotFound, LocatorFailure, RPCError

from conftest import CONTRACT, FakeFetcher


@pytest.mark.asyncio
@pytest.mark.parametrize("n,boundary", [(1, 1), (2, 1), (1_000, 1), (1_000, 999), (1_000, 1_000),
                                        (20_000_000, 12_345_678), (20_000_000, 3)])
async def test_find_boundary_exact_in_log_calls(n, boundary):
    calls = 0

    async def has_code(b):
        nonlocal calls
        calls += 1
        return b >= boundary

    assert await find_boundary(has_code, 1, n) == boundary
    assert calls <= math.ceil(math.log2(n)) + 1


@pytest.mark.asyncio
async def test_locator_finds_deployment_with_few_probes():
    fetcher = FakeFetcher(deployment=4_321_987, head=19_000_000)
    locator = DeploymentBlockLocator(retry_delay_s=0)
    assert await locator.find_deployment_block(fetcher, CONTRACT) == 4_321_987
    assert len(fetcher.code_probes) <= math.ceil(math.log2(19_000_000)) + 2


@pytest.mark.asyncio
async def test_locator_genesis_contract_skips_search():
    fetcher = FakeFetcher(deployment=0, head=5_000)
    locator = DeploymentBlockLocator(retry_delay_s=0)
    assert await locator.find_deployment_block(fetcher, CONTRACT) == 0
    assert fetcher.code_probes == [5_000, 0]


@pytest.mark.asyncio
async def test_locator_caches_result():
    fetcher = FakeFetcher(deployment=700, head=1_000)
    locator = DeploymentBlockLocator(retry_delay_s=0)
    await locator.find_deployment_block(fetcher, CONTRACT)
    probes = len(fetcher.code_probes)
    assert await locator.find_deployment_block(fetcher, CONTRACT.upper().replace("0X", "0x")) == 700
    assert len(fetcher.code_probes) == probes
    assert locator.cached("ethereum", CONTRACT) == 700


@pytest.mark.asyncio
async def test_no_code_at_head_is_contract_not_found():
    fetcher = FakeFetcher(deployment=2_000, head=1_000)
    with pytest.raises(ContractNotFound):
        await DeploymentBlockLocator(retry_delay_s=0).find_deployment_block(fetcher, CONTRACT)


class FlakyFetcher(FakeFetcher):
    def __init__(self, failures_per_probe: int, **kw):
        super().__init__(**kw)
        self.failures_per_probe = failures_per_probe
        self._failed: dict[int, int] = {}

    async def has_code_at(self, address, block):
        seen = self._failed.get(block, 0)
        if seen < self.failures_per_probe:
            self._failed[block] = seen + 1
            raise RPCError("flaky")
        return await super().has_code_at(address, block)


@pytest.mark.asyncio
async def test_probe_retried_before_giving_up():
    fetcher = FlakyFetcher(2, deployment=300, head=1_000)
    locator = DeploymentBlockLocator(probe_attempts=3, retry_delay_s=0)
    assert await locator.find_deployment_block(fetcher, CONTRACT) == 300


@pytest.mark.asyncio
async def test_probe_failing_three_times_is_locator_failure():
    fetcher = FlakyFetcher(3, deployment=300, head=1_000)
    locator = DeploymentBlockLocator(probe_attempts=3, retry_delay_s=0)
    with pytest.raises(LocatorFailure) as exc:
        await locator.find_deployment_block(fetcher, CONTRACT)
    assert exc.value.block == 1_000
    assert locator.probes == 3


@pytest.mark.asyncio
async def test_head_failure_is_locator_failure():
    fetcher = FakeFetcher()
    fetcher.fail_head = True
    with pytest.raises(LocatorFailure):
        await DeploymentBlockLocator(retry_delay_s=0).find_deployment_block(fetcher, CONTRACT)

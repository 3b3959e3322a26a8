"""
Runtime configuration.

Settings are read from ``CHAINSTREAM_*`` environment variables (or a ``.env``
file) with pydantic-settings. The chain registry is static: endpoints listed
here are the defaults, ``CHAINSTREAM_RPC_URLS`` overrides them per chain.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .domain.errors import UnsupportedChain
from .domain.value_types import ChainFamily, ChainId


@dataclass(slots=True, frozen=True)
class ChainConfig:
    chain_id: ChainId
    name: str
    family: ChainFamily
    rpc_endpoints: tuple[str, ...]     # priority order
    block_time_s: int
    blocks_per_day: int


CHAINS: dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        chain_id=ChainId("ethereum"), name="Ethereum", family="evm",
        rpc_endpoints=("https://eth.public-rpc.com", "https://ethereum.publicnode.com"),
        block_time_s=12, blocks_per_day=7_200,
    ),
    "lisk": ChainConfig(
        chain_id=ChainId("lisk"), name="Lisk", family="evm",
        rpc_endpoints=("https://lisk.drpc.org", "https://lisk.gateway.tenderly.co"),
        block_time_s=12, blocks_per_day=7_200,
    ),
    "starknet": ChainConfig(
        chain_id=ChainId("starknet"), name="Starknet", family="starknet",
        rpc_endpoints=("https://starknet-mainnet.public.blastapi.io", "https://starknet.publicnode.com"),
        block_time_s=6, blocks_per_day=14_400,
    ),
}


def get_chain(chain: str) -> ChainConfig:
    try:
        return CHAINS[chain.strip().lower()]
    except KeyError:
        raise UnsupportedChain(chain) from None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHAINSTREAM_", env_file=".env", extra="ignore")

    data_dir: Path = Path("./data")

    # Chunking / session loop
    chunk_size: int = Field(200_000, gt=0)
    polling_interval_s: float = Field(30.0, ge=0)
    max_chunk_attempts: int = Field(3, ge=1)
    retry_base_s: float = Field(1.0, ge=0)
    retry_factor: float = Field(2.0, ge=1)

    # Provider pool
    rpc_timeout_s: float = Field(60.0, gt=0)
    requests_per_second: float = Field(10.0, gt=0)
    health_check_interval_s: float = Field(60.0, gt=0)
    unhealthy_threshold: int = Field(3, ge=1)
    rpc_urls: dict[str, list[str]] = Field(default_factory=dict)

    # Deployment locator
    locator_probe_attempts: int = Field(3, ge=1)
    fallback_window_blocks: int = Field(50_400, ge=0)

    # Validation
    gap_warning_blocks: int = Field(50_000, gt=0)

    # Supervision / observability
    monitor_interval_s: float = Field(30.0, gt=0)
    shutdown_timeout_s: float = Field(30.0, ge=0)
    progress_queue_size: int = Field(100, ge=1)
    log_level: str = "INFO"

    @field_validator("rpc_urls")
    @classmethod
    def _lower_chain_keys(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return {k.strip().lower(): [u for u in urls if u] for k, urls in v.items()}

    def endpoints_for(self, chain: str) -> tuple[str, ...]:
        cfg = get_chain(chain)
        override = self.rpc_urls.get(cfg.chain_id)
        return tuple(override) if override else cfg.rpc_endpoints

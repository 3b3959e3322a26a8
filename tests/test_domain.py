import pytest

from chainstream.config import Settings, get_chain
from chainstream.domain.errors import UnsupportedChain, ValidationFailure
from chainstream.domain.models import ValidationIssue
from chainstream.domain.normalize import felt_hex, hex_to_int, normalize_address
from chainstream.domain.tiers import get_tier


def test_tiers():
    free, ent = get_tier("Free"), get_tier("enterprise")
    assert (free.history_days, free.continuous_sync, free.max_blocks_per_month, free.batch_size) == (7, False, 1_000_000, 5)
    assert free.history_blocks(7_200) == 50_400
    assert ent.history_blocks(7_200) is None and ent.max_blocks_per_month is None
    assert get_tier("pro").batch_size == 8
    assert get_tier(ent) is ent
    with pytest.raises(ValueError):
        get_tier("gold")


def test_chain_registry_and_overrides(monkeypatch, tmp_path):
    assert get_chain(" Starknet ").family == "starknet"
    assert get_chain("lisk").blocks_per_day == 7_200
    with pytest.raises(UnsupportedChain):
        get_chain("solana")

    monkeypatch.setenv("CHAINSTREAM_RPC_URLS", '{"Ethereum": ["https://mine.example"]}')
    monkeypatch.setenv("CHAINSTREAM_CHUNK_SIZE", "500")
    s = Settings(data_dir=tmp_path)
    assert s.chunk_size == 500
    assert s.endpoints_for("ethereum") == ("https://mine.example",)
    assert s.endpoints_for("lisk") == get_chain("lisk").rpc_endpoints


def test_hex_helpers():
    assert hex_to_int("0x1a") == 26
    assert hex_to_int("42") == 42
    assert hex_to_int(None, 7) == 7
    assert felt_hex("0x1") == "0x" + "0" * 63 + "1"


def test_normalize_address():
    evm = "0x" + "AB" * 20
    assert normalize_address(evm, "evm") == evm.lower()
    with pytest.raises(ValueError):
        normalize_address("0x12", "evm")
    assert normalize_address("0x49d3", "starknet") == felt_hex("0x49d3")
    with pytest.raises(ValueError):
        normalize_address("nope", "starknet")


def test_validation_failure_message():
    err = ValidationFailure([ValidationIssue("duplicate_hash", "error", "tx 0x1 appears more than once")])
    assert str(err) == "duplicate_hash: tx 0x1 appears more than once"
    assert len(err.issues) == 1

"""Tests for configuration loading."""

from pathlib import Path

import pytest

from stakerecon.config import load_settings, load_yaml

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("GNOSIS_RPC_URL", "https://gnosis.example")
    monkeypatch.setenv("BASE_RPC_URL", "https://base.example")
    monkeypatch.setenv("NEUROWEB_RPC_URL", "https://nw.example")
    monkeypatch.setenv("LEDGER_DB_HOST", "db.example")
    monkeypatch.setenv("LEDGER_DB_PORT", "6543")
    monkeypatch.setenv("LEDGER_DB_USER", "reader")
    monkeypatch.setenv("LEDGER_DB_PASSWORD", "secret")
    monkeypatch.delenv("LEDGER_DB_SSLMODE", raising=False)


def test_shipped_network_profiles(env):
    settings = load_settings(str(CONFIG_DIR))

    assert set(settings.networks) == {"gnosis", "base", "neuroweb"}
    gnosis, base, neuroweb = (settings.network(n) for n in ("gnosis", "base", "neuroweb"))
    assert gnosis.rpc_url == "https://gnosis.example"
    assert (gnosis.chunk_size, base.chunk_size, neuroweb.chunk_size) == (1_000_000, 100_000, 10_000)
    assert gnosis.database == "gnosis-mainnet-db"
    assert neuroweb.database == "nw-mainnet-db"
    assert neuroweb.bulk_retry.unbounded
    assert not neuroweb.retry.unbounded
    assert gnosis.bulk_retry is gnosis.retry
    assert gnosis.retry.max_attempts == 10 and gnosis.retry.delay == 3.0
    assert base.active_nodes.limit == 24
    assert not base.active_nodes.require_registered
    assert gnosis.active_nodes.min_stake == 50_000 * 10 ** 18


def test_shipped_ledger_and_checks(env):
    settings = load_settings(str(CONFIG_DIR))
    assert settings.ledger.port == 6543
    assert settings.ledger.sslmode is None
    assert settings.checks.stake_tolerance == 500_000_000_000_000_000
    assert settings.checks.knowledge_collection_tolerance == 200
    assert settings.checks.failure_threshold == 10.0
    assert settings.checks.max_blocks is None
    assert settings.checks.checkpoint_interval == 60.0
    assert settings.checks.pin_contract_reads is False


def test_select_networks(env):
    settings = load_settings(str(CONFIG_DIR))
    assert [p.key for p in settings.select(["Base"])] == ["base"]
    assert len(settings.select(None)) == 3
    with pytest.raises(KeyError, match="configured"):
        settings.select(["polygon"])


def test_checks_file_is_optional(tmp_path, env):
    (tmp_path / "networks.yaml").write_text(
        "networks:\n  gnosis:\n    rpc_url: ${GNOSIS_RPC_URL}\n    database: g\n"
    )
    (tmp_path / "ledger.yaml").write_text("ledger:\n  host: ${LEDGER_DB_HOST}\n")
    settings = load_settings(str(tmp_path))
    assert settings.network("gnosis").chunk_size == 1_000_000
    assert settings.checks.mode == "all"
    assert settings.ledger.host == "db.example"


def test_missing_env_expands_to_empty(tmp_path, monkeypatch):
    monkeypatch.delenv("STAKERECON_UNSET", raising=False)
    path = tmp_path / "x.yaml"
    path.write_text("value: ${STAKERECON_UNSET}\nitems: [a, '${STAKERECON_UNSET}b']\n")
    assert load_yaml(str(path)) == {"value": "", "items": ["a", "b"]}


def test_empty_yaml_loads_as_dict(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_yaml(str(path)) == {}

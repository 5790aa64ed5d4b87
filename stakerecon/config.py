import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from stakerecon.utils.retry import RetryPolicy
from stakerecon.utils.rpc import RpcError


ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            key = match.group(1)
            return os.environ.get(key, "")

        return ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text())
    return _expand_env(data or {})


def _rpc_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (RpcError, ConnectionError, TimeoutError, OSError))


def retry_policy_from(cfg: Optional[Dict[str, Any]]) -> RetryPolicy:
    cfg = cfg or {}
    max_attempts = cfg.get("max_attempts", 10)
    return RetryPolicy(
        max_attempts=None if max_attempts in (None, "unbounded") else int(max_attempts),
        delay=float(cfg.get("delay", 3.0)),
        backoff=float(cfg.get("backoff", 1.0)),
        max_delay=float(cfg.get("max_delay", 300.0)),
        jitter=bool(cfg.get("jitter", False)),
        is_retryable=_rpc_retryable,
    )


@dataclass(frozen=True)
class ActiveNodeRule:
    min_stake: int = 50_000 * 10**18
    require_registered: bool = True
    limit: Optional[int] = None


@dataclass(frozen=True)
class NetworkProfile:
    name: str
    rpc_url: str
    database: str
    hub_address: str = ""
    staking_storage_address: str = ""
    knowledge_collection_storage_address: str = ""
    chunk_size: int = 1_000_000
    concurrency: int = 1
    confirmations: int = 0
    rate_limit_per_second: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache_retry: Optional[RetryPolicy] = None
    active_nodes: ActiveNodeRule = field(default_factory=ActiveNodeRule)

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def bulk_retry(self) -> RetryPolicy:
        return self.cache_retry or self.retry


def profile_from(key: str, cfg: Dict[str, Any]) -> NetworkProfile:
    rule_cfg = cfg.get("active_nodes") or {}
    limit = rule_cfg.get("limit")
    return NetworkProfile(
        name=cfg.get("name", key),
        rpc_url=cfg["rpc_url"],
        database=cfg["database"],
        hub_address=cfg.get("hub_address", ""),
        staking_storage_address=cfg.get("staking_storage_address", ""),
        knowledge_collection_storage_address=cfg.get("knowledge_collection_storage_address", ""),
        chunk_size=int(cfg.get("chunk_size", 1_000_000)),
        concurrency=max(int(cfg.get("concurrency", 1)), 1),
        confirmations=int(cfg.get("confirmations", 0)),
        rate_limit_per_second=float(cfg.get("rate_limit_per_second", 5.0)),
        retry=retry_policy_from(cfg.get("retry")),
        cache_retry=retry_policy_from(cfg["cache_retry"]) if cfg.get("cache_retry") else None,
        active_nodes=ActiveNodeRule(
            min_stake=int(rule_cfg.get("min_stake", 50_000 * 10**18)),
            require_registered=bool(rule_cfg.get("require_registered", True)),
            limit=int(limit) if limit is not None else None,
        ),
    )


@dataclass(frozen=True)
class LedgerConfig:
    host: str
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    sslmode: Optional[str] = None
    connect_timeout: int = 30

    def dsn_kwargs(self, database: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "dbname": database,
            "connect_timeout": self.connect_timeout,
        }
        if self.sslmode:
            kwargs["sslmode"] = self.sslmode
        return kwargs


@dataclass(frozen=True)
class CheckConfig:
    stake_tolerance: int = 500_000_000_000_000_000
    knowledge_collection_tolerance: int = 200
    mode: str = "all"
    max_blocks: Optional[int] = None
    aggregate_children: str = "chain"
    failure_threshold: float = 10.0
    entity_concurrency: int = 5
    cache_dir: str = "cache"
    history_path: str = "cache/comparison_history.json"
    gap_dir: str = "gaps"
    incremental_save: bool = True
    checkpoint_interval: float = 60.0
    scan_buffer_blocks: int = 1000
    pin_contract_reads: bool = False


@dataclass
class Settings:
    networks: Dict[str, NetworkProfile]
    ledger: LedgerConfig
    checks: CheckConfig

    def network(self, name: str) -> NetworkProfile:
        try:
            return self.networks[name.lower()]
        except KeyError:
            known = ", ".join(sorted(self.networks))
            raise KeyError(f"Unknown network {name!r}; configured: {known}") from None

    def select(self, names: Optional[List[str]]) -> List[NetworkProfile]:
        if not names:
            return list(self.networks.values())
        return [self.network(name) for name in names]


def load_settings(config_dir: str = "config") -> Settings:
    base = Path(config_dir)
    networks_cfg = load_yaml(str(base / "networks.yaml"))
    ledger_cfg = load_yaml(str(base / "ledger.yaml"))["ledger"]
    checks_path = base / "checks.yaml"
    checks_cfg = load_yaml(str(checks_path)).get("checks", {}) if checks_path.exists() else {}

    networks = {key.lower(): profile_from(key, cfg) for key, cfg in networks_cfg["networks"].items()}
    ledger = LedgerConfig(
        host=ledger_cfg["host"],
        port=int(ledger_cfg.get("port") or 5432),
        user=ledger_cfg.get("user", "postgres"),
        password=ledger_cfg.get("password", ""),
        sslmode=ledger_cfg.get("sslmode") or None,
        connect_timeout=int(ledger_cfg.get("connect_timeout", 30)),
    )
    max_blocks = checks_cfg.get("max_blocks")
    checks = CheckConfig(
        stake_tolerance=int(checks_cfg.get("stake_tolerance", CheckConfig.stake_tolerance)),
        knowledge_collection_tolerance=int(
            checks_cfg.get("knowledge_collection_tolerance", CheckConfig.knowledge_collection_tolerance)
        ),
        mode=checks_cfg.get("mode", CheckConfig.mode),
        max_blocks=int(max_blocks) if max_blocks is not None else None,
        aggregate_children=checks_cfg.get("aggregate_children", CheckConfig.aggregate_children),
        failure_threshold=float(checks_cfg.get("failure_threshold", CheckConfig.failure_threshold)),
        entity_concurrency=max(int(checks_cfg.get("entity_concurrency", CheckConfig.entity_concurrency)), 1),
        cache_dir=checks_cfg.get("cache_dir", CheckConfig.cache_dir),
        history_path=checks_cfg.get("history_path", CheckConfig.history_path),
        gap_dir=checks_cfg.get("gap_dir", CheckConfig.gap_dir),
        incremental_save=bool(checks_cfg.get("incremental_save", CheckConfig.incremental_save)),
        checkpoint_interval=float(checks_cfg.get("checkpoint_interval", CheckConfig.checkpoint_interval)),
        scan_buffer_blocks=int(checks_cfg.get("scan_buffer_blocks", CheckConfig.scan_buffer_blocks)),
        pin_contract_reads=bool(checks_cfg.get("pin_contract_reads", CheckConfig.pin_contract_reads)),
    )
    return Settings(networks=networks, ledger=ledger, checks=checks)

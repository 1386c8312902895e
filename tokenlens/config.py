"""
Environment + YAML based settings.

- Secrets (API keys, private RPC URLs) are never hard-coded; they come from
  environment variables. For local development put them in a .env file.
- Everything else (chains, provider priorities, scanner tuning, provider error
  rules, known contract names) ships in config_defaults.yaml next to this file
  and is parsed into pydantic models.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# .env values take precedence over stale shell exports
load_dotenv(override=True)


def _env(name: str) -> str | None:
    v = os.getenv(name)
    return v if v and v.strip() else None


def _env_int(name: str, default: int) -> int:
    try:
        v = os.getenv(name)
        return int(v) if v is not None and str(v).strip() != "" else default
    except ValueError:
        return default


def _fenv(name: str, default: float) -> float:
    try:
        v = os.getenv(name)
        return float(v) if v is not None and v.strip() != "" else default
    except ValueError:
        return default


class ProviderSpec(BaseModel):
    """One configured RPC endpoint. ``url`` may still be empty after resolution."""

    name: str
    priority: int = 100
    url: str = ""
    url_env: Optional[str] = None
    key_env: Optional[str] = None

    def resolved_url(self) -> str:
        if self.url_env:
            return _env(self.url_env) or ""
        if "{key}" in self.url:
            key = _env(self.key_env) if self.key_env else None
            return self.url.replace("{key}", key) if key else ""
        return self.url.strip()


class ChainSettings(BaseModel):
    id: str = ""
    name: str
    type: Literal["evm", "solana"] = "evm"
    evm_chain_id: Optional[int] = None
    native_symbol: str = "ETH"
    native_decimals: int = 18
    explorer_url: str = ""
    blocks_per_hour: int = 300
    providers: List[ProviderSpec] = Field(default_factory=list)


class PoolSettings(BaseModel):
    max_failures_before_unhealthy: int = 3
    unhealthy_cooldown_sec: float = 300.0
    latency_ema_weight: float = 0.3


class FailoverSettings(BaseModel):
    max_attempts: int = 3
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 5.0


class TimeoutSettings(BaseModel):
    default: float = 5.0
    methods: Dict[str, float] = Field(default_factory=dict)

    def for_method(self, method: str) -> float:
        return float(self.methods.get(method, self.default))


class ScannerSettings(BaseModel):
    holder_scan_depth: int = 50_000
    dapp_scan_depth: int = 10_000
    transactions_scan_depth: int = 1_000
    holder_seed_chunk: int = 2000
    holder_min_chunk: int = 500
    dapp_seed_chunk: int = 50
    dapp_min_chunk: int = 10
    flow_seed_chunk: int = 2000
    flow_min_chunk: int = 10
    max_chunk: int = 2000
    max_consecutive_errors: int = 5
    rate_limit_backoff_sec: float = 1.0
    error_backoff_sec: float = 0.2
    pace_sec: float = 0.05
    balance_batch_size: int = 50
    max_dapp_transactions: int = 100
    dapp_top_n: int = 10


class ClassifierRuleSpec(BaseModel):
    kind: Literal["range_exceeded", "too_many_results", "rate_limited", "transient"]
    pattern: str
    provider: Optional[str] = None


class Config(BaseModel):
    """Top-level settings model."""

    pool: PoolSettings = Field(default_factory=PoolSettings)
    failover: FailoverSettings = Field(default_factory=FailoverSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    scanner: ScannerSettings = Field(default_factory=ScannerSettings)
    classifier_rules: List[ClassifierRuleSpec] = Field(default_factory=list)
    chains: Dict[str, ChainSettings] = Field(default_factory=dict)
    known_contracts: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("chains")
    @classmethod
    def _fill_chain_ids(cls, v: Dict[str, ChainSettings]) -> Dict[str, ChainSettings]:
        out = {}
        for key, chain in v.items():
            cid = str(key).lower()
            chain.id = cid
            out[cid] = chain
        return out

    @field_validator("known_contracts")
    @classmethod
    def _lower_known_contracts(cls, v: Dict[str, Dict[str, str]]) -> Dict[str, Dict[str, str]]:
        return {
            str(chain).lower(): {str(addr).lower(): str(label) for addr, label in (mapping or {}).items()}
            for chain, mapping in v.items()
        }

    def provider_urls(self, chain: str) -> List[str]:
        ch = self.chains.get(chain.lower())
        if ch is None:
            return []
        return [u for u in (p.resolved_url() for p in ch.providers) if u]


# Extra contract labels from KNOWN_CONTRACTS_FILE; a missing file is ignored.
def _load_external_known_contracts() -> dict:
    path = os.getenv("KNOWN_CONTRACTS_FILE")
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    out: dict[str, dict[str, str]] = {}
    for chain, mapping in data.items():
        if not isinstance(mapping, dict):
            continue
        out[str(chain).lower()] = {
            addr.lower(): label
            for addr, label in mapping.items()
            if isinstance(addr, str) and isinstance(label, str)
        }
    return out


def _merge_known(a: dict, b: dict) -> dict:
    res = {k: dict(v) for k, v in a.items()}
    for chain, mapping in (b or {}).items():
        res.setdefault(chain, {}).update(mapping)
    return res


def _apply_env_overrides(data: dict) -> dict:
    scanner = data.setdefault("scanner", {})
    scanner["holder_scan_depth"] = _env_int("TOKENLENS_HOLDER_SCAN_DEPTH", scanner.get("holder_scan_depth", 50_000))
    scanner["dapp_scan_depth"] = _env_int("TOKENLENS_DAPP_SCAN_DEPTH", scanner.get("dapp_scan_depth", 10_000))
    scanner["pace_sec"] = _fenv("TOKENLENS_PACE_SEC", scanner.get("pace_sec", 0.05))
    failover = data.setdefault("failover", {})
    failover["max_attempts"] = _env_int("TOKENLENS_FAILOVER_ATTEMPTS", failover.get("max_attempts", 3))
    timeouts = data.setdefault("timeouts", {})
    timeouts["default"] = _fenv("TOKENLENS_HTTP_TIMEOUT_SEC", timeouts.get("default", 5.0))
    return data


def load_config(path: Optional[Path] = None) -> Config:
    """Load settings from a YAML file, then apply environment overrides.

    Args:
        path: Optional custom YAML path. Defaults to the packaged
            config_defaults.yaml, or TOKENLENS_CONFIG when set.

    Returns:
        Parsed and validated Config object.
    """

    if path is None:
        env_path = _env("TOKENLENS_CONFIG")
        path = Path(env_path) if env_path else Path(__file__).with_name("config_defaults.yaml")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    data = _apply_env_overrides(data)
    data["known_contracts"] = _merge_known(
        {str(k).lower(): {str(a).lower(): n for a, n in (v or {}).items()} for k, v in (data.get("known_contracts") or {}).items()},
        _load_external_known_contracts(),
    )
    return Config(**data)


def get_default_config() -> Config:
    """Return a Config loaded from the default YAML file shipped with the package."""

    return load_config()

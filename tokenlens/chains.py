from __future__ import annotations

import re
from typing import Literal

from .config import ChainSettings, Config
from .errors import ConfigError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def detect_chain_type(address: str) -> Literal["evm", "solana", "unknown"]:
    if _EVM_ADDRESS_RE.match(address or ""):
        return "evm"
    if _SOLANA_ADDRESS_RE.match(address or ""):
        return "solana"
    return "unknown"


def get_chain(cfg: Config, chain_id: str) -> ChainSettings:
    chain = cfg.chains.get((chain_id or "").lower())
    if chain is None:
        raise ConfigError(f"No RPC configuration found for chain: {chain_id}")
    return chain


def evm_chains(cfg: Config) -> list[ChainSettings]:
    return [c for c in cfg.chains.values() if c.type == "evm"]


def blocks_for_hours(cfg: Config, chain_id: str, hours: float) -> int:
    """Approximate block count for a wall-clock window on ``chain_id``."""

    per_hour = get_chain(cfg, chain_id).blocks_per_hour or 300
    return int(per_hour * hours)

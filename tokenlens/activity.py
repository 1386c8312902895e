"""DApp interaction ranking.

Transactions that moved the token are grouped by the contract they actually
called (``tx.to``), which is often a router or aggregator rather than the
token itself. Gas is accumulated as an exact integer in wei.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .classifier import ErrorClassifier
from .config import Config, ScannerSettings
from .decoder import TRANSFER_TOPIC
from .errors import ScanCancelled
from .failover import FailoverExecutor
from .flow import format_units
from .rpc import hex_to_int, utc_now_iso
from .scanner import AdaptiveLogScanner, Coverage, make_chunk_fetcher, make_policy

logger = logging.getLogger(__name__)


class KnownContractRegistry:
    """chain -> lower-cased address -> display name."""

    def __init__(self, entries: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self._entries: Dict[str, Dict[str, str]] = {}
        for chain, mapping in (entries or {}).items():
            for addr, name in mapping.items():
                self.register(chain, addr, name)

    @classmethod
    def from_config(cls, cfg: Config) -> "KnownContractRegistry":
        return cls(cfg.known_contracts)

    def register(self, chain: str, address: str, name: str) -> None:
        self._entries.setdefault(chain.lower(), {})[address.lower()] = name

    def lookup(self, chain: str, address: str) -> Optional[str]:
        return self._entries.get(chain.lower(), {}).get((address or "").lower())

    def __len__(self) -> int:
        return sum(len(m) for m in self._entries.values())


@dataclass
class TxRecord:
    tx_hash: str
    to: str
    gas_used: int
    gas_price: int


@dataclass
class DAppActivityEntry:
    rank: int
    contract_address: str
    transaction_count: int
    gas_spent_wei: int
    display_name: Optional[str] = None
    native_decimals: int = 18

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "contractAddress": self.contract_address,
            "contractName": self.display_name,
            "txnCount": self.transaction_count,
            "gasSpent": format_units(self.gas_spent_wei, self.native_decimals),
        }


def rank_interactions(
    records: Iterable[TxRecord],
    registry: Optional[KnownContractRegistry] = None,
    chain: str = "ethereum",
    top_n: int = 10,
) -> List[DAppActivityEntry]:
    hashes: Dict[str, set] = {}
    gas: Dict[str, int] = {}
    for rec in records:
        to = rec.to.lower()
        seen = hashes.setdefault(to, set())
        if rec.tx_hash in seen:
            continue
        seen.add(rec.tx_hash)
        gas[to] = gas.get(to, 0) + rec.gas_used * rec.gas_price

    ordered = sorted(hashes, key=lambda a: len(hashes[a]), reverse=True)[:top_n]
    return [
        DAppActivityEntry(
            rank=i + 1,
            contract_address=addr,
            transaction_count=len(hashes[addr]),
            gas_spent_wei=gas[addr],
            display_name=registry.lookup(chain, addr) if registry else None,
        )
        for i, addr in enumerate(ordered)
    ]


@dataclass
class DAppActivityResult:
    activities: List[DAppActivityEntry]
    total_txns: int
    scan_blocks: int
    coverage: Coverage
    message: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def degraded(self) -> bool:
        return self.coverage.degraded

    @property
    def rate_limited(self) -> bool:
        return self.coverage.rate_limited

    def to_dict(self) -> dict:
        return {
            "activities": [a.to_dict() for a in self.activities],
            "totalTxns": self.total_txns,
            "scanBlocks": self.scan_blocks,
            "coverage": self.coverage.to_dict(),
            "degradedMode": self.degraded,
            "rateLimited": self.rate_limited,
            "message": self.message,
            "timestamp": self.timestamp,
        }


def activity_message(coverage: Coverage, found: int, depth: int) -> Optional[str]:
    if coverage.degraded and found == 0:
        return (
            f"Limited data available (~{coverage.coverage_percent}% coverage). "
            "RPC provider constraints prevented full scan."
        )
    if coverage.degraded:
        return (
            f"Partial data shown (~{coverage.coverage_percent}% coverage). "
            "Full analysis requires upgraded RPC access."
        )
    if found == 0:
        return f"No DApp activity found in the last {depth} blocks."
    return None


class DAppActivityScanner:
    def __init__(
        self,
        executor: FailoverExecutor,
        registry: Optional[KnownContractRegistry] = None,
        settings: Optional[ScannerSettings] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[Callable[[float], None]] = None,
        native_decimals: int = 18,
    ) -> None:
        self.executor = executor
        self.registry = registry or KnownContractRegistry()
        self.settings = settings or ScannerSettings()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self.native_decimals = native_decimals
        self.logger = logging.getLogger(self.__class__.__name__)

    def _tx_record(self, chain: str, tx_hash: str, cancel: Optional[threading.Event]) -> Optional[TxRecord]:
        tx = self.executor.run(chain, lambda c: c.get_transaction(tx_hash), cancel=cancel)
        receipt = self.executor.run(chain, lambda c: c.get_transaction_receipt(tx_hash), cancel=cancel)
        if not tx or not receipt or not tx.get("to"):
            return None
        price = hex_to_int(receipt.get("effectiveGasPrice")) or hex_to_int(tx.get("gasPrice")) or 0
        return TxRecord(tx_hash=tx_hash, to=tx["to"].lower(), gas_used=hex_to_int(receipt.get("gasUsed")) or 0, gas_price=price)

    def scan(
        self,
        token: str,
        chain: str,
        scan_depth: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DAppActivityResult:
        depth = scan_depth or self.settings.dapp_scan_depth
        latest = self.executor.run(chain, lambda c: c.block_number(), cancel=cancel)
        from_block = max(0, latest - depth)
        self.logger.info("Starting scan for %s, depth: %d blocks", token, depth)

        policy = make_policy(
            "linear",
            self.settings,
            seed_chunk=self.settings.dapp_seed_chunk,
            min_chunk=self.settings.dapp_min_chunk,
        )
        fetch = make_chunk_fetcher(self.executor, chain, token, [TRANSFER_TOPIC], self.classifier, cancel)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = AdaptiveLogScanner(fetch, policy, self.classifier, cancel=cancel, label="DAppActivity", **kwargs).scan(from_block, latest)

        tx_hashes = list(dict.fromkeys(lg.get("transactionHash") for lg in result.logs if lg.get("transactionHash")))
        self.logger.info("%d unique transactions", len(tx_hashes))

        records: List[TxRecord] = []
        for tx_hash in tx_hashes[: self.settings.max_dapp_transactions]:
            try:
                rec = self._tx_record(chain, tx_hash, cancel)
            except ScanCancelled:
                raise
            except Exception as e:  # noqa: BLE001
                self.logger.debug("Skipping transaction %s: %s", tx_hash, e)
                continue
            if rec is not None:
                records.append(rec)

        activities = rank_interactions(records, self.registry, chain, self.settings.dapp_top_n)
        for a in activities:
            a.native_decimals = self.native_decimals

        self.logger.info("Found %d active DApps", len(activities))
        return DAppActivityResult(
            activities=activities,
            total_txns=len(result.logs),
            scan_blocks=latest - from_block,
            coverage=result.coverage,
            message=activity_message(result.coverage, len(activities), depth),
        )

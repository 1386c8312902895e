"""Holder reconstruction from Transfer logs.

Two modes:
- approximate: net transfer deltas over the scanned window, positive ones kept.
  Misses holders who received before the window and never moved since.
- accurate: same deltas, then ``balanceOf`` is re-read for every address that
  moved, in fixed-size batches, and the on-chain balance wins.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Literal, Optional

import numpy as np

from .chains import ZERO_ADDRESS
from .classifier import ErrorClassifier
from .config import ScannerSettings
from .decoder import TRANSFER_TOPIC, DecodedEvent, EventKind, decode_transfers
from .errors import ScanCancelled
from .failover import FailoverExecutor
from .rpc import call_uint, encode_address_arg, function_selector, utc_now_iso
from .scanner import AdaptiveLogScanner, Coverage, make_chunk_fetcher, make_policy

logger = logging.getLogger(__name__)

BALANCE_OF = function_selector("balanceOf(address)")

Mode = Literal["approximate", "accurate"]


class HolderLedger:
    """Net balance change per address over a stream of transfers.

    The zero address is a mint/burn sentinel and is never itself credited
    or debited. Insertion order is preserved for stable ranking.
    """

    def __init__(self) -> None:
        self.deltas: Dict[str, int] = {}

    def apply(self, sender: str, receiver: str, value: int) -> None:
        sender = (sender or "").lower()
        receiver = (receiver or "").lower()
        if sender and sender != ZERO_ADDRESS:
            self.deltas[sender] = self.deltas.get(sender, 0) - value
        if receiver and receiver != ZERO_ADDRESS:
            self.deltas[receiver] = self.deltas.get(receiver, 0) + value

    def apply_event(self, ev: DecodedEvent) -> None:
        if ev.kind is not EventKind.TRANSFER:
            return
        self.apply(str(ev.fields["from"]), str(ev.fields["to"]), int(ev.fields["value"]))

    def apply_all(self, events: Iterable[DecodedEvent]) -> "HolderLedger":
        for ev in events:
            self.apply_event(ev)
        return self

    def positive(self) -> Dict[str, int]:
        return {addr: bal for addr, bal in self.deltas.items() if bal > 0}

    def moved(self) -> List[str]:
        return [addr for addr, bal in self.deltas.items() if bal != 0]


@dataclass
class HolderRecord:
    address: str
    balance: int
    percentage: float

    def to_dict(self) -> dict:
        return {"address": self.address, "balance": str(self.balance), "percentage": self.percentage}


def compute_percentage(balance: int, total_supply: int) -> float:
    # multiply before divide; only the last step is floating point
    if total_supply <= 0:
        return 0.0
    return (balance * 10000 // total_supply) / 100


def rank_holders(balances: Dict[str, int], total_supply: int) -> List[HolderRecord]:
    records = [HolderRecord(addr, bal, compute_percentage(bal, total_supply)) for addr, bal in balances.items() if bal > 0]
    # sorted() is stable, ties keep insertion order
    return sorted(records, key=lambda r: r.balance, reverse=True)


def verify_balances(
    addresses: List[str],
    fetch_balance: Callable[[str], Optional[int]],
    batch_size: int = 50,
) -> Dict[str, Optional[int]]:
    """Read balances in batches of ``batch_size`` concurrent calls.

    A failed read maps to None; the caller decides what to fall back to.
    """

    def _one(addr: str) -> Optional[int]:
        try:
            return fetch_balance(addr)
        except ScanCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to get balance for %s: %s", addr, e)
            return None

    out: Dict[str, Optional[int]] = {}
    size = max(1, batch_size)
    with ThreadPoolExecutor(max_workers=size) as pool:
        for i in range(0, len(addresses), size):
            batch = addresses[i : i + size]
            for addr, bal in zip(batch, pool.map(_one, batch)):
                out[addr] = bal
    return out


def categorize_holders(holders: Iterable[HolderRecord]) -> Dict[str, int]:
    cats = {"whales": 0, "large": 0, "medium": 0, "small": 0}
    for h in holders:
        if h.percentage >= 1:
            cats["whales"] += 1
        elif h.percentage >= 0.1:
            cats["large"] += 1
        elif h.percentage >= 0.01:
            cats["medium"] += 1
        else:
            cats["small"] += 1
    return cats


def holder_concentration(holders: List[HolderRecord], total_supply: int) -> Dict[str, float]:
    """Top-holder shares (percent of supply) and a normalized HHI in [0,1]."""

    if not holders or total_supply <= 0:
        return {"top1_percent": 0.0, "top10_percent": 0.0, "hhi": 0.0, "nhhi": 0.0}
    balances = np.array([float(h.balance) for h in holders], dtype=float)
    shares = np.clip(balances / float(total_supply), 0.0, 1.0)
    ordered = np.sort(shares)[::-1]
    hhi = float(np.sum(shares**2))
    n = len(shares)
    min_hhi = 1.0 / n
    nhhi = 0.0 if n <= 1 else (hhi - min_hhi) / (1.0 - min_hhi)
    return {
        "top1_percent": round(float(ordered[0]) * 100, 4),
        "top10_percent": round(float(np.sum(ordered[:10])) * 100, 4),
        "hhi": hhi,
        "nhhi": max(0.0, min(1.0, nhhi)),
    }


@dataclass
class HolderScanResult:
    holders: List[HolderRecord]
    total_holders: int
    from_block: int
    to_block: int
    coverage: Coverage
    completeness: Literal["recent", "partial"]
    mode: str = "approximate"
    message: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "holders": [h.to_dict() for h in self.holders],
            "totalHolders": self.total_holders,
            "blockRange": {"from": self.from_block, "to": self.to_block, "scanned": self.coverage.scanned_blocks},
            "coverage": self.coverage.to_dict(),
            "completeness": self.completeness,
            "mode": self.mode,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class HolderScanner:
    def __init__(
        self,
        executor: FailoverExecutor,
        settings: Optional[ScannerSettings] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.executor = executor
        self.settings = settings or ScannerSettings()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    def _read_balance(self, chain: str, token: str, cancel: Optional[threading.Event]) -> Callable[[str], Optional[int]]:
        def _fetch(addr: str) -> Optional[int]:
            return self.executor.run(
                chain,
                lambda c: call_uint(c, token, BALANCE_OF, encode_address_arg(addr)),
                cancel=cancel,
            )

        return _fetch

    def scan(
        self,
        token: str,
        chain: str,
        total_supply: int | str,
        scan_depth: Optional[int] = None,
        mode: Mode = "approximate",
        cancel: Optional[threading.Event] = None,
    ) -> HolderScanResult:
        depth = scan_depth or self.settings.holder_scan_depth
        supply = int(total_supply)
        latest = self.executor.run(chain, lambda c: c.block_number(), cancel=cancel)
        from_block = max(0, latest - depth)
        self.logger.info("Scanning %s on %s from block %d to %d (%s mode)", token, chain, from_block, latest, mode)

        policy = make_policy(
            "binary",
            self.settings,
            seed_chunk=self.settings.holder_seed_chunk,
            min_chunk=self.settings.holder_min_chunk,
        )
        fetch = make_chunk_fetcher(self.executor, chain, token, [TRANSFER_TOPIC], self.classifier, cancel)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = AdaptiveLogScanner(fetch, policy, self.classifier, cancel=cancel, label="HolderScanner", **kwargs).scan(from_block, latest)
        cov = result.coverage

        ledger = HolderLedger().apply_all(decode_transfers(result.logs, token))

        if mode == "accurate":
            moved = ledger.moved()
            self.logger.info("Verifying balanceOf() for %d addresses", len(moved))
            verified = verify_balances(moved, self._read_balance(chain, token, cancel), self.settings.balance_batch_size)
            balances: Dict[str, int] = {}
            for addr in moved:
                bal = verified.get(addr)
                # unreadable balance falls back to the window delta
                balances[addr] = ledger.deltas[addr] if bal is None else bal
        else:
            balances = ledger.positive()

        holders = rank_holders(balances, supply)

        completeness: Literal["recent", "partial"] = "recent"
        if cov.failed_chunks > cov.successful_chunks or not holders:
            completeness = "partial"

        message = None
        if not holders and not cov.degraded:
            message = f"No holders found in the last {depth} blocks."
        elif cov.degraded:
            message = (
                f"Limited data available (~{cov.coverage_percent}% coverage). "
                "RPC provider constraints prevented full scan."
            )

        self.logger.info(
            "Found %d holders (%d successful chunks, %d failed chunks)",
            len(holders),
            cov.successful_chunks,
            cov.failed_chunks,
        )
        return HolderScanResult(
            holders=holders,
            total_holders=len(holders),
            from_block=from_block,
            to_block=latest,
            coverage=cov,
            completeness=completeness,
            mode=mode,
            message=message,
        )

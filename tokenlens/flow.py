from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from .chains import ZERO_ADDRESS
from .classifier import ErrorClassifier
from .config import ScannerSettings
from .decoder import TRANSFER_TOPIC, decode_transfers
from .errors import RPCError, ScanCancelled
from .failover import FailoverExecutor
from .rpc import hex_to_int, utc_now_iso
from .scanner import AdaptiveLogScanner, Coverage, make_chunk_fetcher, make_policy

logger = logging.getLogger(__name__)

# label -> window length in hours
FLOW_WINDOWS: Dict[str, int] = {"24h": 24, "12h": 12, "4h": 4}


def format_units(value: int, decimals: int) -> str:
    """Render a raw integer amount with ``decimals`` places, e.g. ``1.5`` / ``0.0``."""

    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals) if decimals > 0 else (abs(value), 0)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals > 0 else ""
    return f"{sign}{whole}.{frac_str or '0'}"


@dataclass
class TimedTransfer:
    sender: str
    receiver: str
    value: int
    block_number: int
    timestamp: int


@dataclass
class FlowPeriod:
    inflow: str
    outflow: str
    net_flow: str
    transfer_count: int
    unique_addresses: int
    inflow_usd: Optional[float] = None
    outflow_usd: Optional[float] = None
    net_flow_usd: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "inflow": self.inflow,
            "outflow": self.outflow,
            "netFlow": self.net_flow,
            "inflowUSD": self.inflow_usd,
            "outflowUSD": self.outflow_usd,
            "netFlowUSD": self.net_flow_usd,
            "transferCount": self.transfer_count,
            "uniqueAddresses": self.unique_addresses,
        }


@dataclass
class TokenFlowMetrics:
    period_24h: FlowPeriod
    period_12h: FlowPeriod
    period_4h: FlowPeriod
    coverage: Coverage
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "period24h": self.period_24h.to_dict(),
            "period12h": self.period_12h.to_dict(),
            "period4h": self.period_4h.to_dict(),
            "coverage": self.coverage.to_dict(),
            "timestamp": self.timestamp,
        }


def calculate_flow_for_period(
    transfers: List[TimedTransfer],
    cutoff_timestamp: int,
    decimals: int,
    price: Optional[float] = None,
) -> FlowPeriod:
    """Aggregate transfers at or after ``cutoff_timestamp``.

    Every transfer is an outflow for its sender and an inflow for its receiver,
    so inflow equals outflow and net flow is zero token-wide. Mints and burns
    are counted as transfers but excluded from the sums.
    """

    period = [t for t in transfers if t.timestamp >= cutoff_timestamp]
    if not period:
        zero_usd = 0.0 if price else None
        return FlowPeriod("0", "0", "0", 0, 0, zero_usd, zero_usd, zero_usd)

    inflow = outflow = 0
    addresses = set()
    for t in period:
        if t.sender == ZERO_ADDRESS or t.receiver == ZERO_ADDRESS:
            continue
        inflow += t.value
        outflow += t.value
        addresses.add(t.sender.lower())
        addresses.add(t.receiver.lower())

    inflow_s = format_units(inflow, decimals)
    outflow_s = format_units(outflow, decimals)
    net_s = format_units(inflow - outflow, decimals)

    usd = [None, None, None]
    if price:
        px = Decimal(str(price))
        usd = [float(Decimal(s) * px) for s in (inflow_s, outflow_s, net_s)]

    return FlowPeriod(
        inflow=inflow_s,
        outflow=outflow_s,
        net_flow=net_s,
        transfer_count=len(period),
        unique_addresses=len(addresses),
        inflow_usd=usd[0],
        outflow_usd=usd[1],
        net_flow_usd=usd[2],
    )


class FlowAnalyzer:
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

    def _block_timestamp(self, chain: str, number: int, cancel: Optional[threading.Event]) -> Optional[int]:
        block = self.executor.run(chain, lambda c: c.get_block(number), cancel=cancel)
        return hex_to_int((block or {}).get("timestamp"))

    def _timed_transfers(self, chain: str, token: str, logs: List[dict], cancel: Optional[threading.Event]) -> List[TimedTransfer]:
        cache: Dict[int, Optional[int]] = {}
        out: List[TimedTransfer] = []
        for ev in decode_transfers(logs, token):
            number = ev.log.block_number if ev.log else None
            if number is None:
                continue
            if number not in cache:
                try:
                    cache[number] = self._block_timestamp(chain, number, cancel)
                except ScanCancelled:
                    raise
                except Exception as e:  # noqa: BLE001
                    self.logger.warning("Failed to fetch block %d: %s", number, e)
                    cache[number] = None
            ts = cache[number]
            if ts is None:
                continue
            out.append(TimedTransfer(str(ev.fields["from"]), str(ev.fields["to"]), int(ev.fields["value"]), number, ts))
        return out

    def analyze(
        self,
        token: str,
        chain: str,
        decimals: int,
        price: Optional[float] = None,
        blocks_per_hour: int = 300,
        cancel: Optional[threading.Event] = None,
    ) -> TokenFlowMetrics:
        latest = self.executor.run(chain, lambda c: c.block_number(), cancel=cancel)
        latest_block = self.executor.run(chain, lambda c: c.get_block(latest), cancel=cancel)
        now_ts = hex_to_int((latest_block or {}).get("timestamp"))
        if now_ts is None:
            raise RPCError("Failed to fetch latest block")

        from_block = max(0, latest - blocks_per_hour * max(FLOW_WINDOWS.values()))
        self.logger.info("Scanning blocks %d to %d for %s", from_block, latest, token)

        policy = make_policy(
            "linear",
            self.settings,
            seed_chunk=self.settings.flow_seed_chunk,
            min_chunk=self.settings.flow_min_chunk,
        )
        fetch = make_chunk_fetcher(self.executor, chain, token, [TRANSFER_TOPIC], self.classifier, cancel)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = AdaptiveLogScanner(fetch, policy, self.classifier, cancel=cancel, label="FlowAnalyzer", **kwargs).scan(from_block, latest)

        transfers = self._timed_transfers(chain, token, result.logs, cancel)
        self.logger.info("Found %d transfers in last 24h", len(transfers))

        periods = {
            label: calculate_flow_for_period(transfers, now_ts - hours * 3600, decimals, price)
            for label, hours in FLOW_WINDOWS.items()
        }
        return TokenFlowMetrics(
            period_24h=periods["24h"],
            period_12h=periods["12h"],
            period_4h=periods["4h"],
            coverage=result.coverage,
        )


def analyze_token_flow(
    executor: FailoverExecutor,
    token: str,
    chain: str,
    decimals: int,
    price: Optional[float] = None,
    **kwargs,
) -> TokenFlowMetrics:
    return FlowAnalyzer(executor).analyze(token, chain, decimals, price, **kwargs)

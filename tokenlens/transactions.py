from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .classifier import ErrorClassifier
from .config import ScannerSettings
from .decoder import TRANSFER_TOPIC, DecodedEvent, EventKind, classify_transaction, decode_function_name, decode_logs
from .errors import ScanCancelled
from .failover import FailoverExecutor
from .rpc import hex_to_int
from .scanner import AdaptiveLogScanner, Coverage, make_chunk_fetcher, make_policy

logger = logging.getLogger(__name__)


def _gwei(wei: int) -> str:
    return f"{wei / 1e9:.2f}"


@dataclass
class DecodedTransaction:
    hash: str
    block_number: int
    timestamp: int
    sender: str
    recipient: str
    value: str
    gas_used: int
    gas_price_gwei: str
    effective_gas_price_gwei: str
    status: str
    type: str
    events: List[DecodedEvent] = field(default_factory=list)
    function_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "from": self.sender,
            "to": self.recipient,
            "value": self.value,
            "gasUsed": str(self.gas_used),
            "gasPrice": self.gas_price_gwei,
            "effectiveGasPrice": self.effective_gas_price_gwei,
            "status": self.status,
            "type": self.type,
            "decodedLogs": [
                {"eventName": ev.kind.value, "args": {k: str(v) for k, v in ev.fields.items()}} for ev in self.events
            ],
            "decodedInput": {"functionName": self.function_name} if self.function_name else None,
        }


@dataclass
class LiveTransactions:
    transactions: List[DecodedTransaction]
    coverage: Coverage


class LiveTransactionScanner:
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

    def _decode_one(self, chain: str, token: str, tx_hash: str, cancel: Optional[threading.Event]) -> Optional[DecodedTransaction]:
        tx = self.executor.run(chain, lambda c: c.get_transaction(tx_hash), cancel=cancel)
        receipt = self.executor.run(chain, lambda c: c.get_transaction_receipt(tx_hash), cancel=cancel)
        if not tx or not receipt:
            return None
        number = hex_to_int(receipt.get("blockNumber"))
        if number is None:
            return None
        block = self.executor.run(chain, lambda c: c.get_block(number), cancel=cancel)
        if not block:
            return None

        events = decode_logs(receipt.get("logs") or [])
        token_lc = token.lower()
        main = next(
            (ev for ev in events if ev.kind is EventKind.TRANSFER and ev.log is not None and ev.log.address == token_lc),
            None,
        )
        gas_price = hex_to_int(tx.get("gasPrice")) or 0
        effective = hex_to_int(receipt.get("effectiveGasPrice")) or gas_price
        return DecodedTransaction(
            hash=tx_hash,
            block_number=number,
            timestamp=hex_to_int(block.get("timestamp")) or 0,
            sender=str(main.fields["from"]) if main else str(tx.get("from") or "").lower(),
            recipient=str(main.fields["to"]) if main else str(tx.get("to") or "").lower(),
            value=str(main.fields["value"]) if main else "0",
            gas_used=hex_to_int(receipt.get("gasUsed")) or 0,
            gas_price_gwei=_gwei(gas_price),
            effective_gas_price_gwei=_gwei(effective),
            status="success" if hex_to_int(receipt.get("status")) == 1 else "failed",
            type=classify_transaction(events),
            events=events,
            function_name=decode_function_name(tx.get("input")),
        )

    def scan(
        self,
        token: str,
        chain: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        max_results: int = 50,
        cancel: Optional[threading.Event] = None,
    ) -> LiveTransactions:
        """Most recent token transactions first, at most ``max_results``."""

        if to_block is None:
            to_block = self.executor.run(chain, lambda c: c.block_number(), cancel=cancel)
        if from_block is None:
            from_block = max(0, to_block - self.settings.transactions_scan_depth)

        policy = make_policy(
            "linear",
            self.settings,
            seed_chunk=self.settings.dapp_seed_chunk,
            min_chunk=self.settings.dapp_min_chunk,
        )
        fetch = make_chunk_fetcher(self.executor, chain, token, [TRANSFER_TOPIC], self.classifier, cancel)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = AdaptiveLogScanner(fetch, policy, self.classifier, cancel=cancel, label="LiveTransactions", **kwargs).scan(from_block, to_block)

        by_hash: Dict[str, int] = {}
        for lg in result.logs:
            h = lg.get("transactionHash")
            if h and h not in by_hash:
                by_hash[h] = hex_to_int(lg.get("blockNumber")) or 0
        # newest first so the cap keeps the most recent ones
        hashes = sorted(by_hash, key=lambda h: by_hash[h], reverse=True)

        out: List[DecodedTransaction] = []
        for tx_hash in hashes:
            if len(out) >= max_results:
                break
            try:
                decoded = self._decode_one(chain, token, tx_hash, cancel)
            except ScanCancelled:
                raise
            except Exception as e:  # noqa: BLE001
                self.logger.warning("Failed to process transaction %s: %s", tx_hash, e)
                continue
            if decoded is not None:
                out.append(decoded)

        out.sort(key=lambda t: t.block_number, reverse=True)
        return LiveTransactions(transactions=out, coverage=result.coverage)


def scan_live_transactions(
    executor: FailoverExecutor,
    token: str,
    chain: str,
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
    max_results: int = 50,
    **kwargs,
) -> List[DecodedTransaction]:
    return LiveTransactionScanner(executor).scan(token, chain, from_block, to_block, max_results, **kwargs).transactions

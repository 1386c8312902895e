from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_utils import keccak

from .chains import ZERO_ADDRESS
from .rpc import function_selector, hex_to_address, hex_to_int

logger = logging.getLogger(__name__)


def event_topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


class EventKind(str, enum.Enum):
    TRANSFER = "Transfer"
    APPROVAL = "Approval"
    MINT = "Mint"
    BURN = "Burn"
    SWAP = "Swap"


EVENT_SIGNATURES: Dict[EventKind, str] = {
    EventKind.TRANSFER: "Transfer(address,address,uint256)",
    EventKind.APPROVAL: "Approval(address,address,uint256)",
    EventKind.MINT: "Mint(address,uint256)",
    EventKind.BURN: "Burn(address,uint256)",
    EventKind.SWAP: "Swap(address,uint256,uint256,uint256,uint256,address)",
}

EVENT_TOPICS: Dict[EventKind, str] = {kind: event_topic(sig) for kind, sig in EVENT_SIGNATURES.items()}
_KIND_BY_TOPIC: Dict[str, EventKind] = {topic: kind for kind, topic in EVENT_TOPICS.items()}

TRANSFER_TOPIC = EVENT_TOPICS[EventKind.TRANSFER]

FUNCTION_SIGNATURES: Dict[str, str] = {
    "transfer": "transfer(address,uint256)",
    "approve": "approve(address,uint256)",
    "transferFrom": "transferFrom(address,address,uint256)",
    "mint": "mint(address,uint256)",
    "burn": "burn(uint256)",
    "swap": "swap(uint256,uint256,address,bytes)",
}
_FUNCTION_BY_SELECTOR: Dict[str, str] = {function_selector(sig): name for name, sig in FUNCTION_SIGNATURES.items()}

# first match wins; swaps also emit Transfer events
TX_TYPE_PRECEDENCE: List[Tuple[EventKind, str]] = [
    (EventKind.SWAP, "swap"),
    (EventKind.MINT, "mint"),
    (EventKind.BURN, "burn"),
    (EventKind.APPROVAL, "approve"),
    (EventKind.TRANSFER, "transfer"),
]


@dataclass(frozen=True)
class LogEvent:
    address: str
    topics: Tuple[str, ...]
    data: str
    block_number: Optional[int]
    transaction_hash: Optional[str]
    log_index: Optional[int] = None

    @classmethod
    def from_rpc(cls, raw: dict) -> "LogEvent":
        return cls(
            address=str(raw.get("address") or "").lower(),
            topics=tuple(str(t).lower() for t in (raw.get("topics") or [])),
            data=raw.get("data") or "0x",
            block_number=hex_to_int(raw.get("blockNumber")),
            transaction_hash=raw.get("transactionHash"),
            log_index=hex_to_int(raw.get("logIndex")),
        )


@dataclass
class DecodedEvent:
    kind: EventKind
    fields: Dict[str, object] = field(default_factory=dict)
    log: Optional[LogEvent] = None

    @property
    def is_mint_transfer(self) -> bool:
        return self.kind is EventKind.TRANSFER and self.fields.get("from") == ZERO_ADDRESS

    @property
    def is_burn_transfer(self) -> bool:
        return self.kind is EventKind.TRANSFER and self.fields.get("to") == ZERO_ADDRESS


def _topic_address(log: LogEvent, index: int) -> str:
    if len(log.topics) <= index:
        raise ValueError(f"log is missing indexed topic {index}")
    addr = hex_to_address(log.topics[index])
    if addr is None:
        raise ValueError(f"topic {index} is not an address word")
    return addr


def _data_uints(log: LogEvent, count: int) -> Tuple[int, ...]:
    raw = bytes.fromhex(log.data[2:] if log.data.startswith("0x") else log.data)
    return tuple(abi_decode(["uint256"] * count, raw))


def decode_log(raw: dict | LogEvent) -> Optional[DecodedEvent]:
    """Decode one log against the signature table.

    Returns None for logs whose first topic is not in the table and raises
    ``ValueError`` / eth-abi decoding errors for malformed ones.
    """

    log = raw if isinstance(raw, LogEvent) else LogEvent.from_rpc(raw)
    if not log.topics:
        return None
    kind = _KIND_BY_TOPIC.get(log.topics[0])
    if kind is None:
        return None

    if kind is EventKind.TRANSFER:
        (value,) = _data_uints(log, 1)
        fields = {"from": _topic_address(log, 1), "to": _topic_address(log, 2), "value": value}
    elif kind is EventKind.APPROVAL:
        (value,) = _data_uints(log, 1)
        fields = {"owner": _topic_address(log, 1), "spender": _topic_address(log, 2), "value": value}
    elif kind is EventKind.MINT:
        (amount,) = _data_uints(log, 1)
        fields = {"to": _topic_address(log, 1), "amount": amount}
    elif kind is EventKind.BURN:
        (amount,) = _data_uints(log, 1)
        fields = {"from": _topic_address(log, 1), "amount": amount}
    else:
        a0_in, a1_in, a0_out, a1_out = _data_uints(log, 4)
        fields = {
            "sender": _topic_address(log, 1),
            "to": _topic_address(log, 2),
            "amount0In": a0_in,
            "amount1In": a1_in,
            "amount0Out": a0_out,
            "amount1Out": a1_out,
        }
    return DecodedEvent(kind=kind, fields=fields, log=log)


def decode_logs(logs: Iterable[dict | LogEvent], token: Optional[str] = None) -> List[DecodedEvent]:
    """Decode a batch; malformed or non-standard logs are skipped.

    With ``token`` set, logs emitted by other contracts are ignored.
    """

    token_lc = token.lower() if token else None
    out: List[DecodedEvent] = []
    for raw in logs:
        try:
            log = raw if isinstance(raw, LogEvent) else LogEvent.from_rpc(raw)
            if token_lc and log.address != token_lc:
                continue
            ev = decode_log(log)
        except Exception as e:  # noqa: BLE001
            logger.debug("Failed to decode log: %s", e)
            continue
        if ev is not None:
            out.append(ev)
    return out


def decode_transfers(logs: Iterable[dict | LogEvent], token: Optional[str] = None) -> List[DecodedEvent]:
    return [ev for ev in decode_logs(logs, token) if ev.kind is EventKind.TRANSFER]


def classify_transaction(events: Iterable[DecodedEvent]) -> str:
    kinds = {ev.kind for ev in events}
    for kind, label in TX_TYPE_PRECEDENCE:
        if kind in kinds:
            return label
    return "other"


def decode_function_name(input_data: Optional[str]) -> Optional[str]:
    """Name of a well-known token function from calldata, "unknown" otherwise."""

    if not input_data or input_data == "0x":
        return None
    return _FUNCTION_BY_SELECTOR.get(input_data[:10].lower(), "unknown")

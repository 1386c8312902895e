from __future__ import annotations

import itertools
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

import requests
from eth_utils import keccak

from .config import TimeoutSettings
from .errors import CallReverted, RPCError

logger = logging.getLogger(__name__)

BlockId = Union[int, str]

_ids = itertools.count(1)


def _block_param(block: BlockId) -> str:
    return hex(block) if isinstance(block, int) else block


def hex_to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16) if value != "0x" else 0
    return None


def hex_to_address(hex32: Optional[str]) -> Optional[str]:
    """Low 20 bytes of a 32-byte word, lower-cased."""

    if not hex32 or not isinstance(hex32, str) or not hex32.startswith("0x") or len(hex32) < 42:
        return None
    return "0x" + hex32[-40:].lower()


def encode_address_arg(address: str) -> str:
    return address.lower().replace("0x", "").rjust(64, "0")


def function_selector(signature: str) -> str:
    """``0x``-prefixed 4-byte selector of a canonical function signature."""

    return "0x" + keccak(text=signature)[:4].hex()


def _is_revert(error: dict) -> bool:
    msg = str(error.get("message", "")).lower()
    return error.get("code") == 3 or "revert" in msg or "invalid opcode" in msg


class EVMClient:
    """JSON-RPC client bound to a single endpoint.

    One instance is one "live connection" for a failover attempt; it keeps no
    health state of its own.
    """

    def __init__(
        self,
        url: str,
        session: Optional[requests.Session] = None,
        timeouts: Optional[TimeoutSettings] = None,
    ) -> None:
        if not url:
            raise ValueError("EVMClient needs a provider URL")
        self.url = url
        self.session = session or requests.Session()
        self.timeouts = timeouts or TimeoutSettings()

    def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(_ids), "method": method, "params": params}
        try:
            res = self.session.post(self.url, json=payload, timeout=self.timeouts.for_method(method))
        except requests.exceptions.RequestException as e:
            raise RPCError(f"{method}: {e}", provider=self.url) from e
        if res.status_code != 200:
            raise RPCError(f"{method}: HTTP {res.status_code} {res.text[:200]}", status=res.status_code, provider=self.url)
        try:
            data = res.json()
        except ValueError as e:
            raise RPCError(f"{method}: invalid JSON response", provider=self.url) from e
        if isinstance(data, dict) and data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            exc_type = CallReverted if method == "eth_call" and _is_revert(err) else RPCError
            raise exc_type(f"{method}: {err.get('message', err)}", code=err.get("code"), provider=self.url)
        return data.get("result") if isinstance(data, dict) else None

    def block_number(self) -> int:
        return int(self._rpc("eth_blockNumber", []), 16)

    def get_block(self, number: BlockId = "latest") -> Optional[dict]:
        return self._rpc("eth_getBlockByNumber", [_block_param(number), False])

    def get_logs(self, address: Optional[str], topics: List[Optional[str]], from_block: int, to_block: int) -> list[dict]:
        flt: dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block), "topics": topics}
        if address:
            flt["address"] = address
        return self._rpc("eth_getLogs", [flt]) or []

    def get_code(self, address: str, block: BlockId = "latest") -> str:
        return self._rpc("eth_getCode", [address, _block_param(block)]) or "0x"

    def get_storage_at(self, address: str, slot_hex: str, block: BlockId = "latest") -> Optional[str]:
        return self._rpc("eth_getStorageAt", [address, slot_hex, _block_param(block)])

    def eth_call(self, to: str, data: str, block: BlockId = "latest") -> str:
        return self._rpc("eth_call", [{"to": to, "data": data}, _block_param(block)]) or "0x"

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return self._rpc("eth_getTransactionByHash", [tx_hash])

    def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return self._rpc("eth_getTransactionReceipt", [tx_hash])


def call_uint(client: EVMClient, to: str, selector: str, args: str = "") -> Optional[int]:
    """Read a ``uint``-returning view; ``None`` when the function is absent or reverts."""

    try:
        out = client.eth_call(to, selector + args)
    except CallReverted:
        return None
    if not out or out == "0x":
        return None
    return int(out[:66], 16)


def call_address(client: EVMClient, to: str, selector: str) -> Optional[str]:
    try:
        out = client.eth_call(to, selector)
    except CallReverted:
        return None
    return hex_to_address(out[:66]) if out and out != "0x" else None


def call_bool(client: EVMClient, to: str, selector: str) -> Optional[bool]:
    value = call_uint(client, to, selector)
    return None if value is None else bool(value)


def iso_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from tokenlens.config import FailoverSettings, PoolSettings
from tokenlens.decoder import EVENT_TOPICS, TRANSFER_TOPIC, EventKind
from tokenlens.errors import CallReverted, RPCError
from tokenlens.failover import FailoverExecutor
from tokenlens.provider_pool import Provider, ProviderPool
from tokenlens.rpc import hex_to_address

TOKEN = "0x1111111111111111111111111111111111111111"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"
DAVE = "0xdddddddddddddddddddddddddddddddddddddddd"
ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"  # Uniswap V2: Router
ZERO = "0x" + "0" * 40

BLOCK_TIME = 12


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def word(value: int) -> str:
    return "0x" + format(value, "064x")


def address_topic(addr: str) -> str:
    return "0x" + addr.lower().replace("0x", "").rjust(64, "0")


def transfer_log(
    sender: str,
    receiver: str,
    value: int,
    block: int,
    tx_hash: Optional[str] = None,
    token: str = TOKEN,
    log_index: int = 0,
) -> dict:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(receiver)],
        "data": word(value),
        "blockNumber": hex(block),
        "transactionHash": tx_hash or f"0x{block:064x}",
        "logIndex": hex(log_index),
    }


def event_log(kind: EventKind, topics: Sequence[str], data: str, block: int = 1, token: str = TOKEN, tx_hash: str = "0x01") -> dict:
    return {
        "address": token,
        "topics": [EVENT_TOPICS[kind], *topics],
        "data": data,
        "blockNumber": hex(block),
        "transactionHash": tx_hash,
        "logIndex": "0x0",
    }


class FakeChain:
    """In-memory EVM state shared by every FakeClient.

    - ``range_limit``: eth_getLogs spans above it fail with a provider-style message
    - ``log_errors``: exceptions raised by successive eth_getLogs calls, in order
    - ``down``: provider URLs that fail every request
    - ``calls``: (to, selector) -> int | hex str | Exception for eth_call
    - ``call_log``: every (to, selector) eth_call received, in order
    """

    def __init__(self, latest: int = 1_000, genesis_ts: int = 0) -> None:
        self.latest = latest
        self.genesis_ts = genesis_ts
        self.logs: List[dict] = []
        self.range_limit: Optional[int] = None
        self.log_errors: List[Exception] = []
        self.down: set = set()
        self.code: Dict[str, Tuple[int, str]] = {}
        self.storage: Dict[Tuple[str, str], str] = {}
        self.calls: Dict[Tuple[str, str], object] = {}
        self.call_log: List[Tuple[str, str]] = []
        self.balances: Dict[str, int] = {}
        self.balance_errors: set = set()
        self.txs: Dict[str, dict] = {}
        self.receipts: Dict[str, dict] = {}
        self.get_logs_ranges: List[Tuple[int, int]] = []
        self.block_requests: List[int] = []

    def timestamp(self, number: int) -> int:
        return self.genesis_ts + number * BLOCK_TIME

    def set_code(self, address: str, code: str, deployed_at: int = 0) -> None:
        self.code[address.lower()] = (deployed_at, code)

    def add_tx(self, tx_hash: str, sender: str, to: str, block: int, gas_used: int, gas_price: int, input_data: str = "0x", logs=None) -> None:
        self.txs[tx_hash] = {"hash": tx_hash, "from": sender, "to": to, "gasPrice": hex(gas_price), "input": input_data}
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": hex(block),
            "gasUsed": hex(gas_used),
            "effectiveGasPrice": hex(gas_price),
            "status": "0x1",
            "logs": logs or [],
        }


class FakeClient:
    def __init__(self, chain: FakeChain, url: str) -> None:
        self.chain = chain
        self.url = url

    def _check(self, method: str) -> None:
        if self.url in self.chain.down:
            raise RPCError(f"{method}: connection refused", provider=self.url)

    def block_number(self) -> int:
        self._check("eth_blockNumber")
        return self.chain.latest

    def get_block(self, number="latest") -> Optional[dict]:
        self._check("eth_getBlockByNumber")
        n = self.chain.latest if number == "latest" else int(number)
        if n > self.chain.latest:
            return None
        self.chain.block_requests.append(n)
        return {"number": hex(n), "timestamp": hex(self.chain.timestamp(n))}

    def get_logs(self, address, topics, from_block: int, to_block: int) -> List[dict]:
        self._check("eth_getLogs")
        self.chain.get_logs_ranges.append((from_block, to_block))
        if self.chain.log_errors:
            raise self.chain.log_errors.pop(0)
        limit = self.chain.range_limit
        if limit is not None and to_block - from_block + 1 > limit:
            raise RPCError(
                f"eth_getLogs: Under the Free tier plan, you can make eth_getLogs requests with up to a {limit} block range.",
                code=-32600,
                provider=self.url,
            )
        out = []
        for lg in self.chain.logs:
            n = int(lg["blockNumber"], 16)
            if not from_block <= n <= to_block:
                continue
            if address and lg["address"].lower() != address.lower():
                continue
            if topics and topics[0] and lg["topics"][0] != topics[0]:
                continue
            out.append(lg)
        return out

    def get_code(self, address: str, block="latest") -> str:
        self._check("eth_getCode")
        entry = self.chain.code.get(address.lower())
        if entry is None:
            return "0x"
        deployed_at, code = entry
        if block != "latest" and int(block) < deployed_at:
            return "0x"
        return code

    def get_storage_at(self, address: str, slot_hex: str, block="latest") -> Optional[str]:
        self._check("eth_getStorageAt")
        return self.chain.storage.get((address.lower(), slot_hex), word(0))

    def eth_call(self, to: str, data: str, block="latest") -> str:
        self._check("eth_call")
        selector = data[:10]
        self.chain.call_log.append((to.lower(), selector))
        if selector == "0x70a08231":  # balanceOf(address)
            holder = hex_to_address("0x" + data[10:74])
            if holder in self.chain.balance_errors:
                raise RPCError("eth_call: upstream timeout", provider=self.url)
            return word(self.chain.balances.get(holder, 0))
        result = self.chain.calls.get((to.lower(), selector))
        if result is None:
            raise CallReverted("eth_call: execution reverted", code=3, provider=self.url)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, bool):
            return word(int(result))
        if isinstance(result, int):
            return word(result)
        return str(result)

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        self._check("eth_getTransactionByHash")
        return self.chain.txs.get(tx_hash)

    def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        self._check("eth_getTransactionReceipt")
        return self.chain.receipts.get(tx_hash)


def make_pool(urls: Sequence[str] = ("https://rpc-a.test", "https://rpc-b.test"), clock=None, chain_id: str = "ethereum") -> ProviderPool:
    providers = [Provider(url=u, name=f"p{i}", priority=i + 1) for i, u in enumerate(urls)]
    kwargs = {"clock": clock} if clock else {}
    return ProviderPool({chain_id: providers}, PoolSettings(), **kwargs)


def make_executor(
    chain: FakeChain,
    urls: Sequence[str] = ("https://rpc-a.test", "https://rpc-b.test"),
    sleep: Optional[RecordingSleep] = None,
    max_attempts: int = 3,
) -> FailoverExecutor:
    return FailoverExecutor(
        make_pool(urls),
        FailoverSettings(max_attempts=max_attempts),
        client_factory=lambda url: FakeClient(chain, url),
        sleep=sleep or RecordingSleep(),
    )

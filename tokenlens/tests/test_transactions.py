from __future__ import annotations

from tokenlens.config import ScannerSettings
from tokenlens.transactions import LiveTransactionScanner
from .fixtures import ALICE, BOB, CAROL, ROUTER, TOKEN, FakeChain, RecordingSleep, make_executor, transfer_log


def _tx(n: int) -> str:
    return "0x" + format(n, "064x")


def _chain() -> FakeChain:
    chain = FakeChain(latest=500)
    for i, block in enumerate((100, 200, 300), start=1):
        log = transfer_log(ALICE, BOB, i * 1_000, block=block, tx_hash=_tx(i))
        chain.logs.append(log)
        chain.add_tx(_tx(i), ALICE, TOKEN, block, gas_used=50_000, gas_price=12_345_678_901, input_data="0xa9059cbb" + "0" * 128, logs=[log])
    return chain


def test_newest_first_and_capped():
    scanner = LiveTransactionScanner(make_executor(_chain()), ScannerSettings(pace_sec=0.0), sleep=RecordingSleep())
    live = scanner.scan(TOKEN, "ethereum", max_results=2)

    assert [t.block_number for t in live.transactions] == [300, 200]
    first = live.transactions[0]
    assert (first.sender, first.recipient, first.value) == (ALICE, BOB, "3000")
    assert first.gas_price_gwei == "12.35"
    assert first.function_name == "transfer"
    assert first.type == "transfer"
    assert first.status == "success"
    assert first.to_dict()["decodedInput"] == {"functionName": "transfer"}
    assert live.coverage.degraded is False


def test_reverted_transaction_without_token_transfer():
    chain = _chain()
    chain.receipts[_tx(3)]["status"] = "0x0"
    chain.receipts[_tx(3)]["logs"] = []
    chain.txs[_tx(3)]["to"] = ROUTER
    chain.txs[_tx(3)]["from"] = CAROL

    live = LiveTransactionScanner(make_executor(chain), ScannerSettings(pace_sec=0.0), sleep=RecordingSleep()).scan(TOKEN, "ethereum")

    failed = live.transactions[0]
    assert failed.status == "failed"
    assert (failed.sender, failed.recipient, failed.value) == (CAROL, ROUTER, "0")
    assert failed.type == "other"
    assert len(live.transactions) == 3

from __future__ import annotations

import pytest
from eth_abi import encode as abi_encode

from tokenlens.analysis import TokenAnalyzer, fetch_token_metadata
from tokenlens.config import load_config
from tokenlens.decoder import EventKind
from tokenlens.errors import ConfigError, RPCError
from tokenlens.rpc import function_selector
from .fixtures import (
    ALICE,
    BOB,
    ROUTER,
    TOKEN,
    ZERO,
    FakeChain,
    RecordingSleep,
    address_topic,
    event_log,
    make_executor,
    transfer_log,
    word,
)

SUPPLY = 10**24
PAIR = "0x3333333333333333333333333333333333333333"
TX_MINT = "0x" + "a1" * 32
TX_SWAP = "0x" + "b2" * 32
OWNER = function_selector("owner()")


def _token_chain() -> FakeChain:
    chain = FakeChain(latest=1_000)
    chain.set_code(TOKEN, "0x6080604052" + "00" * 2_000)
    chain.calls[(TOKEN, function_selector("name()"))] = "0x" + abi_encode(["string"], ["Test Token"]).hex()
    chain.calls[(TOKEN, function_selector("symbol()"))] = "0x" + b"TT".ljust(32, b"\x00").hex()
    chain.calls[(TOKEN, function_selector("decimals()"))] = 18
    chain.calls[(TOKEN, function_selector("totalSupply()"))] = SUPPLY
    chain.calls[(TOKEN, OWNER)] = 0

    mint = transfer_log(ZERO, ALICE, SUPPLY, block=900, tx_hash=TX_MINT)
    move = transfer_log(ALICE, BOB, 4 * SUPPLY // 10, block=950, tx_hash=TX_SWAP)
    swap = event_log(EventKind.SWAP, [address_topic(ROUTER), address_topic(BOB)], "0x" + "0" * 256, block=950, token=PAIR, tx_hash=TX_SWAP)
    chain.logs = [mint, move]
    chain.add_tx(TX_MINT, ALICE, TOKEN, 900, gas_used=60_000, gas_price=10**9, input_data="0x40c10f19" + "0" * 128, logs=[mint])
    chain.add_tx(TX_SWAP, ALICE, ROUTER, 950, gas_used=150_000, gas_price=2 * 10**9, logs=[move, swap])
    return chain


def _analyzer(chain: FakeChain) -> TokenAnalyzer:
    return TokenAnalyzer(load_config(), executor=make_executor(chain), sleep=RecordingSleep())


def test_metadata_reads_string_and_bytes32():
    meta = fetch_token_metadata(make_executor(_token_chain()), TOKEN, "ethereum")
    assert meta.name == "Test Token"
    assert meta.symbol == "TT"
    assert meta.decimals == 18
    assert meta.total_supply == SUPPLY
    assert meta.owner == ZERO
    assert meta.has_owner_function is False
    assert meta.to_dict()["totalSupply"] == str(SUPPLY)


def test_full_report():
    report = _analyzer(_token_chain()).analyze(TOKEN, "ethereum", liquidity_usd=1_000_000)

    assert report.errors == {}
    assert [(h.address, h.percentage) for h in report.holders.holders] == [(ALICE, 60.0), (BOB, 40.0)]
    assert report.flow.period_24h.transfer_count == 2
    assert report.flow.period_24h.inflow == "400000.0"
    assert {a.contract_address for a in report.activity.activities} == {TOKEN, ROUTER}
    assert [t.type for t in report.transactions.transactions] == ["swap", "transfer"]
    assert report.transactions.transactions[1].function_name == "mint"

    # established contract +5, whale -25
    assert report.risk.score == 80
    assert "Whale Concentration" in {f.category for f in report.risk.findings}

    body = report.to_dict()
    assert body["metadata"]["symbol"] == "TT"
    assert body["holderCategories"]["whales"] == 2
    assert body["holderConcentration"]["top1_percent"] == pytest.approx(60.0)
    assert body["risk"]["tax"] == "NoTax"
    assert body["transactions"][0]["decodedLogs"][1]["eventName"] == "Swap"


def test_missing_total_supply_is_a_section_error():
    chain = _token_chain()
    del chain.calls[(TOKEN, function_selector("totalSupply()"))]

    report = _analyzer(chain).analyze(TOKEN, "ethereum", sections=("holders",))

    assert report.holders is None
    assert report.errors == {"holders": "totalSupply() unavailable"}
    assert report.risk is None


def test_input_validation():
    analyzer = _analyzer(FakeChain())
    with pytest.raises(ConfigError):
        analyzer.analyze("So11111111111111111111111111111111111111112", "ethereum")
    with pytest.raises(ConfigError):
        analyzer.analyze(TOKEN, "fantom")
    with pytest.raises(ValueError):
        analyzer.analyze(TOKEN, "ethereum", sections=("prices",))


def test_owner_word_is_decoded_to_address():
    chain = _token_chain()
    chain.calls[(TOKEN, OWNER)] = word(int(ALICE, 16))
    meta = fetch_token_metadata(make_executor(chain), TOKEN, "ethereum")
    assert meta.owner == ALICE
    assert meta.has_owner_function is True


def test_reverted_owner_read_is_not_repeated_by_risk():
    chain = _token_chain()
    del chain.calls[(TOKEN, OWNER)]

    report = _analyzer(chain).analyze(TOKEN, "ethereum", sections=("risk",))

    assert report.metadata.owner is None
    assert report.metadata.unreadable == []
    assert chain.call_log.count((TOKEN, OWNER)) == 1
    assert "Owner Privileges Detected" not in {f.category for f in report.risk.findings}


def test_unreadable_owner_is_retried_by_risk():
    chain = _token_chain()
    chain.calls[(TOKEN, OWNER)] = RPCError("eth_call: upstream timeout")
    meta = fetch_token_metadata(make_executor(chain), TOKEN, "ethereum")
    metadata_reads = chain.call_log.count((TOKEN, OWNER))
    assert meta.unreadable == ["owner"]

    _analyzer(chain).analyze(TOKEN, "ethereum", sections=("risk",))

    # metadata and risk each read owner() again
    assert chain.call_log.count((TOKEN, OWNER)) >= metadata_reads + 2

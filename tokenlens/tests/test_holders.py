from __future__ import annotations

import pytest

from tokenlens.config import ScannerSettings
from tokenlens.decoder import decode_transfers
from tokenlens.errors import RPCError, ScanCancelled
from tokenlens.holders import (
    HolderLedger,
    HolderRecord,
    HolderScanner,
    categorize_holders,
    compute_percentage,
    holder_concentration,
    rank_holders,
    verify_balances,
)
from .fixtures import ALICE, BOB, CAROL, DAVE, TOKEN, ZERO, FakeChain, RecordingSleep, make_executor, transfer_log

SETTINGS = ScannerSettings(pace_sec=0.0)


def _scanner(chain: FakeChain) -> HolderScanner:
    return HolderScanner(make_executor(chain), SETTINGS, sleep=RecordingSleep())


def test_ledger_ignores_zero_address_and_conserves_value():
    logs = [
        transfer_log(ZERO, ALICE, 1_000, block=1),
        transfer_log(ALICE, BOB, 400, block=2),
        transfer_log(BOB, CAROL, 150, block=3),
        transfer_log(CAROL, ZERO, 50, block=4),
    ]
    ledger = HolderLedger().apply_all(decode_transfers(logs))

    assert ZERO not in ledger.deltas
    assert ledger.deltas == {ALICE: 600, BOB: 250, CAROL: 100}
    # minted minus burned
    assert sum(ledger.deltas.values()) == 950


def test_transfers_between_holders_sum_to_zero():
    ledger = HolderLedger()
    ledger.apply(ALICE, BOB, 10)
    ledger.apply(BOB, CAROL, 7)
    ledger.apply(CAROL, ALICE, 3)
    assert sum(ledger.deltas.values()) == 0
    assert ledger.positive() == {BOB: 3, CAROL: 4}
    assert ledger.moved() == [ALICE, BOB, CAROL]


def test_percentage_is_floored_to_two_decimals():
    assert compute_percentage(1, 3) == 33.33
    assert compute_percentage(2, 3) == 66.66
    assert compute_percentage(5, 0) == 0.0
    assert compute_percentage(10**30, 10**30) == 100.0


def test_ranking_is_stable_and_drops_non_positive():
    ranked = rank_holders({CAROL: 5, ALICE: 10, BOB: 5, DAVE: 0}, 20)
    assert [r.address for r in ranked] == [ALICE, CAROL, BOB]
    assert [r.percentage for r in ranked] == [50.0, 25.0, 25.0]
    assert all(0 <= r.percentage <= 100 for r in ranked)


def test_categories_and_concentration():
    holders = [
        HolderRecord(ALICE, 800, 80.0),
        HolderRecord(BOB, 100, 0.5),
        HolderRecord(CAROL, 100, 0.05),
        HolderRecord(DAVE, 1, 0.001),
    ]
    assert categorize_holders(holders) == {"whales": 1, "large": 1, "medium": 1, "small": 1}

    conc = holder_concentration(holders[:3], 1_000)
    assert conc["top1_percent"] == pytest.approx(80.0)
    assert conc["top10_percent"] == pytest.approx(100.0)
    assert conc["hhi"] == pytest.approx(0.66)
    assert conc["nhhi"] == pytest.approx(0.49)

    assert holder_concentration([HolderRecord(ALICE, 1, 100.0)], 1)["nhhi"] == 0.0
    assert holder_concentration([], 1_000)["hhi"] == 0.0


def test_verify_balances_maps_failures_to_none():
    def fetch(addr):
        if addr == BOB:
            raise RPCError("timeout")
        return 7

    out = verify_balances([ALICE, BOB, CAROL], fetch, batch_size=2)
    assert out == {ALICE: 7, BOB: None, CAROL: 7}


def test_verify_balances_propagates_cancellation():
    def fetch(addr):
        raise ScanCancelled("stop")

    with pytest.raises(ScanCancelled):
        verify_balances([ALICE], fetch)


def test_single_mint_gives_one_holder_at_full_supply():
    chain = FakeChain(latest=1_000)
    chain.logs = [transfer_log(ZERO, ALICE, 1_000_000, block=10)]

    result = _scanner(chain).scan(TOKEN, "ethereum", "1000000", scan_depth=1_000)

    assert [(h.address, h.balance, h.percentage) for h in result.holders] == [(ALICE, 1_000_000, 100.0)]
    assert result.total_holders == 1
    assert result.completeness == "recent"
    assert result.coverage.degraded is False
    assert result.message is None
    assert result.to_dict()["holders"][0]["balance"] == "1000000"


def test_accurate_mode_prefers_chain_balance_and_falls_back_to_delta():
    chain = FakeChain(latest=1_000)
    chain.logs = [
        transfer_log(ZERO, ALICE, 1_000, block=1),
        transfer_log(ALICE, BOB, 300, block=5),
    ]
    chain.balances = {ALICE: 900}
    chain.balance_errors = {BOB}

    result = _scanner(chain).scan(TOKEN, "ethereum", 1_200, scan_depth=1_000, mode="accurate")

    assert [(h.address, h.balance) for h in result.holders] == [(ALICE, 900), (BOB, 300)]
    assert [h.percentage for h in result.holders] == [75.0, 25.0]
    assert result.mode == "accurate"


def test_empty_window_is_a_true_zero():
    result = _scanner(FakeChain(latest=1_000)).scan(TOKEN, "ethereum", 1, scan_depth=1_000)
    assert result.holders == []
    assert result.coverage.degraded is False
    assert result.message == "No holders found in the last 1000 blocks."


def test_unreadable_window_is_partial_and_labelled():
    chain = FakeChain(latest=1_000)
    chain.logs = [transfer_log(ZERO, ALICE, 5, block=1)]
    chain.log_errors = [RPCError("upstream timeout"), RPCError("upstream timeout")]

    result = _scanner(chain).scan(TOKEN, "ethereum", 5, scan_depth=1_000)

    assert result.holders == []
    assert result.completeness == "partial"
    assert result.coverage.failed_chunks == 1
    assert result.coverage.degraded is True
    assert result.message.startswith("Limited data available (~0% coverage)")

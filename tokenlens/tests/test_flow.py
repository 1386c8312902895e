from __future__ import annotations

import pytest

from tokenlens.config import ScannerSettings
from tokenlens.flow import FlowAnalyzer, TimedTransfer, calculate_flow_for_period, format_units
from .fixtures import ALICE, BOB, CAROL, DAVE, TOKEN, ZERO, FakeChain, RecordingSleep, make_executor, transfer_log

ONE = 10**18


def test_format_units():
    assert format_units(3 * ONE // 2, 18) == "1.5"
    assert format_units(0, 18) == "0.0"
    assert format_units(5 * ONE, 18) == "5.0"
    assert format_units(1, 18) == "0.000000000000000001"
    assert format_units(123, 0) == "123.0"
    assert format_units(-15, 1) == "-1.5"


def test_empty_period_reports_zero_not_missing():
    with_price = calculate_flow_for_period([], 0, 18, price=2.0)
    assert (with_price.inflow, with_price.outflow, with_price.net_flow) == ("0", "0", "0")
    assert with_price.inflow_usd == 0.0
    assert with_price.transfer_count == 0

    no_price = calculate_flow_for_period([], 0, 18)
    assert no_price.inflow_usd is None


def test_mints_and_burns_count_but_do_not_move_sums():
    transfers = [
        TimedTransfer(ZERO, ALICE, 10 * ONE, 1, 100),
        TimedTransfer(ALICE, BOB, 2 * ONE, 2, 200),
        TimedTransfer(BOB, ZERO, ONE, 3, 300),
        TimedTransfer(CAROL, DAVE, ONE, 4, 50),
    ]
    period = calculate_flow_for_period(transfers, 100, 18, price=1.25)

    assert period.transfer_count == 3
    assert period.inflow == period.outflow == "2.0"
    assert period.net_flow == "0.0"
    assert period.unique_addresses == 2
    assert period.inflow_usd == pytest.approx(2.5)
    assert period.net_flow_usd == 0.0


def test_windows_bucket_transfers_by_block_time():
    chain = FakeChain(latest=10_000)
    chain.logs = [
        transfer_log(ALICE, BOB, ONE, block=6_000),
        transfer_log(BOB, CAROL, 2 * ONE, block=8_000),
        transfer_log(CAROL, DAVE, 3 * ONE // 2, block=9_000),
        transfer_log(ZERO, ALICE, 10 * ONE, block=9_990, tx_hash="0x" + "a" * 64),
        transfer_log(ALICE, BOB, ONE // 2, block=9_990, tx_hash="0x" + "b" * 64, log_index=1),
    ]
    analyzer = FlowAnalyzer(make_executor(chain), ScannerSettings(pace_sec=0.0), sleep=RecordingSleep())

    metrics = analyzer.analyze(TOKEN, "ethereum", decimals=18, price=2.0)

    assert metrics.period_24h.transfer_count == 5
    assert metrics.period_12h.transfer_count == 4
    assert metrics.period_4h.transfer_count == 3
    assert metrics.period_24h.inflow == "5.0"
    assert metrics.period_12h.inflow == "4.0"
    assert metrics.period_4h.inflow == "2.0"
    assert metrics.period_24h.inflow_usd == pytest.approx(10.0)
    assert metrics.period_24h.net_flow == "0.0"
    assert metrics.coverage.degraded is False
    # one header fetch per distinct block
    assert sorted(chain.block_requests) == [6_000, 8_000, 9_000, 9_990, 10_000]

    body = metrics.to_dict()
    assert set(body) == {"period24h", "period12h", "period4h", "coverage", "timestamp"}
    assert body["period4h"]["uniqueAddresses"] == 4

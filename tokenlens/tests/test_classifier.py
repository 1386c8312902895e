from __future__ import annotations

import re

from tokenlens.classifier import ErrorClassifier, ErrorKind, ErrorRule
from tokenlens.config import get_default_config
from tokenlens.errors import FailoverExhausted, RPCError


def test_provider_range_limits_are_parsed():
    clf = ErrorClassifier()
    cases = {
        "You can make eth_getLogs requests with up to a 10 block range.": 10,
        "query exceeds 2,000 block range": 2000,
        "block range is limited to 5000": 5000,
        "eth_getLogs is limited to a 1000 range": 1000,
    }
    for message, limit in cases.items():
        got = clf.classify(RuntimeError(message))
        assert got.kind is ErrorKind.RANGE_EXCEEDED, message
        assert got.limit == limit, message


def test_rate_limit_and_result_size_errors():
    clf = ErrorClassifier()
    assert clf.classify(RPCError("Your app has exceeded its compute units per second capacity")).kind is ErrorKind.RATE_LIMITED
    assert clf.classify(RPCError("rate limit exceeded")).kind is ErrorKind.RATE_LIMITED
    assert clf.classify(RPCError("eth_getLogs: HTTP 503", status=429)).kind is ErrorKind.RATE_LIMITED
    assert clf.classify(RPCError("query returned more than 10000 results")).kind is ErrorKind.TOO_MANY_RESULTS
    assert clf.classify(RPCError("connection reset by peer")).kind is ErrorKind.TRANSIENT


def test_unwraps_failover_exhausted():
    clf = ErrorClassifier()
    wrapped = FailoverExhausted("ethereum", 1, RPCError("up to a 10 block range"))
    got = clf.classify(wrapped)
    assert got.kind is ErrorKind.RANGE_EXCEEDED
    assert got.limit == 10
    assert clf.is_range_error(wrapped)


def test_provider_scoped_rule_only_applies_to_that_provider():
    rule = ErrorRule(ErrorKind.RATE_LIMITED, re.compile("capacity", re.IGNORECASE), provider="alchemy")
    clf = ErrorClassifier([rule])
    assert clf.classify(RPCError("over capacity", provider="https://eth-mainnet.g.alchemy.com/v2/x")).kind is ErrorKind.RATE_LIMITED
    assert clf.classify(RPCError("over capacity", provider="https://rpc.ankr.com/eth")).kind is ErrorKind.TRANSIENT


def test_rules_load_from_config():
    cfg = get_default_config()
    clf = ErrorClassifier.from_specs(cfg.classifier_rules)
    assert len(clf.rules) == len(cfg.classifier_rules)
    assert clf.classify(RPCError("max block range exceeded, range is too large, max is 3,000")).limit == 3000

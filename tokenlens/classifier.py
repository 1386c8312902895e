"""Typed classification of provider errors.

Providers report their limits in free text ("query exceeds max block range
of 10", "Your app has exceeded its compute units per second capacity", ...).
The classifier maps an exception onto an ``ErrorKind`` using an ordered rule
table loaded from config, so a new provider quirk is a config change.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .config import ClassifierRuleSpec
from .errors import FailoverExhausted, RPCError


class ErrorKind(str, enum.Enum):
    RANGE_EXCEEDED = "range_exceeded"
    TOO_MANY_RESULTS = "too_many_results"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class ErrorRule:
    kind: ErrorKind
    pattern: re.Pattern
    provider: Optional[str] = None  # substring of the provider URL this rule is limited to

    @classmethod
    def from_spec(cls, spec: ClassifierRuleSpec) -> "ErrorRule":
        return cls(ErrorKind(spec.kind), re.compile(spec.pattern, re.IGNORECASE), spec.provider)


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    limit: Optional[int] = None  # provider block-range limit for RANGE_EXCEEDED


_DEFAULT_RULES = [
    (ErrorKind.RANGE_EXCEEDED, r"(\d[\d,]*)\s+block\s+range"),
    (ErrorKind.RANGE_EXCEEDED, r"block\s+range\s+(?:is\s+)?limited\s+to\s+(\d[\d,]*)"),
    (ErrorKind.RANGE_EXCEEDED, r"eth_getLogs\s+is\s+limited\s+to\s+a\s+(\d[\d,]*)\s+range"),
    (ErrorKind.RATE_LIMITED, r"\b429\b"),
    (ErrorKind.RATE_LIMITED, r"compute units"),
    (ErrorKind.RATE_LIMITED, r"rate\s*limit"),
    (ErrorKind.RATE_LIMITED, r"too many requests"),
    (ErrorKind.TOO_MANY_RESULTS, r"query returned more than \d+ results"),
    (ErrorKind.TOO_MANY_RESULTS, r"log response size"),
    (ErrorKind.TOO_MANY_RESULTS, r"too many (?:logs|results)"),
]


def default_rules() -> List[ErrorRule]:
    return [ErrorRule(kind, re.compile(p, re.IGNORECASE)) for kind, p in _DEFAULT_RULES]


def _parse_limit(match: re.Match) -> Optional[int]:
    for group in match.groups():
        if group:
            try:
                return int(group.replace(",", ""))
            except ValueError:
                continue
    return None


class ErrorClassifier:
    def __init__(self, rules: Optional[Iterable[ErrorRule]] = None) -> None:
        self.rules = list(rules) if rules is not None else default_rules()

    @classmethod
    def from_specs(cls, specs: Iterable[ClassifierRuleSpec]) -> "ErrorClassifier":
        rules = [ErrorRule.from_spec(s) for s in specs]
        return cls(rules or None)

    def classify(self, exc: BaseException, provider: Optional[str] = None) -> Classification:
        if isinstance(exc, FailoverExhausted) and exc.last_error is not None:
            exc = exc.last_error
        if isinstance(exc, RPCError):
            provider = provider or exc.provider
            if exc.status == 429:
                return Classification(ErrorKind.RATE_LIMITED)
        message = str(exc)
        for rule in self.rules:
            if rule.provider and (not provider or rule.provider not in provider):
                continue
            m = rule.pattern.search(message)
            if not m:
                continue
            if rule.kind is ErrorKind.RANGE_EXCEEDED:
                limit = _parse_limit(m)
                if limit is None or limit <= 0:
                    continue
                return Classification(rule.kind, limit)
            return Classification(rule.kind)
        return Classification(ErrorKind.TRANSIENT)

    def is_range_error(self, exc: BaseException) -> bool:
        return self.classify(exc).kind in (ErrorKind.RANGE_EXCEEDED, ErrorKind.TOO_MANY_RESULTS)

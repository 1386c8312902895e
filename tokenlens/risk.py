"""Contract risk heuristics.

Every check reads chain state through the failover executor and is tolerant
of failure: a check that cannot complete contributes no finding instead of
failing the report. The score starts at 100, each finding applies a fixed
delta, and the total is clamped to [1, 100].
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Sequence, Tuple

import requests
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .chains import ZERO_ADDRESS
from .errors import RPCError, ScanCancelled
from .failover import FailoverExecutor
from .flow import format_units
from .holders import HolderRecord
from .rpc import call_address, call_bool, call_uint, function_selector, hex_to_address, hex_to_int

logger = logging.getLogger(__name__)

# EIP-1967 slots
ADMIN_SLOT = "0xb53127684a568b3173ae13b9f8a6016e243e63b6e8ee1178d6a717850b5d6103"
IMPL_SLOT = "0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc"

PROXY_SELECTORS = [
    "5c60da1b",  # implementation()
    "3659cfe6",  # upgradeTo(address)
    "4f1ef286",  # upgradeToAndCall(address,bytes)
    "4d1975b4",  # upgradeTo(address), alternate ABI
    "99a88ec4",  # upgrade(address,address)
]

# owner()/transferOwnership() are common in legitimate tokens and are not listed
HONEYPOT_SELECTORS = [
    "16c38b3c",  # setBlacklist(address,bool)
    "0e71804f",  # addBlacklist(address[])
    "59bf1abe",  # enableTrading()
    "c9567bf9",  # openTrading()
    "8b4cee08",  # setMaxTx(uint256)
]
HONEYPOT_THRESHOLD = 50

MINT_SELECTOR = function_selector("mint(address,uint256)")[2:]

# (function name, side) where side None means a total fee used for both
FEE_VARIANTS: List[Tuple[str, Optional[str]]] = [
    ("buyFees", "buy"),
    ("buyFee", "buy"),
    ("_buyFee", "buy"),
    ("sellFees", "sell"),
    ("sellFee", "sell"),
    ("_sellFee", "sell"),
    ("_taxFee", None),
    ("taxFee", None),
    ("_totalTax", None),
    ("totalFees", None),
]

SECONDS_PER_DAY = 24 * 60 * 60

Severity = Literal["high", "medium", "low"]


class TaxState(str, enum.Enum):
    NO_TAX = "NoTax"
    TAX_ZERO = "TaxZero"
    TAX_KNOWN = "TaxKnown"
    TAX_UNKNOWN = "TaxUnknown"


@dataclass
class TaxResult:
    state: TaxState
    buy_tax: float = 0.0
    sell_tax: float = 0.0

    @property
    def has_tax(self) -> bool:
        return self.state is TaxState.TAX_KNOWN


@dataclass
class ContractAge:
    deploy_block: int
    deployed_at: int
    age_days: float

    @property
    def is_new(self) -> bool:
        return self.age_days < 7


class RiskFinding(BaseModel):
    category: str
    severity: Severity
    description: str
    score_delta: int = 0


class RiskReport(BaseModel):
    token: str
    chain: str
    score: int
    findings: List[RiskFinding] = Field(default_factory=list)
    is_proxy: Optional[bool] = None
    is_honeypot: Optional[bool] = None
    tax: Optional[TaxState] = None
    buy_tax: float = 0.0
    sell_tax: float = 0.0
    contract_age_days: Optional[float] = None


def normalize_fee(raw: Optional[int]) -> float:
    """Raw fee value to a percentage, guessing the scale from its magnitude."""

    if not raw:
        return 0.0
    if raw >= 1_000_000:
        return raw / 1_000_000  # parts per million
    if raw > 10_000:
        return raw / 10_000
    if raw > 100:
        return raw / 100  # basis points
    return float(raw)


def count_selectors(code: str, selectors: Sequence[str]) -> int:
    body = (code or "").lower()
    return sum(1 for s in selectors if s in body)


def honeypot_score(code: str) -> Tuple[int, int]:
    """Return (score, matched suspicious selectors) for a bytecode hex string."""

    matched = count_selectors(code, HONEYPOT_SELECTORS)
    score = matched * 30
    if len(code) < 3000:
        score += 20
    if len(code) < 2000 and matched > 0:
        score += 25
    return score, matched


def clamp_score(score: int) -> int:
    return max(1, min(100, score))


class SourcifyVerifier:
    """Source verification lookup against the public Sourcify repository."""

    base_url = "https://repo.sourcify.dev/contracts"

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10.0) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    @retry(reraise=True, stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.4, min=0.2, max=2.0), retry=retry_if_exception_type(RPCError))
    def _metadata(self, url: str) -> Optional[dict]:
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RPCError(str(e), provider=url) from e
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RPCError(f"HTTP {resp.status_code}", status=resp.status_code, provider=url)
        return resp.json()

    def is_verified(self, evm_chain_id: Optional[int], address: str) -> Optional[bool]:
        if not evm_chain_id:
            return None
        addr = (address or "").lower()
        try:
            for match in ("full_match", "partial_match"):
                meta = self._metadata(f"{self.base_url}/{match}/{evm_chain_id}/{addr}/metadata.json")
                if isinstance(meta, dict) and (meta.get("sources") or meta.get("settings")):
                    return True
        except (RPCError, ValueError) as e:
            logger.warning("Sourcify lookup failed for %s: %s", addr, e)
            return None
        return False


class RiskAnalyzer:
    def __init__(
        self,
        executor: FailoverExecutor,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.executor = executor
        self._clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    def _run(self, chain: str, op, cancel: Optional[threading.Event]):
        return self.executor.run(chain, op, cancel=cancel)

    # ---- individual checks ----

    def detect_proxy(self, chain: str, token: str, code: str, cancel: Optional[threading.Event] = None) -> bool:
        body = (code or "").lower()
        if IMPL_SLOT[2:] in body or ADMIN_SLOT[2:] in body:
            return True
        if count_selectors(body, PROXY_SELECTORS) >= 2:
            return True
        impl = self._run(chain, lambda c: call_address(c, token, "0x" + PROXY_SELECTORS[0]), cancel)
        if impl and impl != ZERO_ADDRESS:
            return True
        slot = self._run(chain, lambda c: c.get_storage_at(token, IMPL_SLOT), cancel)
        impl = hex_to_address(slot)
        return bool(impl and impl != ZERO_ADDRESS)

    def detect_honeypot(self, chain: str, token: str, code: str, cancel: Optional[threading.Event] = None) -> bool:
        score, _ = honeypot_score(code)
        if score < HONEYPOT_THRESHOLD:
            return False
        # the live read can only confirm, a failed read leaves the score verdict
        for name in ("tradingOpen()", "tradingEnabled()"):
            try:
                flag = self._run(chain, lambda c, sel=function_selector(name): call_bool(c, token, sel), cancel)
            except ScanCancelled:
                raise
            except Exception as e:  # noqa: BLE001
                self.logger.warning("%s read failed on %s: %s", name, token, e)
                continue
            if flag is False:
                self.logger.info("Trading explicitly disabled on %s", token)
                return True
            if flag is not None:
                break
        return True

    def detect_tax(self, chain: str, token: str, cancel: Optional[threading.Event] = None) -> TaxResult:
        """NoTax when no fee function exists, TaxUnknown only when the provider fails."""

        buy_raw: Optional[int] = None
        sell_raw: Optional[int] = None
        read_ok = False
        try:
            for name, side in FEE_VARIANTS:
                sel = function_selector(f"{name}()")
                raw = self._run(chain, lambda c, s=sel: call_uint(c, token, s), cancel)
                if raw is None:
                    continue
                read_ok = True
                if side == "buy" and buy_raw is None:
                    buy_raw = raw
                elif side == "sell" and sell_raw is None:
                    sell_raw = raw
                elif side is None and buy_raw is None and sell_raw is None:
                    buy_raw = sell_raw = raw
                if buy_raw is not None and sell_raw is not None:
                    break
        except ScanCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Tax detection failed due to provider error: %s", e)
            return TaxResult(TaxState.TAX_UNKNOWN)

        if not read_ok:
            return TaxResult(TaxState.NO_TAX)
        buy, sell = normalize_fee(buy_raw), normalize_fee(sell_raw)
        if buy == 0 and sell == 0:
            return TaxResult(TaxState.TAX_ZERO)
        return TaxResult(TaxState.TAX_KNOWN, buy, sell)

    def contract_age(self, chain: str, token: str, cancel: Optional[threading.Event] = None) -> Optional[ContractAge]:
        """Binary search for the first block with code at ``token``."""

        latest = self._run(chain, lambda c: c.block_number(), cancel)
        low, high, deploy = 0, latest, latest
        while low <= high:
            mid = (low + high) // 2
            code = self._run(chain, lambda c, b=mid: c.get_code(token, b), cancel)
            if code in ("0x", "", None):
                low = mid + 1
            else:
                deploy = mid
                high = mid - 1
        block = self._run(chain, lambda c: c.get_block(deploy), cancel)
        ts = hex_to_int((block or {}).get("timestamp"))
        if ts is None:
            return None
        return ContractAge(deploy, ts, (self._clock() - ts) / SECONDS_PER_DAY)

    def max_supply(self, chain: str, token: str, cancel: Optional[threading.Event] = None) -> Optional[int]:
        return self._run(chain, lambda c: call_uint(c, token, function_selector("maxSupply()")), cancel)

    def _safe(self, label: str, fn, default=None):
        try:
            return fn()
        except ScanCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            self.logger.warning("%s check failed: %s", label, e)
            return default

    # ---- report ----

    def analyze(
        self,
        token: str,
        chain: str,
        *,
        has_owner_function: Optional[bool] = None,
        has_mint_authority: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        liquidity_usd: Optional[float] = None,
        holders: Optional[List[HolderRecord]] = None,
        decimals: int = 18,
        cancel: Optional[threading.Event] = None,
    ) -> RiskReport:
        findings: List[RiskFinding] = []

        def add(category: str, severity: Severity, description: str, delta: int = 0) -> None:
            findings.append(RiskFinding(category=category, severity=severity, description=description, score_delta=delta))

        code = self._safe("bytecode", lambda: self._run(chain, lambda c: c.get_code(token), cancel))

        if is_verified is False:
            add(
                "Unverified Contract",
                "medium",
                "Contract source code is not verified. This prevents security auditing and transparency.",
                -15,
            )

        is_proxy = None
        if code is not None:
            is_proxy = self._safe("proxy", lambda: self.detect_proxy(chain, token, code, cancel), False)
            if is_proxy:
                add(
                    "Upgradeable Proxy Detected",
                    "high",
                    "Contract uses proxy pattern, allowing code updates. Owner could modify token behavior after deployment.",
                    -30,
                )

        if has_owner_function is None:
            owner = self._safe("owner", lambda: self._run(chain, lambda c: call_address(c, token, function_selector("owner()")), cancel))
            has_owner_function = bool(owner and owner != ZERO_ADDRESS)
        if has_owner_function:
            add(
                "Owner Privileges Detected",
                "high",
                "Contract has owner function with privileged operations. Could enable pause, blacklist, or fee changes.",
                -25,
            )

        if has_mint_authority is None:
            has_mint_authority = bool(code) and MINT_SELECTOR in code.lower()
        if has_mint_authority:
            try:
                cap = self.max_supply(chain, token, cancel)
            except ScanCancelled:
                raise
            except Exception as e:  # noqa: BLE001
                self.logger.warning("maxSupply check failed: %s", e)
            else:
                if cap is None:
                    add(
                        "Unlimited Minting Authority",
                        "high",
                        "Token has unlimited mint authority with no max supply cap. Supply can be inflated indefinitely.",
                        -35,
                    )
                else:
                    add(
                        "Capped Minting",
                        "low",
                        f"Token has minting capability but capped at {format_units(cap, decimals)} tokens.",
                        -5,
                    )

        age = self._safe("contract age", lambda: self.contract_age(chain, token, cancel))
        if age is not None:
            if age.is_new:
                add("New Contract", "medium", f"Contract deployed {age.age_days:.1f} days ago. New contracts carry higher risk.", -15)
            elif age.age_days > 365:
                add("Established Contract", "low", f"Contract deployed {age.age_days:.0f} days ago. Long track record increases trust.", 5)

        is_honeypot = None
        if code is not None:
            is_honeypot = self._safe("honeypot", lambda: self.detect_honeypot(chain, token, code, cancel), False)
            if is_honeypot:
                add(
                    "Potential Honeypot",
                    "high",
                    "Contract contains patterns commonly found in honeypot scams. Selling may be restricted.",
                    -40,
                )

        tax = self.detect_tax(chain, token, cancel)
        if tax.state is TaxState.TAX_UNKNOWN:
            add(
                "Tax Detection Failed",
                "high",
                "Unable to verify trading tax due to blockchain query failures. Tax structure unknown - proceed with caution.",
                -25,
            )
        elif tax.state is TaxState.TAX_KNOWN:
            avg = (tax.buy_tax + tax.sell_tax) / 2
            text = f"{tax.buy_tax:.1f}% buy tax and {tax.sell_tax:.1f}% sell tax detected."
            if avg > 10:
                add("High Trading Tax", "high", text + " High fees reduce profitability.", -20)
            elif avg > 5:
                add("Moderate Trading Tax", "medium", text, -10)
            elif avg > 0:
                add("Low Trading Tax", "low", text, -5)

        if liquidity_usd is not None:
            liq = f"${liquidity_usd:,.0f}"
            if liquidity_usd < 10_000:
                add("Critical Liquidity", "high", f"Extremely low liquidity ({liq}). High risk of rug pull and extreme slippage.", -30)
            elif liquidity_usd < 50_000:
                add("Low Liquidity", "high", f"Low liquidity ({liq}) may cause significant slippage on larger trades.", -20)
            elif liquidity_usd < 200_000:
                add("Moderate Liquidity", "medium", f"Moderate liquidity ({liq}). Some slippage expected on large trades.", -10)
            else:
                add("Healthy Liquidity", "low", f"Strong liquidity ({liq}) supports trading with minimal slippage.")

        if holders:
            top1 = holders[0].percentage
            top10 = sum(h.percentage for h in holders[:10])
            if top1 > 20:
                add("Whale Concentration", "high", f"Single address holds {top1:.1f}% of supply. Extreme dump risk.", -25)
            elif top10 > 70:
                add("High Concentration", "medium", f"Top 10 holders control {top10:.1f}% of supply. Centralization risk.", -15)
            else:
                add("Distributed Holdings", "low", f"Top 10 holders own {top10:.1f}% of supply. Relatively decentralized.")

        score = clamp_score(100 + sum(f.score_delta for f in findings))
        self.logger.info("Risk score for %s on %s: %d (%d findings)", token, chain, score, len(findings))
        return RiskReport(
            token=token,
            chain=chain,
            score=score,
            findings=findings,
            is_proxy=is_proxy,
            is_honeypot=is_honeypot,
            tax=tax.state,
            buy_tax=tax.buy_tax,
            sell_tax=tax.sell_tax,
            contract_age_days=round(age.age_days, 2) if age else None,
        )

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from eth_abi import decode as abi_decode

from .activity import DAppActivityResult, DAppActivityScanner, KnownContractRegistry
from .chains import ZERO_ADDRESS, detect_chain_type, get_chain
from .classifier import ErrorClassifier
from .config import Config
from .errors import CallReverted, ConfigError, ScanCancelled
from .failover import FailoverExecutor
from .flow import FlowAnalyzer, TokenFlowMetrics
from .holders import HolderScanner, HolderScanResult, Mode, categorize_holders, holder_concentration
from .risk import RiskAnalyzer, RiskReport, SourcifyVerifier
from .rpc import EVMClient, call_address, call_uint, function_selector, utc_now_iso
from .transactions import LiveTransactions, LiveTransactionScanner

logger = logging.getLogger(__name__)

SECTIONS = ("holders", "flow", "activity", "transactions", "risk")


def _decode_text(out: str) -> Optional[str]:
    """ABI ``string`` return, or a null-padded ``bytes32`` from older tokens."""

    if not out or out == "0x":
        return None
    raw = bytes.fromhex(out[2:])
    try:
        (text,) = abi_decode(["string"], raw)
    except Exception:  # noqa: BLE001
        if len(raw) == 32:
            return raw.rstrip(b"\x00").decode("utf-8", errors="ignore") or None
        return None
    return text


def _call_text(client: EVMClient, token: str, signature: str) -> Optional[str]:
    try:
        return _decode_text(client.eth_call(token, function_selector(signature)))
    except CallReverted:
        return None


@dataclass
class TokenMetadata:
    address: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    total_supply: Optional[int] = None
    owner: Optional[str] = None
    unreadable: List[str] = field(default_factory=list)

    @property
    def has_owner_function(self) -> bool:
        return bool(self.owner and self.owner != ZERO_ADDRESS)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "totalSupply": str(self.total_supply) if self.total_supply is not None else None,
            "owner": self.owner,
            "hasOwnerFunction": self.has_owner_function,
        }


def fetch_token_metadata(
    executor: FailoverExecutor,
    token: str,
    chain: str,
    cancel: Optional[threading.Event] = None,
) -> TokenMetadata:
    """Each field is read separately; an unreadable one stays None."""

    meta = TokenMetadata(address=token.lower())
    reads: Dict[str, Callable[[EVMClient], Any]] = {
        "name": lambda c: _call_text(c, token, "name()"),
        "symbol": lambda c: _call_text(c, token, "symbol()"),
        "decimals": lambda c: call_uint(c, token, function_selector("decimals()")),
        "total_supply": lambda c: call_uint(c, token, function_selector("totalSupply()")),
        "owner": lambda c: call_address(c, token, function_selector("owner()")),
    }
    for attr, op in reads.items():
        try:
            setattr(meta, attr, executor.run(chain, op, cancel=cancel))
        except ScanCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to read %s for %s: %s", attr, token, e)
            meta.unreadable.append(attr)
    return meta


@dataclass
class AnalysisReport:
    token: str
    chain: str
    metadata: TokenMetadata
    holders: Optional[HolderScanResult] = None
    flow: Optional[TokenFlowMetrics] = None
    activity: Optional[DAppActivityResult] = None
    transactions: Optional[LiveTransactions] = None
    risk: Optional[RiskReport] = None
    errors: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {
            "token": self.token,
            "chain": self.chain,
            "metadata": self.metadata.to_dict(),
            "errors": self.errors,
            "timestamp": self.timestamp,
        }
        if self.holders is not None:
            out["holders"] = self.holders.to_dict()
            out["holderCategories"] = categorize_holders(self.holders.holders)
            if self.metadata.total_supply:
                out["holderConcentration"] = holder_concentration(self.holders.holders, self.metadata.total_supply)
        if self.flow is not None:
            out["flow"] = self.flow.to_dict()
        if self.activity is not None:
            out["activity"] = self.activity.to_dict()
        if self.transactions is not None:
            out["transactions"] = [t.to_dict() for t in self.transactions.transactions]
        if self.risk is not None:
            out["risk"] = self.risk.model_dump(mode="json")
        return out


class TokenAnalyzer:
    """Runs the independent scans for one token concurrently, then the risk pass.

    A failing section is recorded in ``errors``; it never fails the report.
    """

    def __init__(
        self,
        cfg: Config,
        executor: Optional[FailoverExecutor] = None,
        registry: Optional[KnownContractRegistry] = None,
        verifier: Optional[SourcifyVerifier] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.executor = executor or FailoverExecutor.from_config(cfg)
        self.classifier = ErrorClassifier.from_specs(cfg.classifier_rules)
        self.registry = registry or KnownContractRegistry.from_config(cfg)
        self.verifier = verifier
        self._sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    def analyze(
        self,
        token: str,
        chain: str,
        *,
        mode: Mode = "approximate",
        holder_depth: Optional[int] = None,
        dapp_depth: Optional[int] = None,
        sections: Iterable[str] = SECTIONS,
        price: Optional[float] = None,
        liquidity_usd: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> AnalysisReport:
        if detect_chain_type(token) != "evm":
            raise ConfigError(f"Not an EVM token address: {token}")
        chain_cfg = get_chain(self.cfg, chain)
        if chain_cfg.type != "evm":
            raise ConfigError(f"Chain {chain} is not an EVM chain")
        wanted = set(sections)
        unknown = wanted - set(SECTIONS)
        if unknown:
            raise ValueError(f"unknown sections: {sorted(unknown)}")

        chain = chain_cfg.id
        settings = self.cfg.scanner
        meta = fetch_token_metadata(self.executor, token, chain, cancel)
        report = AnalysisReport(token=token.lower(), chain=chain, metadata=meta)
        decimals = meta.decimals if meta.decimals is not None else 18

        jobs: Dict[str, Callable[[], Any]] = {}
        if "holders" in wanted:
            if meta.total_supply is None:
                report.errors["holders"] = "totalSupply() unavailable"
            else:
                jobs["holders"] = lambda: HolderScanner(self.executor, settings, self.classifier, self._sleep).scan(
                    token, chain, meta.total_supply, holder_depth, mode, cancel
                )
        if "flow" in wanted:
            jobs["flow"] = lambda: FlowAnalyzer(self.executor, settings, self.classifier, self._sleep).analyze(
                token, chain, decimals, price, chain_cfg.blocks_per_hour, cancel
            )
        if "activity" in wanted:
            jobs["activity"] = lambda: DAppActivityScanner(
                self.executor, self.registry, settings, self.classifier, self._sleep, chain_cfg.native_decimals
            ).scan(token, chain, dapp_depth, cancel)
        if "transactions" in wanted:
            jobs["transactions"] = lambda: LiveTransactionScanner(self.executor, settings, self.classifier, self._sleep).scan(
                token, chain, cancel=cancel
            )

        if jobs:
            with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="tokenlens") as pool:
                futures = {name: pool.submit(fn) for name, fn in jobs.items()}
                for name, fut in futures.items():
                    try:
                        setattr(report, name, fut.result())
                    except ScanCancelled:
                        raise
                    except Exception as e:  # noqa: BLE001
                        self.logger.warning("%s scan failed for %s: %s", name, token, e)
                        report.errors[name] = str(e)

        if "risk" in wanted:
            try:
                is_verified = self.verifier.is_verified(chain_cfg.evm_chain_id, token) if self.verifier else None
                report.risk = RiskAnalyzer(self.executor).analyze(
                    token,
                    chain,
                    has_owner_function=None if "owner" in meta.unreadable else meta.has_owner_function,
                    is_verified=is_verified,
                    liquidity_usd=liquidity_usd,
                    holders=report.holders.holders if report.holders else None,
                    decimals=decimals,
                    cancel=cancel,
                )
            except ScanCancelled:
                raise
            except Exception as e:  # noqa: BLE001
                self.logger.warning("risk analysis failed for %s: %s", token, e)
                report.errors["risk"] = str(e)

        return report

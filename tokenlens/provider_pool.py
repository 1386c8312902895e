"""Provider pool: per-chain RPC endpoints with health tracking and circuit breaking.

The pool is the single owner of provider health. Callers never touch a
``Provider`` record directly; they ``select_provider`` (and get a snapshot
back), then report the outcome with ``report_success`` / ``report_failure``.
All state changes happen under one lock, so concurrent scans for the same
chain see a consistent view.

Circuit policy
- ``max_failures_before_unhealthy`` consecutive failures mark a provider
  unhealthy; it becomes eligible again once ``unhealthy_cooldown_sec`` has
  elapsed (checked lazily against the pool clock).
- When every configured provider is unhealthy the pool resets them all and
  hands out the highest-priority one, so work always makes progress.
- Providers are never removed and configuration is static for the process.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional

from .config import Config, PoolSettings
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class Provider:
    url: str
    name: str
    priority: int  # lower is preferred
    healthy: bool = True
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    avg_response_ms: float = 0.0
    unhealthy_since: Optional[float] = None


class ProviderPool:
    def __init__(
        self,
        providers: Dict[str, List[Provider]],
        settings: Optional[PoolSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or PoolSettings()
        self._clock = clock
        self._lock = threading.Lock()
        # empty URLs are filtered here, not treated as broken endpoints
        self._providers: Dict[str, List[Provider]] = {
            chain.lower(): sorted((p for p in plist if p.url), key=lambda p: p.priority)
            for chain, plist in providers.items()
        }

    @classmethod
    def from_config(cls, cfg: Config, clock: Callable[[], float] = time.monotonic) -> "ProviderPool":
        providers: Dict[str, List[Provider]] = {}
        for cid, chain in cfg.chains.items():
            providers[cid] = [
                Provider(url=spec.resolved_url(), name=spec.name, priority=spec.priority)
                for spec in chain.providers
            ]
        return cls(providers, cfg.pool, clock=clock)

    def chains(self) -> List[str]:
        return list(self._providers)

    def _available(self, chain: str) -> List[Provider]:
        plist = self._providers.get(chain.lower())
        if plist is None:
            raise ConfigError(f"No RPC configuration found for chain: {chain}")
        if not plist:
            raise ConfigError(f"No RPC providers configured for chain: {chain}")
        return plist

    def _find(self, chain: str, url: str) -> Optional[Provider]:
        for p in self._providers.get(chain.lower(), []):
            if p.url == url:
                return p
        return None

    def _recover_expired(self, chain: str, plist: List[Provider]) -> None:
        now = self._clock()
        for p in plist:
            if not p.healthy and p.unhealthy_since is not None and now - p.unhealthy_since >= self.settings.unhealthy_cooldown_sec:
                p.healthy = True
                p.consecutive_failures = 0
                p.unhealthy_since = None
                logger.info("RPC provider %s for %s reset to healthy", p.name, chain)

    def select_provider(self, chain: str) -> Provider:
        """Return a snapshot of the best provider for ``chain``."""

        with self._lock:
            plist = self._available(chain)
            self._recover_expired(chain, plist)
            for p in plist:
                if p.healthy:
                    return replace(p)
            logger.warning("All RPC providers unhealthy for %s, resetting health status", chain)
            for p in plist:
                p.healthy = True
                p.consecutive_failures = 0
                p.unhealthy_since = None
            return replace(plist[0])

    def report_failure(self, chain: str, provider_url: str) -> None:
        with self._lock:
            p = self._find(chain, provider_url)
            if p is None:
                return
            p.consecutive_failures += 1
            p.last_failure_time = self._clock()
            if p.healthy and p.consecutive_failures >= self.settings.max_failures_before_unhealthy:
                p.healthy = False
                p.unhealthy_since = p.last_failure_time
                logger.warning(
                    "RPC provider %s for %s marked as unhealthy after %d failures",
                    p.name,
                    chain,
                    p.consecutive_failures,
                )

    def report_success(self, chain: str, provider_url: str, latency_ms: float) -> None:
        with self._lock:
            p = self._find(chain, provider_url)
            if p is None:
                return
            p.consecutive_failures = max(0, p.consecutive_failures - 1)
            w = self.settings.latency_ema_weight
            if p.avg_response_ms == 0:
                p.avg_response_ms = float(latency_ms)
            else:
                p.avg_response_ms = p.avg_response_ms * (1.0 - w) + float(latency_ms) * w

    def health_status(self, chain: str) -> List[dict]:
        with self._lock:
            plist = self._available(chain)
            self._recover_expired(chain, plist)
            return [asdict(p) for p in plist]

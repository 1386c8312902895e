from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

import requests
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from .config import Config, FailoverSettings, TimeoutSettings
from .errors import CallReverted, FailoverExhausted, ScanCancelled
from .provider_pool import ProviderPool
from .rpc import EVMClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _never(exc: BaseException) -> bool:
    return False


class FailoverExecutor:
    """Runs one logical RPC operation against the pool with retry and failover.

    Every network call in the package goes through ``run``. Each attempt picks
    the pool's current best provider, so a provider that trips the circuit is
    skipped on the next attempt.
    """

    def __init__(
        self,
        pool: ProviderPool,
        settings: Optional[FailoverSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
        client_factory: Optional[Callable[[str], EVMClient]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pool = pool
        self.settings = settings or FailoverSettings()
        self.timeouts = timeouts or TimeoutSettings()
        self.client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._local = threading.local()

    @classmethod
    def from_config(cls, cfg: Config, pool: Optional[ProviderPool] = None, **kwargs) -> "FailoverExecutor":
        return cls(pool or ProviderPool.from_config(cfg), cfg.failover, cfg.timeouts, **kwargs)

    def _default_client(self, url: str) -> EVMClient:
        # requests sessions are kept per thread
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return EVMClient(url, session=session, timeouts=self.timeouts)

    def _sleeper(self, cancel: Optional[threading.Event]) -> Callable[[float], None]:
        if cancel is None:
            return self._sleep
        return lambda seconds: cancel.wait(seconds)

    def _attempt(
        self,
        chain: str,
        operation: Callable[[EVMClient], T],
        passthrough: Callable[[BaseException], bool],
        cancel: Optional[threading.Event],
    ) -> T:
        if cancel is not None and cancel.is_set():
            raise ScanCancelled(f"cancelled before RPC call on {chain}")
        provider = self.pool.select_provider(chain)
        client = self.client_factory(provider.url)
        started = time.monotonic()
        try:
            result = operation(client)
        except Exception as e:  # noqa: BLE001
            if isinstance(e, (ScanCancelled, CallReverted)) or passthrough(e):
                raise
            self.pool.report_failure(chain, provider.url)
            logger.warning("RPC call failed for %s via %s: %s", chain, provider.name, e)
            raise
        self.pool.report_success(chain, provider.url, (time.monotonic() - started) * 1000.0)
        return result

    def run(
        self,
        chain: str,
        operation: Callable[[EVMClient], T],
        *,
        max_attempts: Optional[int] = None,
        passthrough: Optional[Callable[[BaseException], bool]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """Run ``operation(client)`` with up to ``max_attempts`` tries.

        Exceptions accepted by ``passthrough`` (and reverted calls) are raised
        straight away, with no retry and no failure charged to the provider.
        Exhausting the attempts raises ``FailoverExhausted`` chained from the
        last underlying error.
        """

        attempts = max(1, max_attempts or self.settings.max_attempts)
        passthrough = passthrough or _never
        stop = stop_after_attempt(attempts)
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        def _retryable(exc: BaseException) -> bool:
            return not isinstance(exc, (ScanCancelled, CallReverted)) and not passthrough(exc)

        def _before_sleep(rs: RetryCallState) -> None:
            logger.info(
                "Retrying %s RPC call (attempt %d/%d) in %.1fs",
                chain,
                rs.attempt_number,
                attempts,
                rs.next_action.sleep if rs.next_action else 0.0,
            )

        retrying = Retrying(
            stop=stop,
            # min(base * 2^attempt, max): 2s, 4s, 5s, ...
            wait=wait_exponential(multiplier=2 * self.settings.backoff_base_sec, max=self.settings.backoff_max_sec),
            retry=retry_if_exception(_retryable),
            sleep=self._sleeper(cancel),
            before_sleep=_before_sleep,
            reraise=False,
        )
        try:
            for attempt in retrying:
                with attempt:
                    result = self._attempt(chain, operation, passthrough, cancel)
        except RetryError as e:
            last = e.last_attempt.exception()
            if cancel is not None and cancel.is_set():
                raise ScanCancelled(f"cancelled during RPC retries on {chain}") from last
            raise FailoverExhausted(chain, e.last_attempt.attempt_number, last) from last
        return result

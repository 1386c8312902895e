"""Adaptive chunked ``eth_getLogs`` scanning.

Public RPC endpoints cap the block range of a single ``eth_getLogs`` call and
throttle bursts, and the caps differ per provider and per plan. The scanner
walks a block range left to right, one chunk per request, and lets a split
policy resize the chunk after every outcome:

- ``LinearBackoffPolicy`` starts small, doubles on success, halves on errors,
  pins the chunk to a limit the provider reports, and gives up after a run of
  consecutive failures at the same cursor.
- ``BinarySplitPolicy`` starts large and splits a failing chunk in halves,
  left half first, restoring the size once the split region is done. Chunks
  that cannot be fetched even at the minimum size are skipped and counted.

Coverage reporting is deliberately asymmetric: a scan is ``degraded`` only if
the rounded coverage is below 100 when it finishes. Throttling along the way
does not count against a scan that still covered everything.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .classifier import Classification, ErrorClassifier, ErrorKind
from .config import ScannerSettings
from .errors import ScanCancelled

logger = logging.getLogger(__name__)

ChunkFetcher = Callable[[int, int], List[dict]]


@dataclass
class ScanWindow:
    from_block: int
    to_block: int
    chunk_size: int
    min_chunk: int
    max_chunk: int
    cursor: int = -1
    consecutive_errors: int = 0
    split_stack: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.cursor < 0:
            self.cursor = self.from_block

    @property
    def requested_blocks(self) -> int:
        return max(0, self.to_block - self.from_block + 1)

    def chunk_end(self) -> int:
        end = min(self.cursor + self.chunk_size - 1, self.to_block)
        if self.split_stack:
            end = min(end, self.split_stack[-1])
        return end


def coverage_percent(scanned_blocks: int, requested_blocks: int) -> int:
    """``min(100, round(scanned / requested * 100))`` with half-up rounding."""

    if requested_blocks <= 0:
        return 100
    return min(100, (scanned_blocks * 200 + requested_blocks) // (2 * requested_blocks))


@dataclass
class Coverage:
    requested_blocks: int
    scanned_blocks: int
    coverage_percent: int
    degraded: bool
    rate_limited: bool
    successful_chunks: int = 0
    failed_chunks: int = 0
    aborted_at: Optional[int] = None

    @classmethod
    def build(
        cls,
        *,
        requested_blocks: int,
        scanned_blocks: int,
        rate_limited: bool,
        successful_chunks: int,
        failed_chunks: int,
        aborted_at: Optional[int] = None,
    ) -> "Coverage":
        scanned = min(scanned_blocks, requested_blocks)
        pct = coverage_percent(scanned, requested_blocks)
        full = pct >= 100
        return cls(
            requested_blocks=requested_blocks,
            scanned_blocks=scanned,
            coverage_percent=pct,
            degraded=not full,
            # throttling that still ended in full coverage is not reported
            rate_limited=rate_limited and not full,
            successful_chunks=successful_chunks,
            failed_chunks=failed_chunks,
            aborted_at=aborted_at,
        )

    def to_dict(self) -> dict:
        return {
            "requestedBlocks": self.requested_blocks,
            "scannedBlocks": self.scanned_blocks,
            "coveragePercent": self.coverage_percent,
            "degraded": self.degraded,
            "rateLimited": self.rate_limited,
            "successfulChunks": self.successful_chunks,
            "failedChunks": self.failed_chunks,
            "abortedAt": self.aborted_at,
        }


@dataclass
class ScanResult:
    logs: List[dict]
    coverage: Coverage
    from_block: int
    to_block: int


class Action(enum.Enum):
    RETRY = "retry"  # same cursor, possibly new chunk size
    SKIP = "skip"  # give up on this chunk, advance the cursor
    ABORT = "abort"  # stop the scan, cursor is the scanned boundary


@dataclass
class Decision:
    action: Action
    sleep: float = 0.0
    rate_limited: bool = False


class SplitPolicy:
    """Chunk sizing strategy; all mutable state lives on the ``ScanWindow``."""

    name = "base"

    def __init__(
        self,
        *,
        seed_chunk: int,
        min_chunk: int,
        max_chunk: int,
        max_consecutive_errors: int = 5,
        rate_limit_backoff: float = 1.0,
        error_backoff: float = 0.2,
        pace: float = 0.0,
    ) -> None:
        self.seed_chunk = max(1, seed_chunk)
        self.min_chunk = max(1, min(min_chunk, self.seed_chunk))
        self.max_chunk = max(self.seed_chunk, max_chunk)
        self.max_consecutive_errors = max(1, max_consecutive_errors)
        self.rate_limit_backoff = max(1.0, rate_limit_backoff)
        self.error_backoff = error_backoff
        self.pace = pace

    def window(self, from_block: int, to_block: int) -> ScanWindow:
        return ScanWindow(from_block, to_block, self.seed_chunk, self.min_chunk, self.max_chunk)

    def _pin(self, window: ScanWindow, limit: int) -> None:
        window.chunk_size = window.min_chunk = window.max_chunk = limit
        window.split_stack.clear()

    def on_success(self, window: ScanWindow) -> None:
        raise NotImplementedError

    def on_error(self, window: ScanWindow, start: int, end: int, cls: Classification) -> Decision:
        raise NotImplementedError


class LinearBackoffPolicy(SplitPolicy):
    name = "linear"

    def on_success(self, window: ScanWindow) -> None:
        # the first success after an error keeps the reduced size
        if window.consecutive_errors == 0 and window.chunk_size < window.max_chunk:
            window.chunk_size = min(window.chunk_size * 2, window.max_chunk)
        window.consecutive_errors = 0

    def on_error(self, window: ScanWindow, start: int, end: int, cls: Classification) -> Decision:
        window.consecutive_errors += 1

        if cls.kind is ErrorKind.RANGE_EXCEEDED and cls.limit and cls.limit < window.chunk_size:
            logger.info("Detected max block range %d, pinning chunk size", cls.limit)
            self._pin(window, cls.limit)
            return Decision(Action.RETRY, self.error_backoff)

        if window.consecutive_errors >= self.max_consecutive_errors:
            return Decision(Action.ABORT, rate_limited=cls.kind is ErrorKind.RATE_LIMITED)

        window.chunk_size = max(window.min_chunk, window.chunk_size // 2)
        if cls.kind is ErrorKind.RATE_LIMITED:
            return Decision(Action.RETRY, self.rate_limit_backoff, rate_limited=True)
        return Decision(Action.RETRY, self.error_backoff)


class BinarySplitPolicy(SplitPolicy):
    name = "binary"

    def __init__(self, *, transient_retries: int = 1, **kwargs) -> None:
        super().__init__(**kwargs)
        self.max_chunk = self.seed_chunk
        self.transient_retries = transient_retries

    def on_success(self, window: ScanWindow) -> None:
        window.consecutive_errors = 0
        # leaving a split region restores the size it was split from
        while window.split_stack and window.cursor > window.split_stack[-1]:
            window.split_stack.pop()
            window.chunk_size = min(window.chunk_size * 2, window.max_chunk)

    def on_error(self, window: ScanWindow, start: int, end: int, cls: Classification) -> Decision:
        window.consecutive_errors += 1
        length = end - start + 1
        rate_limited = cls.kind is ErrorKind.RATE_LIMITED

        if cls.kind is ErrorKind.RANGE_EXCEEDED and cls.limit and cls.limit < length:
            logger.info("Detected max block range %d, pinning chunk size", cls.limit)
            self._pin(window, cls.limit)
            return Decision(Action.RETRY, self.error_backoff)

        if cls.kind in (ErrorKind.RANGE_EXCEEDED, ErrorKind.TOO_MANY_RESULTS, ErrorKind.RATE_LIMITED):
            if length > window.min_chunk:
                window.split_stack.append(end)
                window.chunk_size = max(window.min_chunk, (length + 1) // 2)
                window.consecutive_errors = 0
                sleep = self.rate_limit_backoff if rate_limited else 0.0
                return Decision(Action.RETRY, sleep, rate_limited=rate_limited)
            window.consecutive_errors = 0
            return Decision(Action.SKIP, rate_limited=rate_limited)

        if window.consecutive_errors <= self.transient_retries:
            return Decision(Action.RETRY, self.error_backoff)
        window.consecutive_errors = 0
        return Decision(Action.SKIP)


def make_policy(kind: str, settings: ScannerSettings, *, seed_chunk: int, min_chunk: int) -> SplitPolicy:
    common = dict(
        seed_chunk=seed_chunk,
        min_chunk=min_chunk,
        max_chunk=settings.max_chunk,
        max_consecutive_errors=settings.max_consecutive_errors,
        rate_limit_backoff=settings.rate_limit_backoff_sec,
        error_backoff=settings.error_backoff_sec,
        pace=settings.pace_sec,
    )
    if kind == "binary":
        return BinarySplitPolicy(**common)
    if kind == "linear":
        return LinearBackoffPolicy(**common)
    raise ValueError(f"unknown split policy: {kind}")


class AdaptiveLogScanner:
    def __init__(
        self,
        fetch: ChunkFetcher,
        policy: SplitPolicy,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[threading.Event] = None,
        label: str = "LogScanner",
    ) -> None:
        self.fetch = fetch
        self.policy = policy
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self.cancel = cancel
        self.label = label

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ScanCancelled(f"[{self.label}] scan cancelled")

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel is not None:
            self.cancel.wait(seconds)
        else:
            self._sleep(seconds)

    def scan(self, from_block: int, to_block: int) -> ScanResult:
        """Fetch all matching logs in ``[from_block, to_block]``.

        Provider errors never escape; they shape the chunk size and, at worst,
        end the scan early with partial coverage. Only cancellation raises.
        """

        window = self.policy.window(from_block, to_block)
        logs: List[dict] = []
        scanned = ok = failed = 0
        rate_limited = False
        aborted_at: Optional[int] = None

        logger.info("[%s] Scanning blocks %d to %d (%s policy, chunk %d)", self.label, from_block, to_block, self.policy.name, window.chunk_size)

        while window.cursor <= window.to_block:
            self._check_cancel()
            start, end = window.cursor, window.chunk_end()
            try:
                chunk = self.fetch(start, end)
            except ScanCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                cls = self.classifier.classify(exc)
                decision = self.policy.on_error(window, start, end, cls)
                rate_limited = rate_limited or decision.rate_limited
                if decision.action is Action.ABORT:
                    aborted_at = start
                    logger.warning(
                        "[%s] Too many errors (%d), stopping scan at block %d with %d logs",
                        self.label,
                        window.consecutive_errors,
                        start,
                        len(logs),
                    )
                    break
                if decision.action is Action.SKIP:
                    failed += 1
                    window.cursor = end + 1
                    logger.warning("[%s] Failed chunk %d-%d: %s", self.label, start, end, str(exc)[:100])
                else:
                    logger.debug("[%s] Chunk %d-%d %s, retrying with size %d", self.label, start, end, cls.kind.value, window.chunk_size)
                self._pause(decision.sleep)
                continue

            logs.extend(chunk or [])
            ok += 1
            scanned += end - start + 1
            window.cursor = end + 1
            self.policy.on_success(window)
            if chunk:
                logger.debug("[%s] Chunk %d-%d: %d logs", self.label, start, end, len(chunk))
            if window.cursor <= window.to_block:
                self._pause(self.policy.pace)

        coverage = Coverage.build(
            requested_blocks=window.requested_blocks,
            scanned_blocks=scanned,
            rate_limited=rate_limited,
            successful_chunks=ok,
            failed_chunks=failed,
            aborted_at=aborted_at,
        )
        logger.info(
            "[%s] Found %d logs (%d%% coverage)%s",
            self.label,
            len(logs),
            coverage.coverage_percent,
            " - degraded mode" if coverage.degraded else "",
        )
        return ScanResult(logs=logs, coverage=coverage, from_block=from_block, to_block=to_block)


def make_chunk_fetcher(
    executor,
    chain: str,
    address: Optional[str],
    topics: Sequence[Optional[str]],
    classifier: ErrorClassifier,
    cancel: Optional[threading.Event] = None,
) -> ChunkFetcher:
    """Chunk fetches go through failover one attempt at a time; the scanner owns retries.

    Range errors pass straight through so they never count against the provider.
    """

    topic_list = list(topics)

    def _fetch(start: int, end: int) -> List[dict]:
        return executor.run(
            chain,
            lambda client: client.get_logs(address, topic_list, start, end),
            max_attempts=1,
            passthrough=classifier.is_range_error,
            cancel=cancel,
        )

    return _fetch

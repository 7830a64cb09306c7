"""
ProxyReplay Scheduler

Orders the loaded sessions by their recorded start time and dispatches them
to the worker pool, reproducing the recorded spacing scaled to a target
transaction rate.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..common.diagnostics import Diagnostics
from ..common.endpoints import Endpoint
from ..core.model import Protocol, Session
from ..core.state import RunState
from .pool import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_SLEEP_LIMIT_US = 500000


def get_utimestamp() -> int:
    """Wall clock in microseconds."""
    return time.time_ns() // 1000


def sleep_us(duration: int) -> None:
    time.sleep(duration / 1000000.0)


@dataclass
class BatchInfo:
    """Totals for a prepared session batch."""

    session_count: int = 0
    transaction_count: int = 0
    span_us: int = 0  # Normalized start of the last session
    offset_us: int = 0  # Original start of the first session
    max_content_length: int = 0


@dataclass
class WorkItem:
    """A session together with the target picked for it."""

    session: Session
    target: Endpoint


@dataclass
class ReplayStats:
    """Aggregate result of a replay run."""

    transactions: int = 0
    sessions: int = 0
    elapsed_ms: float = 0.0
    repetitions: int = 0
    aborted: bool = False

    @property
    def reuse(self) -> float:
        """Average transactions per session."""
        if self.sessions == 0:
            return 0.0
        return self.transactions / self.sessions

    @property
    def throughput(self) -> float:
        """Transactions per millisecond."""
        if self.elapsed_ms <= 0:
            return 0.0
        return self.transactions / self.elapsed_ms

    def summary(self) -> str:
        return (f"{self.transactions} transactions in {self.sessions} sessions "
                f"(reuse {self.reuse:.2f}) in {self.elapsed_ms:.0f}ms "
                f"({self.throughput:.3f} / millisecond).")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'transactions': self.transactions,
            'sessions': self.sessions,
            'reuse': round(self.reuse, 2),
            'elapsed_ms': round(self.elapsed_ms, 2),
            'throughput_per_ms': round(self.throughput, 3),
            'repetitions': self.repetitions,
            'aborted': self.aborted,
        }


def prepare_sessions(state: RunState) -> BatchInfo:
    """
    Sort the registry by start time and normalize it to start at zero.

    The sort is stable, so sessions with equal start times keep their
    registry order. Also records the largest request body on the state.

    Args:
        state: Loaded (not yet frozen) run state

    Returns:
        BatchInfo with the batch totals
    """
    sessions = state.sessions
    sessions.sort(key=lambda s: s.start)

    info = BatchInfo(session_count=len(sessions))
    if sessions:
        info.offset_us = sessions[0].start

    for ssn in sessions:
        ssn.start -= info.offset_us
        info.transaction_count += len(ssn.transactions)
        for txn in ssn.transactions:
            info.max_content_length = max(info.max_content_length, txn.request_size)

    if sessions:
        info.span_us = sessions[-1].start

    state.set_max_content_length(info.max_content_length)
    return info


def compute_rate_multiplier(transaction_count: int, span_us: int, rate: Optional[float]) -> float:
    """
    Scale factor from recorded offsets to real offsets for a target rate.

    Args:
        transaction_count: Transactions in the batch
        span_us: Normalized start of the last session, microseconds
        rate: Target transactions per second; 0 or None disables pacing

    Returns:
        (transactions * 1e6) / (rate * span), or 0 when there is nothing to pace
    """
    if not rate or transaction_count == 0 or span_us <= 0:
        return 0.0
    return (transaction_count * 1000000.0) / (rate * span_us)


class TargetRotation:
    """
    Round-robin over the plain and TLS target lists.

    Plain sessions take the next HTTP target and TLS or HTTP/2 sessions take
    the next HTTPS target. Each cursor only moves when its own list is used,
    so the two lists never disturb each other.
    """

    def __init__(self, http_targets: List[Endpoint], https_targets: List[Endpoint]):
        if not http_targets or not https_targets:
            raise ValueError("Both target lists need at least one endpoint")
        self.http_targets = list(http_targets)
        self.https_targets = list(https_targets)
        self.http_index = 0
        self.https_index = 0

    def next_http(self) -> Endpoint:
        target = self.http_targets[self.http_index]
        self.http_index = (self.http_index + 1) % len(self.http_targets)
        return target

    def next_https(self) -> Endpoint:
        target = self.https_targets[self.https_index]
        self.https_index = (self.https_index + 1) % len(self.https_targets)
        return target

    def next(self, protocol: Protocol) -> Endpoint:
        """Next target for a session of the given protocol."""
        if protocol is Protocol.PLAIN:
            return self.next_http()
        return self.next_https()


class ReplayScheduler:
    """
    Paces sessions onto a worker pool.

    Each repetition takes a fresh wall-clock baseline. A session is due at
    ``baseline + multiplier * session.start``; if it is not yet due the
    scheduler sleeps, but never longer than ``sleep_limit_us`` at once, so a
    scheduler that has fallen behind dispatches immediately instead of
    accumulating sleep debt.
    """

    def __init__(
        self,
        pool: WorkerPool,
        rotation: TargetRotation,
        repeat: int = 1,
        sleep_limit_us: int = DEFAULT_SLEEP_LIMIT_US,
        worker_timeout: Optional[float] = None,
        clock: Callable[[], int] = get_utimestamp,
        sleep: Callable[[int], None] = sleep_us
    ):
        """
        Initialize scheduler.

        Args:
            pool: Started worker pool
            rotation: Target round-robin
            repeat: Number of passes over the batch (>= 1)
            sleep_limit_us: Longest single pacing sleep, microseconds
            worker_timeout: Seconds to wait for a worker, None = forever
            clock: Microsecond wall clock
            sleep: Sleeps for a number of microseconds
        """
        if repeat < 1:
            raise ValueError(f"Repeat count must be at least 1, got {repeat}")
        self.pool = pool
        self.rotation = rotation
        self.repeat = repeat
        self.sleep_limit_us = sleep_limit_us
        self.worker_timeout = worker_timeout
        self.clock = clock
        self.sleep = sleep
        self.errata = Diagnostics()

    def dispatch(self, sessions: List[Session], rate_multiplier: float) -> ReplayStats:
        """
        Dispatch every session ``repeat`` times. Does not wait for the workers.

        A failure to get a worker stops dispatching and is recorded as an
        error in ``self.errata``.
        """
        stats = ReplayStats()

        for repetition in range(self.repeat):
            baseline = self.clock()
            for ssn in sessions:
                now = self.clock()
                scheduled = int(rate_multiplier * ssn.start) + baseline
                if scheduled > now:
                    self.sleep(min(self.sleep_limit_us, scheduled - now))

                worker = self.pool.get_worker(self.worker_timeout)
                if worker is None:
                    self.errata.error("Failed to get worker thread for session at {}.", ssn.location)
                    stats.aborted = True
                    return stats

                target = self.rotation.next(ssn.protocol)
                worker.assign(WorkItem(ssn, target))
                stats.sessions += 1
                stats.transactions += len(ssn.transactions)
            stats.repetitions = repetition + 1

        return stats

    def run(self, sessions: List[Session], rate_multiplier: float) -> ReplayStats:
        """
        Dispatch all sessions, then shut the pool down and wait for it.

        Returns:
            ReplayStats with the elapsed wall time filled in
        """
        start = time.perf_counter()
        try:
            stats = self.dispatch(sessions, rate_multiplier)
        finally:
            self.pool.shutdown()
            self.pool.join()
        stats.elapsed_ms = (time.perf_counter() - start) * 1000

        self.errata.info(stats.summary())
        return stats

"""
ProxyReplay Replay Module

This module provides:
- Fixed-size worker pool
- Session scheduling with rate pacing and target round-robin
- Protocol-specific session runners
"""

from .pool import WorkerPool, ClientWorker
from .scheduler import (
    BatchInfo,
    ReplayScheduler,
    ReplayStats,
    TargetRotation,
    WorkItem,
    compute_rate_multiplier,
    prepare_sessions,
)
from .runner import (
    H2SessionRunner,
    HttpSessionRunner,
    SessionDispatcher,
    SessionOutcome,
    SessionResult,
    TLSSessionRunner,
    run_session,
    select_runner,
    verify_response,
)

__all__ = [
    'WorkerPool',
    'ClientWorker',
    'BatchInfo',
    'ReplayScheduler',
    'ReplayStats',
    'TargetRotation',
    'WorkItem',
    'compute_rate_multiplier',
    'prepare_sessions',
    'H2SessionRunner',
    'HttpSessionRunner',
    'SessionDispatcher',
    'SessionOutcome',
    'SessionResult',
    'TLSSessionRunner',
    'run_session',
    'select_runner',
    'verify_response',
]

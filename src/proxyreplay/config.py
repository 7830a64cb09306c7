"""
ProxyReplay Client Configuration

Run-wide settings shared by the trace loader, the scheduler and the session
runners.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

from .common.endpoints import Endpoint


class RunMode(Enum):
    """
    Which recorded directives drive the replay.

    CLIENT: a proxy sits between us and the origin, so we send the
    client-request and expect the proxy-response.

    NO_PROXY: we talk straight to the origin, which expects what the proxy
    would have sent, so we send the proxy-request and expect the
    server-response.
    """

    CLIENT = 'client'
    NO_PROXY = 'no-proxy'


DEFAULT_KEY_FORMAT = '{method}:{url}'


@dataclass
class ReplayClientConfig:
    """Configuration for a replay run."""

    # Input
    replay_path: str = ''
    load_threads: int = 10  # Trace files parsed in parallel

    # Targets
    http_targets: List[Endpoint] = field(default_factory=list)
    https_targets: List[Endpoint] = field(default_factory=list)

    # Directives and verification
    run_mode: RunMode = RunMode.CLIENT
    strict: bool = False
    keys: Set[str] = field(default_factory=set)  # Empty = replay everything
    key_format: str = DEFAULT_KEY_FORMAT

    # Pacing
    rate: int = 0  # Transactions per second, 0 = as fast as possible
    repeat: int = 1
    sleep_limit_us: int = 500000

    # Execution
    threads: int = 50
    worker_timeout: Optional[float] = None  # None = wait forever for a worker
    timeout: float = 10.0
    verify_tls: bool = False

    # Output
    verbosity: str = 'info'

    @property
    def use_proxy_request_directives(self) -> bool:
        return self.run_mode is RunMode.NO_PROXY

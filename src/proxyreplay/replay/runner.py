"""
ProxyReplay Session Runner

Picks the protocol variant for a session and runs its transactions, in
recorded order, over a single reused client connection.

- Plain sessions:  requests + HTTPAdapter against the HTTP target
- TLS sessions:    requests + SNIAdapter against the HTTPS target
- HTTP/2 sessions: httpx (http2=True) against the HTTPS target
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..common.diagnostics import Diagnostics
from ..common.endpoints import Endpoint
from ..config import ReplayClientConfig
from ..core.model import Protocol, Transaction
from ..core.state import NameTable, RunState
from .scheduler import WorkItem

logger = logging.getLogger(__name__)

# Computed by the client library from the body.
FRAMING_HEADERS = {'content-length', 'transfer-encoding'}

# Not allowed on an HTTP/2 connection.
CONNECTION_HEADERS = FRAMING_HEADERS | {'connection', 'keep-alive', 'proxy-connection', 'upgrade'}


class SessionOutcome(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class SessionResult:
    """Outcome of running one session."""

    outcome: SessionOutcome
    transactions_run: int = 0
    transactions_failed: int = 0
    errata: Diagnostics = field(default_factory=Diagnostics)


def verify_response(
    txn: Transaction,
    status: int,
    headers: Iterable[Tuple[str, str]],
    names: NameTable
) -> Diagnostics:
    """
    Check a received response against the recorded expectation.

    Only done for strict transactions or responses that carry field rules.
    Received field names are matched through the (frozen) name table, so a
    name that no rule mentions is simply ignored.

    Args:
        txn: Transaction with the expected response
        status: Received status code
        headers: Received (name, value) pairs
        names: Run name table

    Returns:
        Diagnostics with one error per violated expectation
    """
    errata = Diagnostics()
    expected = txn.response
    if not (txn.strict or expected.has_rules):
        return errata

    received: Dict[str, str] = {}
    for name, value in headers:
        canonical = names.lookup(name.lower())
        if canonical is None:
            continue
        if canonical in received:
            received[canonical] = f"{received[canonical]}, {value}"
        else:
            received[canonical] = value

    request = txn.request
    if expected.status is not None and status != expected.status:
        errata.error('Status mismatch for "{} {}": expected {}, received {}.',
                     request.method, request.url, expected.status, status)

    for rule in expected.rules:
        if not rule.check(received.get(rule.name)):
            errata.error('Field rule {} failed for "{} {}" (received {!r}).',
                         rule.describe(), request.method, request.url, received.get(rule.name))
    return errata


def _outbound_headers(txn: Transaction, excluded: set) -> List[Tuple[str, str]]:
    return [(name, value) for name, value in txn.request.fields if name not in excluded]


class SNIAdapter(HTTPAdapter):
    """HTTPAdapter presenting a fixed TLS server name."""

    def __init__(self, server_hostname: Optional[str] = None, **kwargs):
        # Must be set before HTTPAdapter.__init__ builds the pool manager.
        self.server_hostname = server_hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        if self.server_hostname:
            pool_kwargs['server_hostname'] = self.server_hostname
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


class HttpSessionRunner:
    """
    Runs a session over plain HTTP/1.

    Example:
        runner = HttpSessionRunner(config, state)
        errata = runner.connect(target)
        if errata.is_ok():
            errata.note(runner.run_transactions(session.transactions, target))
        runner.close()
    """

    scheme = 'http'
    description = 'HTTP'
    send_errors = (requests.RequestException,)
    connect_errors = (requests.exceptions.ConnectionError,)

    def __init__(self, config: ReplayClientConfig, state: RunState):
        self.config = config
        self.state = state
        self.client: Optional[requests.Session] = None
        self.transactions_run = 0
        self.transactions_failed = 0

    def _create_adapter(self) -> HTTPAdapter:
        # Replays must not be retried behind our back.
        return HTTPAdapter(pool_connections=1, pool_maxsize=1,
                           max_retries=Retry(total=0, redirect=False, raise_on_status=False))

    def connect(self, target: Endpoint) -> Diagnostics:
        """
        Set up the client for a target without touching the network.

        The connection itself is opened by the first exchange, so an
        unreachable target shows up as a connection error on the session's
        first transaction and aborts the session there.
        """
        errata = Diagnostics()
        errata.diag('Connecting via {} to {}.', self.description, target)
        client = requests.Session()
        client.trust_env = False
        client.mount(f"{self.scheme}://", self._create_adapter())
        self.client = client
        return errata

    def _send(self, txn: Transaction, target: Endpoint) -> Tuple[int, Iterable[Tuple[str, str]]]:
        request = txn.request
        response = self.client.request(
            method=request.method or 'GET',
            url=target.url(self.scheme, request.url),
            headers=_merge_headers(_outbound_headers(txn, FRAMING_HEADERS)),
            data=request.body(self.state),
            timeout=self.config.timeout,
            verify=self.config.verify_tls,
            allow_redirects=False
        )
        return response.status_code, response.headers.items()

    def run_transactions(self, transactions: List[Transaction], target: Endpoint) -> Diagnostics:
        """
        Run transactions strictly in order.

        Failing to reach the target before any exchange aborts the session;
        later failures are reported and the next transaction still runs.
        """
        errata = Diagnostics()
        for txn in transactions:
            request = txn.request
            try:
                status, headers = self._send(txn, target)
            except self.send_errors as e:
                self.transactions_failed += 1
                if self.transactions_run == 0 and isinstance(e, self.connect_errors):
                    errata.error('Failed to connect to {}: {}', target, e)
                    break
                errata.error('Transaction "{} {}" to {} failed: {}', request.method, request.url, target, e)
                self.transactions_run += 1
                continue

            self.transactions_run += 1
            result = verify_response(txn, status, headers, self.state.names)
            if not result.is_ok():
                self.transactions_failed += 1
            errata.note(result)
        return errata

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


class TLSSessionRunner(HttpSessionRunner):
    """Runs a session over HTTPS, presenting the recorded client SNI."""

    scheme = 'https'
    description = 'TLS'

    def __init__(self, config: ReplayClientConfig, state: RunState, client_sni: Optional[str] = None):
        super().__init__(config, state)
        self.client_sni = client_sni

    def _create_adapter(self) -> HTTPAdapter:
        return SNIAdapter(server_hostname=self.client_sni, pool_connections=1, pool_maxsize=1,
                          max_retries=Retry(total=0, redirect=False, raise_on_status=False))


class H2SessionRunner(HttpSessionRunner):
    """Runs a session over HTTP/2 (TLS with ALPN h2)."""

    scheme = 'https'
    description = 'HTTP/2'
    send_errors = (httpx.HTTPError,)
    connect_errors = (httpx.ConnectError,)

    def connect(self, target: Endpoint) -> Diagnostics:
        """Set up the HTTP/2 client. As with HTTP/1 the connection opens on first use."""
        errata = Diagnostics()
        errata.diag('Connecting via {} to {}.', self.description, target)
        self.client = httpx.Client(
            http2=True,
            verify=self.config.verify_tls,
            timeout=self.config.timeout,
            trust_env=False,
            follow_redirects=False
        )
        return errata

    def _send(self, txn: Transaction, target: Endpoint) -> Tuple[int, Iterable[Tuple[str, str]]]:
        request = txn.request
        response = self.client.request(
            request.method or 'GET',
            target.url(self.scheme, request.url),
            headers=_outbound_headers(txn, CONNECTION_HEADERS),
            content=request.body(self.state)
        )
        return response.status_code, response.headers.multi_items()


def _merge_headers(fields: List[Tuple[str, str]]) -> Dict[str, str]:
    """Fold repeated fields into one comma separated value, keeping order."""
    merged: Dict[str, str] = {}
    for name, value in fields:
        if name in merged:
            merged[name] = f"{merged[name]}, {value}"
        else:
            merged[name] = value
    return merged


def select_runner(item: WorkItem, config: ReplayClientConfig, state: RunState):
    """
    Map a session's protocol variant to a runner and target.

    Returns:
        (runner, target), or (None, None) if the session cannot be replayed
        in this run mode
    """
    ssn = item.session
    if ssn.protocol is Protocol.HTTP2:
        if config.use_proxy_request_directives:
            # Without a proxy there is nothing to terminate HTTP/2 for us.
            return None, None
        return H2SessionRunner(config, state), item.target
    if ssn.protocol is Protocol.TLS:
        return TLSSessionRunner(config, state, ssn.client_sni), item.target
    return HttpSessionRunner(config, state), item.target


def run_session(item: WorkItem, config: ReplayClientConfig, state: RunState) -> SessionResult:
    """
    Replay one session end to end.

    Args:
        item: Session and its chosen targets
        config: Run configuration
        state: Frozen run state

    Returns:
        SessionResult
    """
    ssn = item.session
    errata = Diagnostics()
    errata.diag('Starting session {} protocol={}.', ssn.location, ssn.protocol.value)

    runner, target = select_runner(item, config, state)
    if runner is None:
        errata.diag('Ignoring HTTP/2 traffic in no-proxy mode, {}.', ssn.location)
        return SessionResult(SessionOutcome.SKIPPED, errata=errata)

    try:
        errata.note(runner.connect(target))
        if errata.is_ok():
            errata.note(runner.run_transactions(ssn.transactions, target))
    finally:
        runner.close()

    outcome = SessionOutcome.SUCCESS if errata.is_ok() else SessionOutcome.FAILED
    return SessionResult(outcome, transactions_run=runner.transactions_run,
                         transactions_failed=runner.transactions_failed, errata=errata)


class SessionDispatcher:
    """
    Work function for the worker pool: runs sessions, logs their
    diagnostics and tallies the outcomes.
    """

    def __init__(self, config: ReplayClientConfig, state: RunState):
        self.config = config
        self.state = state
        self._lock = threading.Lock()
        self.outcomes: Dict[SessionOutcome, int] = {o: 0 for o in SessionOutcome}
        self.transactions_failed = 0

    def __call__(self, item: WorkItem) -> SessionResult:
        result = run_session(item, self.config, self.state)
        result.errata.log(logger)
        with self._lock:
            self.outcomes[result.outcome] += 1
            self.transactions_failed += result.transactions_failed
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessions_succeeded': self.outcomes[SessionOutcome.SUCCESS],
            'sessions_failed': self.outcomes[SessionOutcome.FAILED],
            'sessions_skipped': self.outcomes[SessionOutcome.SKIPPED],
            'transactions_failed': self.transactions_failed,
        }

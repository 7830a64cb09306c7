"""
ProxyReplay Replay File Handler

State machine that turns the sessions and transactions of one replay file
into Session and Transaction records:

    ssn_open -> (txn_open -> request/response loads -> txn_close)* -> ssn_close

One handler is created per file. Handlers for different files run on
different loader threads and share the RunState, so every transaction is
built entirely under the run's load lock.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from ..common.diagnostics import Diagnostics
from ..config import ReplayClientConfig
from ..core.model import FieldRules, Protocol, Session, Transaction
from ..core.nodes import TraceNode
from ..core.state import NameTable, RunState

logger = logging.getLogger(__name__)

YAML_SSN_PROTOCOL_KEY = 'protocol'
YAML_SSN_START_KEY = 'connection-time'
YAML_SSN_TLS_KEY = 'tls'
YAML_SSN_TLS_CLIENT_SNI_KEY = 'client-sni'
YAML_CLIENT_REQ_KEY = 'client-request'
YAML_PROXY_REQ_KEY = 'proxy-request'
YAML_SERVER_RSP_KEY = 'server-response'
YAML_PROXY_RSP_KEY = 'proxy-response'

TLS_PREFIX = 'tls'
H2_PREFIX = 'h2'


class ReplayFileHandler:
    """
    Callbacks invoked while walking a replay file. Every callback returns
    Diagnostics; the default implementations accept everything.
    """

    def __init__(self, path: str = '', names: Optional[NameTable] = None):
        self.path = path
        self.names = names if names is not None else NameTable()

    def file_open(self, path: str) -> Diagnostics:
        self.path = path
        return Diagnostics()

    def global_rules(self, rules: FieldRules) -> Diagnostics:
        return Diagnostics()

    def ssn_open(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    def txn_open(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    @contextmanager
    def txn_scope(self, node: TraceNode):
        """Scope of one transaction, yields the txn_open result."""
        yield self.txn_open(node)

    def client_request(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    def proxy_request(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    def server_response(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    def proxy_response(self, node: TraceNode) -> Diagnostics:
        return Diagnostics()

    def apply_to_all_messages(self, rules: FieldRules) -> Diagnostics:
        return Diagnostics()

    def txn_close(self) -> Diagnostics:
        return Diagnostics()

    def txn_discard(self) -> None:
        pass

    def ssn_close(self) -> Diagnostics:
        return Diagnostics()


class ClientReplayFileHandler(ReplayFileHandler):
    """
    Builds client-side sessions into the run's session registry.

    Each transaction is loaded inside txn_scope(), which holds the load lock
    from a successful txn_open until the block exits. A node that fails
    validation never takes the lock, and closing without a successful open
    raises instead of attaching anything.
    """

    def __init__(self, config: ReplayClientConfig, state: RunState, path: str = ''):
        super().__init__(path, state.names)
        self.config = config
        self.state = state
        self._ssn: Optional[Session] = None
        self._txn: Optional[Transaction] = None

    @property
    def session(self) -> Optional[Session]:
        return self._ssn

    @property
    def transaction(self) -> Optional[Transaction]:
        return self._txn

    def global_rules(self, rules: FieldRules) -> Diagnostics:
        with self.state.load_lock:
            self.state.merge_global_rules(rules)
        return Diagnostics()

    def ssn_open(self, node: TraceNode) -> Diagnostics:
        errata = Diagnostics()
        ssn = Session(path=self.path, line=node.line)
        self._ssn = ssn

        proto_node = node.get(YAML_SSN_PROTOCOL_KEY)
        if proto_node is not None:
            if proto_node.is_sequence:
                # Entries after the first TLS entry are never inspected.
                for entry in proto_node:
                    name = entry.scalar.lower()
                    if name.startswith(H2_PREFIX):
                        ssn.is_h2 = True
                    if name.startswith(TLS_PREFIX):
                        ssn.is_tls = True
                        errata.note(self._load_client_sni(node, ssn))
                        break
            else:
                errata.warn('Session at "{}":{} has a value for "{}" that is not a sequence.',
                            self.path, ssn.line, YAML_SSN_PROTOCOL_KEY)
        else:
            errata.info('Session at "{}":{} has no "{}" key.', self.path, ssn.line, YAML_SSN_PROTOCOL_KEY)

        ssn.protocol = Protocol.classify(ssn.is_tls, ssn.is_h2)

        start_node = node.get(YAML_SSN_START_KEY)
        if start_node is not None:
            if start_node.is_scalar:
                text = start_node.scalar.strip()
                if text.isdecimal() and int(text) > 0:
                    ssn.start = int(text) // 1000  # nsec -> usec
                else:
                    errata.warn('Session at "{}":{} has a "{}" value "{}" that is not a positive integer.',
                                self.path, ssn.line, YAML_SSN_START_KEY, start_node.scalar)
            else:
                errata.warn('Session at "{}":{} has a "{}" key that is not a scalar.',
                            self.path, ssn.line, YAML_SSN_START_KEY)

        return errata

    def _load_client_sni(self, node: TraceNode, ssn: Session) -> Diagnostics:
        errata = Diagnostics()
        tls_node = node.get(YAML_SSN_TLS_KEY)
        if tls_node is None:
            return errata
        sni_node = tls_node.get(YAML_SSN_TLS_CLIENT_SNI_KEY)
        if sni_node is None:
            return errata
        if sni_node.is_scalar:
            with self.state.load_lock:
                ssn.client_sni = self.state.names.localize_lower(sni_node.scalar)
        else:
            errata.error('Session at "{}":{} has a value for key "{}" that is not a scalar as required.',
                         self.path, ssn.line, YAML_SSN_TLS_CLIENT_SNI_KEY)
        return errata

    def _required_keys(self):
        if self.config.use_proxy_request_directives:
            return ((YAML_PROXY_REQ_KEY, 'proxy request'), (YAML_SERVER_RSP_KEY, 'server response'))
        return ((YAML_CLIENT_REQ_KEY, 'client request'), (YAML_PROXY_RSP_KEY, 'proxy response'))

    def txn_open(self, node: TraceNode) -> Diagnostics:
        """
        Validate a transaction node and start a fresh Transaction.

        Raises:
            RuntimeError: If the previous transaction was never closed
        """
        errata = Diagnostics()
        if self._txn is not None:
            raise RuntimeError('txn_open called while a transaction is still open')

        for key, description in self._required_keys():
            if key not in node:
                errata.error('Transaction node at "{}":{} does not have a {} [{}].',
                             self.path, node.line, description, key)
        if errata.is_ok():
            self._txn = Transaction(strict=self.config.strict)
        return errata

    @contextmanager
    def txn_scope(self, node: TraceNode):
        """
        Open a transaction and hold the load lock until the block exits.

        A node that fails validation yields its errors without taking the
        lock. However the block exits, the open transaction is dropped unless
        it was attached by txn_close.
        """
        errata = self.txn_open(node)
        if not errata.is_ok():
            yield errata
            return

        try:
            with self.state.load_lock:
                yield errata
        finally:
            self._txn = None

    def client_request(self, node: TraceNode) -> Diagnostics:
        if not self.config.use_proxy_request_directives:
            return self._txn.request.load(node, self.state.names, self.path)
        return Diagnostics()

    def proxy_request(self, node: TraceNode) -> Diagnostics:
        if self.config.use_proxy_request_directives:
            return self._txn.request.load(node, self.state.names, self.path)
        return Diagnostics()

    def proxy_response(self, node: TraceNode) -> Diagnostics:
        # Only expected when a proxy is in the path.
        if not self.config.use_proxy_request_directives:
            return self._load_response(node)
        return Diagnostics()

    def server_response(self, node: TraceNode) -> Diagnostics:
        # Without a proxy we talk to the server directly.
        if self.config.use_proxy_request_directives:
            return self._load_response(node)
        return Diagnostics()

    def _load_response(self, node: TraceNode) -> Diagnostics:
        response = self._txn.response
        response.rules = self.state.txn_rules.copy()
        return response.load(node, self.state.names, self.path)

    def apply_to_all_messages(self, rules: FieldRules) -> Diagnostics:
        self._txn.request.rules.merge(rules)
        self._txn.response.rules.merge(rules)
        return Diagnostics()

    def txn_close(self) -> Diagnostics:
        """
        Attach the open transaction to the session, subject to the key list.

        Raises:
            RuntimeError: If no transaction is open
        """
        errata = Diagnostics()
        txn = self._txn
        if txn is None:
            raise RuntimeError('Transaction closed without a matching successful open')
        self._txn = None

        txn.key = txn.request.make_key(self.config.key_format)
        keys = self.config.keys
        if not keys or txn.key in keys:
            self._ssn.transactions.append(txn)
        else:
            errata.diag('Transaction "{}" at "{}":{} is not in the key list, skipped.',
                        txn.key, self.path, txn.request.line)
        return errata

    def txn_discard(self) -> None:
        """Drop the open transaction without attaching it."""
        self._txn = None

    def ssn_close(self) -> Diagnostics:
        errata = Diagnostics()
        ssn = self._ssn
        self._ssn = None
        if ssn is None:
            return errata
        if self.state.add_session(ssn):
            errata.diag('Session at {} loaded with {} transactions.', ssn.location, len(ssn.transactions))
        else:
            errata.diag('Session at {} has no transactions, skipped.', ssn.location)
        return errata

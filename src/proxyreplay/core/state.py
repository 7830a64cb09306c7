"""
ProxyReplay Run State

Process-wide state shared by the loader threads and, once frozen, by the
replay workers.

Two phases:
- LOADING: the name table and rule template are writable behind locks.
- FROZEN: everything is read-only and read without locks. Any attempt to
  write raises FrozenStateError.
"""

import threading
from enum import Enum
from typing import Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .model import FieldRules, Session


class FrozenStateError(RuntimeError):
    """Raised on a write to run state after the freeze point."""


class StateMode(Enum):
    LOADING = 'loading'
    FROZEN = 'frozen'


class NameTable:
    """
    String interning table for header field names and similar tokens.

    While loading, localize() stores new names under a lock. After freeze()
    only names already present can be localized; lookups take no lock.
    """

    def __init__(self):
        self._names: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._mode = StateMode.LOADING

    @property
    def mode(self) -> StateMode:
        return self._mode

    @property
    def frozen(self) -> bool:
        return self._mode is StateMode.FROZEN

    def localize(self, name: str) -> str:
        """
        Return the canonical copy of a name, interning it if needed.

        Raises:
            FrozenStateError: If the table is frozen and the name is new
        """
        if self._mode is StateMode.FROZEN:
            existing = self._names.get(name)
            if existing is None:
                raise FrozenStateError(f'Attempt to localize "{name}" after the name table was frozen')
            return existing

        with self._lock:
            return self._names.setdefault(name, name)

    def localize_lower(self, name: str) -> str:
        return self.localize(name.lower())

    def lookup(self, name: str) -> Optional[str]:
        """Canonical copy of a name if known, never interns."""
        return self._names.get(name)

    def freeze(self) -> None:
        if self._mode is StateMode.FROZEN:
            raise FrozenStateError('Name table is already frozen')
        self._mode = StateMode.FROZEN

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)


class RunState:
    """
    Shared state for one replay run.

    Attributes:
        names: Interned header names
        load_lock: Held for the whole open/populate/close span of a transaction
        registry_lock: Held briefly while appending a finished session
        sessions: Session registry, in the order sessions were closed
        txn_rules: Global field-rule template copied into every response
        max_content_length: Largest request body, sizes the shared body buffer
    """

    def __init__(self):
        # Imported here, model depends on this module for NameTable.
        from .model import FieldRules

        self.names = NameTable()
        self.load_lock = threading.Lock()
        self.registry_lock = threading.Lock()
        self.sessions: List['Session'] = []
        self.txn_rules: 'FieldRules' = FieldRules()
        self.max_content_length = 0
        self._body = b''
        self._mode = StateMode.LOADING

    @property
    def frozen(self) -> bool:
        return self._mode is StateMode.FROZEN

    def _check_writable(self, what: str) -> None:
        if self._mode is StateMode.FROZEN:
            raise FrozenStateError(f'Attempt to modify {what} after the run state was frozen')

    def add_session(self, session: 'Session') -> bool:
        """
        Append a finished session to the registry if it has transactions.

        Returns:
            True if the session was registered
        """
        self._check_writable('the session registry')
        if not session.transactions:
            return False
        with self.registry_lock:
            self.sessions.append(session)
        return True

    def merge_global_rules(self, rules: 'FieldRules') -> None:
        """Merge rules into the global template. Caller holds load_lock."""
        self._check_writable('the global field rules')
        self.txn_rules.merge(rules)

    def set_max_content_length(self, length: int) -> None:
        self._check_writable('the body buffer')
        self.max_content_length = length
        self._body = b'x' * length

    def body(self, size: int) -> bytes:
        """Request body of the given size cut from the shared buffer."""
        if size <= len(self._body):
            return self._body[:size]
        return b'x' * size

    def freeze(self) -> None:
        """
        One-time transition to read-only. Called single-threaded between
        loading and replay.
        """
        if self._mode is StateMode.FROZEN:
            raise FrozenStateError('Run state is already frozen')
        self.names.freeze()
        self.txn_rules.freeze()
        self._mode = StateMode.FROZEN

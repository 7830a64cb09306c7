"""
ProxyReplay Diagnostics

Structured results carried back from loading, scheduling and replay operations.
Operations return a Diagnostics object instead of raising, and callers merge
them into their own result with note().
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List


class Severity(IntEnum):
    """Severity of a diagnostic note, ordered from least to most severe."""

    DIAG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    @property
    def log_level(self) -> int:
        """Matching standard logging level."""
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    Severity.DIAG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass
class Note:
    """A single diagnostic message."""

    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.message}"


@dataclass
class Diagnostics:
    """
    Accumulated diagnostics for one operation.

    Messages are str.format templates, so callers can write
    ``errata.warn('Session at "{}":{} has no start.', path, line)``.

    Example:
        errata = Diagnostics()
        errata.note(load_replay_file(path, handler))
        if not errata.is_ok():
            errata.log(logger)
    """

    notes: List[Note] = field(default_factory=list)

    def _add(self, severity: Severity, message: str, *args) -> 'Diagnostics':
        if args:
            message = message.format(*args)
        self.notes.append(Note(severity, message))
        return self

    def error(self, message: str, *args) -> 'Diagnostics':
        return self._add(Severity.ERROR, message, *args)

    def warn(self, message: str, *args) -> 'Diagnostics':
        return self._add(Severity.WARN, message, *args)

    def info(self, message: str, *args) -> 'Diagnostics':
        return self._add(Severity.INFO, message, *args)

    def diag(self, message: str, *args) -> 'Diagnostics':
        return self._add(Severity.DIAG, message, *args)

    def note(self, other: 'Diagnostics') -> 'Diagnostics':
        """Merge another result's notes into this one."""
        if other is not None and other is not self:
            self.notes.extend(other.notes)
        return self

    def is_ok(self) -> bool:
        """True unless an ERROR note is present."""
        return all(n.severity < Severity.ERROR for n in self.notes)

    @property
    def severity(self) -> Severity:
        """Highest severity present (DIAG for an empty result)."""
        if not self.notes:
            return Severity.DIAG
        return max(n.severity for n in self.notes)

    def count(self, severity: Severity) -> int:
        return sum(1 for n in self.notes if n.severity == severity)

    def log(self, logger: logging.Logger) -> None:
        """Emit every note on the given logger at its mapped level."""
        for n in self.notes:
            logger.log(n.severity.log_level, n.message)

    def clear(self) -> None:
        self.notes.clear()

    def __iter__(self) -> Iterator[Note]:
        return iter(self.notes)

    def __len__(self) -> int:
        return len(self.notes)

    def __bool__(self) -> bool:
        # An empty result is still a valid result.
        return True

"""
ProxyReplay Session Model

Sessions, transactions and the HTTP message specifications loaded from
replay files, plus the field rules used to verify responses.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from ..common.diagnostics import Diagnostics
from .nodes import TraceNode
from .state import FrozenStateError, NameTable

YAML_HEADERS_KEY = 'headers'
YAML_FIELDS_KEY = 'fields'
YAML_CONTENT_KEY = 'content'
YAML_CONTENT_SIZE_KEY = 'size'
YAML_CONTENT_DATA_KEY = 'data'

RULE_KINDS = ('equal', 'present', 'absent', 'contains', 'prefix', 'suffix')

_KEY_PLACEHOLDER = re.compile(r'\{([^{}]+)\}')


class Protocol(Enum):
    """Protocol variant of a session, resolved once when it is built."""

    PLAIN = 'http'
    TLS = 'https'
    HTTP2 = 'h2'

    @classmethod
    def classify(cls, is_tls: bool, is_h2: bool) -> 'Protocol':
        if is_h2:
            return cls.HTTP2
        if is_tls:
            return cls.TLS
        return cls.PLAIN


@dataclass(frozen=True)
class FieldRule:
    """Verification rule for one header field."""

    name: str
    value: str = ''
    kind: str = 'equal'

    def check(self, actual: Optional[str]) -> bool:
        """Whether the received value (None if absent) satisfies the rule."""
        if self.kind == 'absent':
            return actual is None
        if actual is None:
            return False
        if self.kind == 'present':
            return True
        if self.kind == 'equal':
            return actual == self.value
        if self.kind == 'contains':
            return self.value in actual
        if self.kind == 'prefix':
            return actual.startswith(self.value)
        if self.kind == 'suffix':
            return actual.endswith(self.value)
        return False

    def describe(self) -> str:
        if self.kind in ('present', 'absent'):
            return f'"{self.name}" {self.kind}'
        return f'"{self.name}" {self.kind} "{self.value}"'


class FieldRules:
    """
    A set of field rules keyed by (localized) field name.

    Later rules for the same name replace earlier ones, so merging the
    transaction-wide rules over the global template lets the transaction win.
    """

    def __init__(self, rules: Optional[Dict[str, FieldRule]] = None):
        self._rules: Dict[str, FieldRule] = dict(rules or {})
        self._frozen = False

    def _check_writable(self) -> None:
        if self._frozen:
            raise FrozenStateError('Attempt to modify frozen field rules')

    def add(self, rule: FieldRule) -> None:
        self._check_writable()
        self._rules[rule.name] = rule

    def merge(self, other: 'FieldRules') -> None:
        self._check_writable()
        self._rules.update(other._rules)

    def copy(self) -> 'FieldRules':
        """Mutable copy, even of a frozen set."""
        return FieldRules(self._rules)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[FieldRule]:
        return self._rules.get(name)

    def __iter__(self) -> Iterator[FieldRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: str) -> bool:
        return name in self._rules


def load_fields(
    node: TraceNode,
    names: NameTable,
    path: str = ''
) -> Tuple[List[Tuple[str, str]], FieldRules, Diagnostics]:
    """
    Parse a ``fields`` sequence.

    Each entry is ``[name, value]`` or ``[name, value, rule]``. Names are
    localized lower-case. Entries with a rule also produce a FieldRule.

    Args:
        node: The ``fields`` node
        names: Name table to intern field names in
        path: Source file for messages

    Returns:
        (fields, rules, diagnostics)
    """
    errata = Diagnostics()
    fields: List[Tuple[str, str]] = []
    rules = FieldRules()

    if not node.is_sequence:
        errata.error('Field list at "{}":{} is not a sequence.', path, node.line)
        return fields, rules, errata

    for entry in node:
        items = list(entry)
        if not entry.is_sequence or len(items) not in (2, 3) or not all(i.is_scalar for i in items):
            errata.error('Field at "{}":{} is not a sequence of 2 or 3 scalars.', path, entry.line)
            continue

        name = names.localize_lower(items[0].scalar)
        value = items[1].scalar
        fields.append((name, value))

        if len(items) == 3:
            kind = items[2].scalar.lower()
            if kind not in RULE_KINDS:
                errata.error('Field "{}" at "{}":{} has an unknown rule "{}".',
                             name, path, entry.line, items[2].scalar)
                continue
            rules.add(FieldRule(name=name, value=value, kind=kind))

    return fields, rules, errata


def load_rules(node: TraceNode, names: NameTable, path: str = '') -> Tuple[FieldRules, Diagnostics]:
    """
    Parse a ``headers: {fields: [...]}`` block used purely as rules.

    Two-element entries become 'equal' rules.
    """
    errata = Diagnostics()
    fields_node = node.get(YAML_FIELDS_KEY) if node is not None else None
    if fields_node is None:
        errata.warn('Rule block at "{}":{} has no "{}" key.', path, node.line if node is not None else 0, YAML_FIELDS_KEY)
        return FieldRules(), errata

    fields, rules, field_errata = load_fields(fields_node, names, path)
    errata.note(field_errata)
    for name, value in fields:
        if name not in rules:
            rules.add(FieldRule(name=name, value=value, kind='equal'))
    return rules, errata


class HttpMessage:
    """Common part of a recorded request or response."""

    def __init__(self):
        self.fields: List[Tuple[str, str]] = []
        self.rules = FieldRules()
        self.line = 0

    def field(self, name: str) -> Optional[str]:
        """First value of a (lower-case) field, or None."""
        for field_name, value in self.fields:
            if field_name == name:
                return value
        return None

    @property
    def headers(self) -> List[Tuple[str, str]]:
        return list(self.fields)

    def _load_headers(self, node: TraceNode, names: NameTable, path: str) -> Diagnostics:
        errata = Diagnostics()
        headers_node = node.get(YAML_HEADERS_KEY)
        if headers_node is None:
            return errata
        fields_node = headers_node.get(YAML_FIELDS_KEY)
        if fields_node is None:
            errata.warn('Headers at "{}":{} have no "{}" key.', path, headers_node.line, YAML_FIELDS_KEY)
            return errata

        fields, rules, field_errata = load_fields(fields_node, names, path)
        errata.note(field_errata)
        self.fields.extend(fields)
        self.rules.merge(rules)
        return errata


class HttpRequest(HttpMessage):
    """Recorded request to send."""

    def __init__(self):
        super().__init__()
        self.method = ''
        self.url = ''
        self.version = '1.1'
        self.content_size = 0
        self.content_data: Optional[bytes] = None

    def load(self, node: TraceNode, names: NameTable, path: str = '') -> Diagnostics:
        """Populate from a client-request or proxy-request node."""
        errata = Diagnostics()
        self.line = node.line

        if not node.is_mapping:
            return errata.error('Request at "{}":{} is not a map.', path, node.line)

        for key in ('method', 'url', 'version'):
            child = node.get(key)
            if child is None:
                continue
            if not child.is_scalar:
                errata.error('Request at "{}":{} has a "{}" value that is not a scalar.', path, child.line, key)
                continue
            setattr(self, key, child.scalar)

        if not self.method:
            errata.warn('Request at "{}":{} has no method.', path, node.line)

        errata.note(self._load_headers(node, names, path))
        errata.note(self._load_content(node, path))
        return errata

    def _load_content(self, node: TraceNode, path: str) -> Diagnostics:
        errata = Diagnostics()
        content_node = node.get(YAML_CONTENT_KEY)

        if content_node is not None:
            data_node = content_node.get(YAML_CONTENT_DATA_KEY)
            size_node = content_node.get(YAML_CONTENT_SIZE_KEY)
            if data_node is not None and data_node.is_scalar:
                self.content_data = data_node.scalar.encode('utf-8')
                self.content_size = len(self.content_data)
            elif size_node is not None:
                size = _parse_size(size_node.scalar if size_node.is_scalar else '')
                if size is None:
                    errata.warn('Content at "{}":{} has a "{}" that is not a non-negative integer.',
                                path, size_node.line, YAML_CONTENT_SIZE_KEY)
                else:
                    self.content_size = size
            return errata

        content_length = self.field('content-length')
        if content_length is not None:
            size = _parse_size(content_length)
            if size is None:
                errata.warn('Request at "{}":{} has an invalid Content-Length "{}".',
                            path, node.line, content_length)
            else:
                self.content_size = size
        return errata

    def make_key(self, key_format: str) -> str:
        """
        Derive the transaction key from the request.

        Placeholders: {method}, {url}, {version}, {field.NAME}. Missing fields
        expand to an empty string.
        """
        def replace(match):
            name = match.group(1)
            if name.startswith('field.'):
                value = self.field(name[len('field.'):].lower())
                return value if value is not None else ''
            if name in ('method', 'url', 'version'):
                return getattr(self, name)
            return match.group(0)

        return _KEY_PLACEHOLDER.sub(replace, key_format)

    def body(self, state) -> Optional[bytes]:
        """Bytes to send as the request body."""
        if self.content_data is not None:
            return self.content_data
        if self.content_size:
            return state.body(self.content_size)
        return None

    def __repr__(self) -> str:
        return f'HttpRequest({self.method} {self.url})'


class HttpResponse(HttpMessage):
    """Expected response to verify against."""

    def __init__(self):
        super().__init__()
        self.status: Optional[int] = None
        self.reason = ''

    def load(self, node: TraceNode, names: NameTable, path: str = '') -> Diagnostics:
        """Populate from a proxy-response or server-response node."""
        errata = Diagnostics()
        self.line = node.line

        if not node.is_mapping:
            return errata.error('Response at "{}":{} is not a map.', path, node.line)

        status_node = node.get('status')
        if status_node is not None:
            status = _parse_size(status_node.scalar if status_node.is_scalar else '')
            if status is None or not 100 <= status <= 599:
                errata.error('Response at "{}":{} has an invalid status "{}".',
                             path, status_node.line, status_node.scalar)
            else:
                self.status = status
        else:
            errata.warn('Response at "{}":{} has no status.', path, node.line)

        reason_node = node.get('reason')
        if reason_node is not None and reason_node.is_scalar:
            self.reason = reason_node.scalar

        errata.note(self._load_headers(node, names, path))
        return errata

    @property
    def has_rules(self) -> bool:
        return len(self.rules) > 0


class Transaction:
    """One request and its expected response."""

    def __init__(self, strict: bool = False):
        self.strict = strict
        self.request = HttpRequest()
        self.response = HttpResponse()
        self.key = ''

    @property
    def request_size(self) -> int:
        return self.request.content_size

    def __repr__(self) -> str:
        return f'Transaction({self.request.method} {self.request.url} -> {self.response.status})'


@dataclass
class Session:
    """One replayed connection and its ordered transactions."""

    path: str = ''
    line: int = 0
    is_tls: bool = False
    is_h2: bool = False
    client_sni: Optional[str] = None
    start: int = 0  # Microseconds, normalized to the batch start once prepared
    protocol: Protocol = Protocol.PLAIN
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def location(self) -> str:
        return f'"{self.path}":{self.line}'

    def __repr__(self) -> str:
        return (f'Session({self.location} protocol={self.protocol.value} '
                f'start={self.start} txns={len(self.transactions)})')


def _parse_size(text: str) -> Optional[int]:
    text = text.strip()
    if not text.isdecimal():
        return None
    return int(text)

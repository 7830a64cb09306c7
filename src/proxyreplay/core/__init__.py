"""
ProxyReplay Core

Session/transaction model and the two-phase run state shared between the
loader and the replay workers.
"""

from .model import (
    FieldRule,
    FieldRules,
    HttpRequest,
    HttpResponse,
    Protocol,
    Session,
    Transaction,
)
from .nodes import TraceNode, compose_trace
from .state import FrozenStateError, NameTable, RunState, StateMode

__all__ = [
    'FieldRule',
    'FieldRules',
    'HttpRequest',
    'HttpResponse',
    'Protocol',
    'Session',
    'Transaction',
    'TraceNode',
    'compose_trace',
    'FrozenStateError',
    'NameTable',
    'RunState',
    'StateMode',
]

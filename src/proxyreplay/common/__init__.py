"""
ProxyReplay Common Utilities

Shared diagnostics, endpoint and logging helpers.
"""

from .diagnostics import Diagnostics, Note, Severity
from .endpoints import Endpoint, EndpointResolutionError, resolve_endpoints, split_host_port
from .logging_config import configure_logging, VERBOSITY_LEVELS

__all__ = [
    'Diagnostics',
    'Note',
    'Severity',
    'Endpoint',
    'EndpointResolutionError',
    'resolve_endpoints',
    'split_host_port',
    'configure_logging',
    'VERBOSITY_LEVELS',
]

"""
Tests for the ProxyReplay common utilities

Diagnostics, endpoint parsing and logging setup.
"""

import io
import logging
import socket
from unittest.mock import patch

import pytest

from proxyreplay.common.diagnostics import Diagnostics, Severity
from proxyreplay.common.endpoints import (
    Endpoint,
    EndpointResolutionError,
    resolve_endpoints,
    split_host_port,
)
from proxyreplay.common.logging_config import configure_logging


class TestDiagnostics:
    """Test diagnostic accumulation."""

    def test_empty_is_ok(self):
        errata = Diagnostics()

        assert errata.is_ok()
        assert errata.severity is Severity.DIAG
        assert bool(errata)

    def test_format_arguments(self):
        errata = Diagnostics().warn('Session at "{}":{} has no start.', 'a.yaml', 12)

        assert list(errata)[0].message == 'Session at "a.yaml":12 has no start.'

    def test_literal_braces_without_arguments(self):
        errata = Diagnostics().info('Key format {method}:{url}')

        assert list(errata)[0].message == 'Key format {method}:{url}'

    def test_error_makes_not_ok(self):
        errata = Diagnostics()
        errata.info('fine')
        errata.error('broken')

        assert not errata.is_ok()
        assert errata.severity is Severity.ERROR
        assert errata.count(Severity.INFO) == 1

    def test_note_merges(self):
        outer = Diagnostics().diag('outer')
        inner = Diagnostics().error('inner')

        outer.note(inner)

        assert len(outer) == 2
        assert not outer.is_ok()
        assert inner.count(Severity.ERROR) == 1

    def test_log_levels(self, caplog):
        errata = Diagnostics().diag('d').info('i').warn('w').error('e')
        logger = logging.getLogger('proxyreplay.test')

        with caplog.at_level(logging.DEBUG, logger='proxyreplay.test'):
            errata.log(logger)

        assert [r.levelno for r in caplog.records] == [
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR
        ]


class TestEndpoints:
    """Test endpoint parsing and resolution."""

    @pytest.mark.parametrize('text, expected', [
        ('127.0.0.1:8080', ('127.0.0.1', 8080)),
        ('proxy.local:80', ('proxy.local', 80)),
        ('[::1]:8443', ('::1', 8443)),
        (' 10.0.0.1:1 ', ('10.0.0.1', 1)),
    ])
    def test_split_host_port(self, text, expected):
        assert split_host_port(text) == expected

    @pytest.mark.parametrize('text', ['localhost', ':80', 'host:http', 'host:0', 'host:70000', '[::1]8080'])
    def test_split_host_port_invalid(self, text):
        with pytest.raises(EndpointResolutionError):
            split_host_port(text)

    def test_resolve_list_in_order(self):
        endpoints = resolve_endpoints('127.0.0.1:8080,127.0.0.2:8081')

        assert endpoints == [
            Endpoint('127.0.0.1', 8080, '127.0.0.1'),
            Endpoint('127.0.0.2', 8081, '127.0.0.2'),
        ]

    def test_resolve_takes_first_address(self):
        infos = [
            (socket.AF_INET, socket.SOCK_STREAM, 6, '', ('192.0.2.10', 80)),
            (socket.AF_INET, socket.SOCK_STREAM, 6, '', ('192.0.2.11', 80)),
        ]
        with patch('proxyreplay.common.endpoints.socket.getaddrinfo', return_value=infos):
            endpoints = resolve_endpoints('origin.example.com:80')

        assert endpoints[0].address == '192.0.2.10'
        assert endpoints[0].name == 'origin.example.com'

    def test_resolve_failure(self):
        with patch('proxyreplay.common.endpoints.socket.getaddrinfo',
                   side_effect=socket.gaierror('Name or service not known')):
            with pytest.raises(EndpointResolutionError):
                resolve_endpoints('nowhere.invalid:80')

    def test_resolve_empty(self):
        with pytest.raises(EndpointResolutionError):
            resolve_endpoints(' , ')

    def test_resolution_error_is_value_error(self):
        assert issubclass(EndpointResolutionError, ValueError)

    @pytest.mark.parametrize('endpoint, path, expected', [
        (Endpoint('127.0.0.1', 80), '/a?b=1', 'http://127.0.0.1:80/a?b=1'),
        (Endpoint('127.0.0.1', 80), 'a', 'http://127.0.0.1:80/a'),
        (Endpoint('127.0.0.1', 80), 'http://example.com/x/y', 'http://127.0.0.1:80/x/y'),
        (Endpoint('127.0.0.1', 80), 'http://example.com', 'http://127.0.0.1:80/'),
        (Endpoint('::1', 443), '/v6', 'http://[::1]:443/v6'),
    ])
    def test_url(self, endpoint, path, expected):
        assert endpoint.url('http', path) == expected


class TestConfigureLogging:
    """Test verbosity handling."""

    @pytest.mark.parametrize('verbosity, level', [
        ('error', logging.ERROR),
        ('warn', logging.WARNING),
        ('info', logging.INFO),
        ('diag', logging.DEBUG),
        ('DIAG', logging.DEBUG),
    ])
    def test_levels(self, verbosity, level):
        logger = configure_logging(verbosity, stream=io.StringIO())

        assert logger.name == 'proxyreplay'
        assert logger.level == level

    def test_unknown_verbosity(self):
        assert configure_logging('chatty') is None

"""
Tests for the ProxyReplay session runners

The HTTP clients are patched, no network traffic is generated.
"""

from unittest.mock import Mock, patch

import httpx
import pytest
import requests
from requests.structures import CaseInsensitiveDict

from proxyreplay.common.endpoints import Endpoint
from proxyreplay.config import ReplayClientConfig, RunMode
from proxyreplay.core.model import FieldRule, Protocol, Session, Transaction
from proxyreplay.core.state import RunState
from proxyreplay.replay.runner import (
    H2SessionRunner,
    HttpSessionRunner,
    SNIAdapter,
    SessionDispatcher,
    SessionOutcome,
    TLSSessionRunner,
    run_session,
    select_runner,
    verify_response,
)
from proxyreplay.replay.scheduler import WorkItem

HTTP_TARGET = Endpoint('127.0.0.1', 8080)
HTTPS_TARGET = Endpoint('127.0.0.1', 8443)


def make_txn(state, url='/foo', status=200, rules=(), strict=False, fields=(('Host', 'example.com'),)):
    txn = Transaction(strict=strict)
    txn.request.method = 'GET'
    txn.request.url = url
    txn.request.fields = [(state.names.localize_lower(n), v) for n, v in fields]
    txn.response.status = status
    for rule in rules:
        state.names.localize(rule.name)
        txn.response.rules.add(rule)
    return txn


def make_item(protocol=Protocol.PLAIN, transactions=(), sni=None):
    ssn = Session(path='test.yaml', line=3, protocol=protocol, client_sni=sni,
                  is_tls=protocol is not Protocol.PLAIN, is_h2=protocol is Protocol.HTTP2)
    ssn.transactions.extend(transactions)
    return WorkItem(ssn, HTTP_TARGET if protocol is Protocol.PLAIN else HTTPS_TARGET)


def http_response(status=200, headers=None):
    return Mock(status_code=status, headers=CaseInsensitiveDict(headers or {}))


@pytest.fixture
def state():
    return RunState()


@pytest.fixture
def config():
    return ReplayClientConfig(http_targets=[HTTP_TARGET], https_targets=[HTTPS_TARGET])


class TestSelectRunner:
    """Test protocol variant dispatch."""

    def test_plain(self, config, state):
        runner, target = select_runner(make_item(Protocol.PLAIN), config, state)

        assert type(runner) is HttpSessionRunner
        assert target is HTTP_TARGET

    def test_tls_uses_sni(self, config, state):
        runner, target = select_runner(make_item(Protocol.TLS, sni='example.com'), config, state)

        assert isinstance(runner, TLSSessionRunner)
        assert runner.client_sni == 'example.com'
        assert target is HTTPS_TARGET

    def test_h2(self, config, state):
        runner, target = select_runner(make_item(Protocol.HTTP2), config, state)

        assert isinstance(runner, H2SessionRunner)
        assert target is HTTPS_TARGET

    def test_h2_skipped_without_proxy(self, state):
        config = ReplayClientConfig(run_mode=RunMode.NO_PROXY)

        assert select_runner(make_item(Protocol.HTTP2), config, state) == (None, None)

    def test_h2_session_reported_skipped(self, state):
        config = ReplayClientConfig(run_mode=RunMode.NO_PROXY)

        result = run_session(make_item(Protocol.HTTP2, [make_txn(state)]), config, state)

        assert result.outcome is SessionOutcome.SKIPPED
        assert result.errata.is_ok()


class TestVerifyResponse:
    """Test response verification."""

    def test_lenient_without_rules(self, state):
        """Test a non-strict transaction with no rules is not checked."""
        txn = make_txn(state, status=200)

        assert verify_response(txn, 500, [], state.names).is_ok()

    def test_strict_status_mismatch(self, state):
        txn = make_txn(state, status=200, strict=True)

        errata = verify_response(txn, 404, [], state.names)

        assert not errata.is_ok()
        assert 'expected 200, received 404' in list(errata)[0].message

    def test_rules_checked_without_strict(self, state):
        """Test rules alone turn verification on."""
        txn = make_txn(state, rules=[FieldRule('content-type', 'text/', 'prefix'), FieldRule('via', '', 'absent')])
        state.freeze()

        ok = verify_response(txn, 200, [('Content-Type', 'text/html'), ('Server', 'x')], state.names)
        bad = verify_response(txn, 200, [('Content-Type', 'image/png'), ('Via', 'proxy')], state.names)

        assert ok.is_ok()
        assert len(bad) == 2

    def test_repeated_fields_folded(self, state):
        txn = make_txn(state, rules=[FieldRule('cache-control', 'no-cache, no-store')])

        errata = verify_response(txn, 200, [('Cache-Control', 'no-cache'), ('cache-control', 'no-store')],
                                 state.names)

        assert errata.is_ok()


class TestHttpSessionRunner:
    """Test the HTTP/1 runners with requests patched."""

    def test_transactions_sent_in_order(self, config, state):
        txns = [make_txn(state, url='/a'), make_txn(state, url='http://origin.example.com/b?c=1')]
        txns[0].request.fields.append(('content-length', '3'))
        txns[0].request.content_size = 3

        with patch.object(requests.Session, 'request', return_value=http_response()) as mock_request:
            result = run_session(make_item(Protocol.PLAIN, txns), config, state)

        assert result.outcome is SessionOutcome.SUCCESS
        assert result.transactions_run == 2
        urls = [c.kwargs['url'] for c in mock_request.call_args_list]
        assert urls == ['http://127.0.0.1:8080/a', 'http://127.0.0.1:8080/b?c=1']
        first = mock_request.call_args_list[0].kwargs
        assert first['headers'] == {'host': 'example.com'}
        assert first['data'] == b'xxx'
        assert first['allow_redirects'] is False

    def test_connect_failure_aborts_session(self, config, state):
        """Test failing to reach the target before any exchange aborts the session."""
        txns = [make_txn(state, url='/a'), make_txn(state, url='/b')]
        error = requests.exceptions.ConnectionError('connection refused')

        with patch.object(requests.Session, 'request', side_effect=error) as mock_request:
            result = run_session(make_item(Protocol.PLAIN, txns), config, state)

        assert mock_request.call_count == 1
        assert result.outcome is SessionOutcome.FAILED
        assert result.transactions_run == 0
        assert any('Failed to connect' in n.message for n in result.errata)

    def test_later_failure_continues(self, config, state):
        """Test a failure after the first exchange is reported and the next transaction runs."""
        txns = [make_txn(state, url=f'/{i}') for i in range(3)]
        responses = [http_response(), requests.exceptions.ReadTimeout('slow'), http_response()]

        with patch.object(requests.Session, 'request', side_effect=responses) as mock_request:
            result = run_session(make_item(Protocol.PLAIN, txns), config, state)

        assert mock_request.call_count == 3
        assert result.outcome is SessionOutcome.FAILED
        assert result.transactions_run == 3
        assert result.transactions_failed == 1

    def test_verification_failure_reported(self, config, state):
        txns = [make_txn(state, status=200, strict=True)]

        with patch.object(requests.Session, 'request', return_value=http_response(503)):
            result = run_session(make_item(Protocol.PLAIN, txns), config, state)

        assert result.outcome is SessionOutcome.FAILED
        assert result.transactions_failed == 1

    def test_client_closed(self, config, state):
        runner = HttpSessionRunner(config, state)
        runner.connect(HTTP_TARGET)
        client = runner.client

        with patch.object(client, 'close') as mock_close:
            runner.close()

        mock_close.assert_called_once()
        assert runner.client is None

    def test_connect_sends_nothing(self, config, state):
        """Test connect only sets up the client and leaves the first exchange to open the connection."""
        runner = HttpSessionRunner(config, state)

        with patch.object(requests.Session, 'request') as mock_request:
            errata = runner.connect(HTTP_TARGET)

        assert errata.is_ok()
        assert isinstance(runner.client, requests.Session)
        mock_request.assert_not_called()
        runner.close()


class TestTLSSessionRunner:

    def test_sni_passed_to_pool(self, config, state):
        runner = TLSSessionRunner(config, state, 'www.example.com')
        runner.connect(HTTPS_TARGET)

        adapter = runner.client.get_adapter('https://127.0.0.1:8443/')

        assert isinstance(adapter, SNIAdapter)
        assert adapter.poolmanager.connection_pool_kw['server_hostname'] == 'www.example.com'
        runner.close()

    def test_https_url(self, config, state):
        with patch.object(requests.Session, 'request', return_value=http_response()) as mock_request:
            run_session(make_item(Protocol.TLS, [make_txn(state)], sni='example.com'), config, state)

        assert mock_request.call_args.kwargs['url'] == 'https://127.0.0.1:8443/foo'
        assert mock_request.call_args.kwargs['verify'] is False


class TestH2SessionRunner:

    def test_h2_request(self, config, state):
        txn = make_txn(state, fields=(('Host', 'example.com'), ('Connection', 'keep-alive'), ('Accept', '*/*')))
        response = httpx.Response(200, headers={'content-type': 'text/html'})

        with patch.object(httpx.Client, 'request', return_value=response) as mock_request:
            result = run_session(make_item(Protocol.HTTP2, [txn]), config, state)

        assert result.outcome is SessionOutcome.SUCCESS
        args, kwargs = mock_request.call_args
        assert args == ('GET', 'https://127.0.0.1:8443/foo')
        assert kwargs['headers'] == [('host', 'example.com'), ('accept', '*/*')]

    def test_h2_connect_failure(self, config, state):
        txns = [make_txn(state), make_txn(state)]

        with patch.object(httpx.Client, 'request', side_effect=httpx.ConnectError('refused')) as mock_request:
            result = run_session(make_item(Protocol.HTTP2, txns), config, state)

        assert mock_request.call_count == 1
        assert result.outcome is SessionOutcome.FAILED


class TestSessionDispatcher:

    def test_outcomes_tallied(self, state):
        config = ReplayClientConfig(run_mode=RunMode.NO_PROXY)
        dispatcher = SessionDispatcher(config, state)

        with patch.object(requests.Session, 'request', return_value=http_response()):
            dispatcher(make_item(Protocol.PLAIN, [make_txn(state)]))
        dispatcher(make_item(Protocol.HTTP2, [make_txn(state)]))

        assert dispatcher.to_dict() == {
            'sessions_succeeded': 1,
            'sessions_failed': 0,
            'sessions_skipped': 1,
            'transactions_failed': 0,
        }

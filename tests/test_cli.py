"""
Tests for the ProxyReplay client CLI

Runs the command end to end with the HTTP client patched.
"""

import json
import threading
from unittest.mock import Mock, patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from proxyreplay.cli import ReplayEngine, build_config, create_parser, main
from proxyreplay.config import ReplayClientConfig, RunMode
from proxyreplay.core.state import RunState


REPLAY_YAML = """\
meta:
  version: '1.0'
sessions:
  - protocol: [http, tcp, ip]
    connection-time: 2000000
    transactions:
      - client-request:
          method: GET
          url: /second
          headers:
            fields:
              - [Host, example.com]
        proxy-response:
          status: 200
  - protocol: [tls, tcp, ip]
    tls:
      client-sni: example.com
    connection-time: 1000000
    transactions:
      - client-request:
          method: GET
          url: /first
          headers:
            fields:
              - [Host, example.com]
        proxy-response:
          status: 200
"""


@pytest.fixture
def replay_dir(tmp_path):
    (tmp_path / 'replay.yaml').write_text(REPLAY_YAML)
    return tmp_path


class RecordingRequest:
    """Thread-safe stand-in for requests.Session.request."""

    def __init__(self, status=200):
        self.status = status
        self.urls = []
        self._lock = threading.Lock()

    def __call__(self, **kwargs):
        with self._lock:
            self.urls.append(kwargs['url'])
        return Mock(status_code=self.status, headers=CaseInsensitiveDict())


class TestBuildConfig:
    """Test argument handling."""

    def test_defaults(self):
        args = create_parser().parse_args(['run', 'replays', '127.0.0.1:8080', '127.0.0.1:8443'])

        config = build_config(args)

        assert config.replay_path == 'replays'
        assert [t.port for t in config.http_targets] == [8080]
        assert [t.port for t in config.https_targets] == [8443]
        assert config.run_mode is RunMode.CLIENT
        assert config.keys == set()
        assert config.key_format == '{method}:{url}'
        assert config.rate == 0
        assert config.repeat == 1
        assert config.sleep_limit_us == 500000
        assert config.threads == 50
        assert config.load_threads == 10

    def test_options(self):
        args = create_parser().parse_args([
            '--verbose', 'diag', 'run', 'replays', '127.0.0.1:80,127.0.0.1:81', '127.0.0.1:443',
            '--no-proxy', '--strict', '--keys', 'GET:/a', 'GET:/b', '--rate', '20',
            '--repeat', '3', '--sleep-limit', '1000', '--threads', '4', '--load-threads', '2',
        ])

        config = build_config(args)

        assert config.run_mode is RunMode.NO_PROXY
        assert config.strict is True
        assert config.keys == {'GET:/a', 'GET:/b'}
        assert len(config.http_targets) == 2
        assert (config.rate, config.repeat, config.sleep_limit_us) == (20, 3, 1000)
        assert (config.threads, config.load_threads) == (4, 2)
        assert config.verbosity == 'diag'

    def test_not_enough_arguments(self):
        args = create_parser().parse_args(['run', 'replays', '127.0.0.1:8080'])

        with pytest.raises(ValueError):
            build_config(args)

    @pytest.mark.parametrize('option', ['--threads', '--repeat'])
    def test_non_positive_rejected(self, option):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['run', 'a', 'b:1', 'c:2', option, '0'])


class TestMain:
    """Test exit status and end-to-end runs."""

    def test_no_command(self):
        assert main([]) == 1

    def test_not_enough_arguments(self, capsys):
        assert main(['run', 'replays']) == 1
        assert 'Not enough arguments' in capsys.readouterr().err

    def test_bad_endpoint(self, replay_dir):
        assert main(['run', str(replay_dir), 'no-port', '127.0.0.1:8443']) == 1

    def test_missing_directory(self, tmp_path):
        assert main(['run', str(tmp_path / 'missing'), '127.0.0.1:8080', '127.0.0.1:8443']) == 1

    def test_empty_directory(self, tmp_path):
        assert main(['run', str(tmp_path), '127.0.0.1:8080', '127.0.0.1:8443']) == 1

    def test_end_to_end(self, replay_dir, tmp_path):
        """Test a full replay sends every transaction to the right target."""
        output = tmp_path / 'summary.json'
        recorder = RecordingRequest()

        with patch.object(requests.Session, 'request', side_effect=recorder):
            status = main(['run', str(replay_dir), '127.0.0.1:8080', '127.0.0.1:8443',
                           '--threads', '2', '-o', str(output)])

        assert status == 0
        assert sorted(recorder.urls) == ['http://127.0.0.1:8080/second', 'https://127.0.0.1:8443/first']
        summary = json.loads(output.read_text())
        assert summary['transactions'] == 2
        assert summary['sessions'] == 2
        assert summary['sessions_succeeded'] == 2
        assert summary['aborted'] is False

    def test_key_filter_end_to_end(self, replay_dir):
        recorder = RecordingRequest()

        with patch.object(requests.Session, 'request', side_effect=recorder):
            status = main(['run', str(replay_dir), '127.0.0.1:8080', '127.0.0.1:8443', '-k', 'GET:/first'])

        assert status == 0
        assert recorder.urls == ['https://127.0.0.1:8443/first']


class TestReplayEngine:
    """Test the engine phases directly."""

    def make_config(self, replay_dir, **kwargs):
        args = create_parser().parse_args(['run', str(replay_dir), '127.0.0.1:8080', '127.0.0.1:8443'])
        config = build_config(args)
        for key, value in kwargs.items():
            setattr(config, key, value)
        return config

    def test_state_frozen_before_replay(self, replay_dir):
        """Test sessions are sorted and the state frozen before dispatch."""
        state = RunState()
        engine = ReplayEngine(self.make_config(replay_dir, threads=1), state)
        frozen_during_replay = []

        def request(**kwargs):
            frozen_during_replay.append(state.frozen)
            return Mock(status_code=200, headers=CaseInsensitiveDict())

        with patch.object(requests.Session, 'request', side_effect=request):
            assert engine.run() == 0

        assert frozen_during_replay == [True, True]
        assert [s.start for s in state.sessions] == [0, 1000]
        assert state.sessions[0].transactions[0].request.url == '/first'
        assert engine.stats.transactions == 2

    def test_failed_sessions_do_not_change_status(self, replay_dir):
        """Test per-session failures are reported but the run still completes."""
        engine = ReplayEngine(self.make_config(replay_dir, strict=True))

        with patch.object(requests.Session, 'request', side_effect=RecordingRequest(status=500)):
            status = engine.run()

        assert status == 0
        assert engine.dispatcher.to_dict()['sessions_failed'] == 2

    def test_load_failure_status(self, tmp_path):
        engine = ReplayEngine(ReplayClientConfig(replay_path=str(tmp_path / 'none')))

        assert engine.run() == 1
        assert engine.stats is None

"""
ProxyReplay Client CLI

Command-line interface for replaying recorded traffic against a proxy or
origin server.

Commands:
    run     - Load a replay directory and replay it

Examples:
    # Replay through a proxy listening on 8080 (http) and 8443 (https)
    proxyreplay-client run replays/ 127.0.0.1:8080 127.0.0.1:8443

    # Replay straight to the origin at 20 transactions per second, twice
    proxyreplay-client run replays/ origin:80 origin:443 --no-proxy --rate 20 --repeat 2
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import urllib3

from . import __version__
from .common.endpoints import EndpointResolutionError, resolve_endpoints
from .common.logging_config import VERBOSITY_LEVELS, configure_logging
from .config import DEFAULT_KEY_FORMAT, ReplayClientConfig, RunMode
from .core.state import RunState
from .loader import ClientReplayFileHandler, load_replay_directory, load_replay_file
from .replay import (
    ReplayScheduler,
    SessionDispatcher,
    TargetRotation,
    WorkerPool,
    compute_rate_multiplier,
    prepare_sessions,
)

logger = logging.getLogger('proxyreplay.client')

COMMAND_RUN_ARGS = """Arguments:
  <dir>:            Directory containing replay files.
  <upstream http>:  hostname and port for http requests. Can be a comma separated list.
  <upstream https>: hostname and port for https requests. Can be a comma separated list."""


class ReplayEngine:
    """
    Runs one replay: load, prepare, freeze, dispatch, report.

    Attributes:
        status_code: Status code to return to the operating system
    """

    def __init__(self, config: ReplayClientConfig, state: Optional[RunState] = None):
        self.config = config
        self.state = state or RunState()
        self.status_code = 0
        self.stats = None
        self.dispatcher = SessionDispatcher(config, self.state)

    def load(self) -> bool:
        """Load the replay directory. Returns False on a fatal failure."""
        config = self.config
        logger.info(f'Loading directory "{config.replay_path}".')

        def load_file(path: Path):
            handler = ClientReplayFileHandler(config, self.state)
            return load_replay_file(path, handler)

        errata = load_replay_directory(Path(config.replay_path), load_file, config.load_threads)
        errata.log(logger)
        if not errata.is_ok():
            self.status_code = 1
            return False
        return True

    def replay(self):
        """Prepare the loaded sessions, freeze the run state and replay."""
        config = self.config
        info = prepare_sessions(self.state)

        # Nothing may be interned or registered past this point.
        self.state.freeze()

        logger.info(f"Parsed {info.transaction_count} transactions.")

        rate_multiplier = compute_rate_multiplier(info.transaction_count, info.span_us, config.rate)
        if config.rate:
            logger.info(f"Rate multiplier: {rate_multiplier}, transaction count: {info.transaction_count}, "
                        f"time delta: {info.span_us}, first time {info.offset_us}")

        pool = WorkerPool(size=config.threads, run_fn=self.dispatcher)
        pool.start()
        scheduler = ReplayScheduler(
            pool=pool,
            rotation=TargetRotation(config.http_targets, config.https_targets),
            repeat=config.repeat,
            sleep_limit_us=config.sleep_limit_us,
            worker_timeout=config.worker_timeout
        )

        self.stats = scheduler.run(self.state.sessions, rate_multiplier)
        scheduler.errata.log(logger)
        if not scheduler.errata.is_ok():
            self.status_code = 1
        return self.stats

    def run(self) -> int:
        if self.load():
            self.replay()
        return self.status_code


def build_config(args) -> ReplayClientConfig:
    """
    Build the run configuration from parsed arguments.

    Raises:
        EndpointResolutionError: If a target list cannot be resolved
        ValueError: If there are not enough positional arguments
    """
    if len(args.args) < 3:
        raise ValueError(f'Not enough arguments for "run" command.\n{COMMAND_RUN_ARGS}')

    replay_path, http_list, https_list = args.args[:3]
    return ReplayClientConfig(
        replay_path=replay_path,
        http_targets=resolve_endpoints(http_list),
        https_targets=resolve_endpoints(https_list),
        run_mode=RunMode.NO_PROXY if args.no_proxy else RunMode.CLIENT,
        strict=args.strict,
        keys=set(args.keys or []),
        key_format=args.format,
        rate=args.rate,
        repeat=args.repeat,
        sleep_limit_us=args.sleep_limit,
        threads=args.threads,
        load_threads=args.load_threads,
        worker_timeout=args.worker_timeout,
        timeout=args.timeout,
        verify_tls=args.verify_tls,
        verbosity=args.verbose
    )


def cmd_run(args) -> int:
    """
    Replay a directory of recorded traffic.

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit status
    """
    try:
        config = build_config(args)
    except (ValueError, EndpointResolutionError) as e:
        logger.error(str(e))
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if not config.verify_tls:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    print(f"📡 ProxyReplay Client")
    print(f"   Replay path: {config.replay_path}")
    print(f"   HTTP targets: {', '.join(str(t) for t in config.http_targets)}")
    print(f"   HTTPS targets: {', '.join(str(t) for t in config.https_targets)}")
    print(f"   Mode: {config.run_mode.value}{' (strict)' if config.strict else ''}")
    print()

    engine = ReplayEngine(config)
    status = engine.run()

    if engine.stats is not None:
        stats = engine.stats
        outcomes = engine.dispatcher.to_dict()
        print(f"\n📊 Replay Summary:")
        print(f"   {stats.summary()}")
        print(f"   Sessions succeeded: {outcomes['sessions_succeeded']}")
        print(f"   Sessions failed: {outcomes['sessions_failed']}")
        print(f"   Sessions skipped: {outcomes['sessions_skipped']}")

        if args.output:
            with open(args.output, 'w') as f:
                json.dump({**stats.to_dict(), **outcomes}, f, indent=2)
            print(f"✅ Saved replay results to {args.output}")

    return status


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='proxyreplay-client',
        description="ProxyReplay Client - replay recorded traffic against a proxy or origin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replay through a proxy
  %(prog)s run replays/ 127.0.0.1:8080 127.0.0.1:8443

  # Replay only two transactions, verifying every response
  %(prog)s run replays/ 127.0.0.1:8080 127.0.0.1:8443 --strict --keys GET:/a GET:/b

  # Replay directly to the origin at 50 transactions per second
  %(prog)s run replays/ origin:80 origin:443 --no-proxy --rate 50
        """
    )
    parser.add_argument('--verbose', default='info', choices=list(VERBOSITY_LEVELS),
                        help='Verbosity: error, warn, info (default) or diag')
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # --- RUN command ---
    run_parser = subparsers.add_parser('run', help='Replay a directory of replay files',
                                       description=COMMAND_RUN_ARGS,
                                       formatter_class=argparse.RawDescriptionHelpFormatter)
    run_parser.add_argument('args', nargs='*', metavar='arg', help='<dir> <upstream http> <upstream https>')
    run_parser.add_argument('--no-proxy', action='store_true', help='Use proxy data instead of client data')
    run_parser.add_argument('-s', '--strict', action='store_true',
                            help='Verify all responses, not just those with verification rules')
    run_parser.add_argument('-k', '--keys', nargs='+', help='Allow-list of transaction keys to send')
    run_parser.add_argument('--format', default=DEFAULT_KEY_FORMAT,
                            help=f'Transaction key format (default: {DEFAULT_KEY_FORMAT})')
    run_parser.add_argument('--rate', type=_non_negative_int, default=0,
                            help='Target transactions per second (default: 0, no pacing)')
    run_parser.add_argument('--repeat', type=_positive_int, default=1,
                            help='Replay the data set this many times (default: 1)')
    run_parser.add_argument('--sleep-limit', type=_positive_int, default=500000,
                            help='Longest single pacing sleep in microseconds (default: 500000)')
    run_parser.add_argument('--threads', type=_positive_int, default=50,
                            help='Worker threads (default: 50)')
    run_parser.add_argument('--load-threads', type=_positive_int, default=10,
                            help='Replay files loaded in parallel (default: 10)')
    run_parser.add_argument('--worker-timeout', type=float, default=None,
                            help='Seconds to wait for a free worker before giving up (default: wait forever)')
    run_parser.add_argument('--timeout', type=float, default=10.0,
                            help='Request timeout in seconds (default: 10)')
    run_parser.add_argument('--verify-tls', action='store_true', help='Verify server certificates')
    run_parser.add_argument('-o', '--output', help='Save summary to JSON file')

    return parser


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return value


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if configure_logging(args.verbose) is None:
        print(f"Unrecognized verbosity option: {args.verbose}", file=sys.stderr)
        return 1

    if args.command == 'run':
        return cmd_run(args)

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())

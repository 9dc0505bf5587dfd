"""Command line entry point for the bacup daemon"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from bacup import configure_logging, create_daemon
from bacup.loader import ConfigError
from bacup.models import RunOutcome


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='bacup',
        description='Periodically back up services to remotes'
    )
    parser.add_argument('--config', '-c', metavar='PATH',
                        help='Configuration file (overrides CONF_FILE)')
    parser.add_argument('--check', action='store_true',
                        help='Validate the configuration, print next run times and exit')
    parser.add_argument('--run-now', metavar='JOB',
                        help='Run one backup job once in the foreground and exit')
    parser.add_argument('--verbose', '-v', action='count', default=0,
                        help='Enable debug logging')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='Only log errors')
    return parser


def _print_jobs(daemon):
    for job in daemon.get_scheduled_jobs():
        print(f"{job['name']}: {job['when']} (next run: {job['next_run']})")


def _run_once(daemon, name: str) -> int:
    if name not in daemon.jobs:
        logger.error(f"Unknown backup job: {name}")
        return 1

    result = daemon.run_job(name)
    for line in result.logs:
        print(line)
    return 0 if result.outcome == RunOutcome.SUCCESS else 1


def _serve(daemon) -> int:
    shutdown = threading.Event()

    def request_shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)

    daemon.start()
    while not shutdown.wait(1):
        pass

    abandoned = daemon.stop()
    logger.info("bacup stopped")
    return 1 if abandoned else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbosity=args.verbose, quiet=args.quiet)

    try:
        daemon = create_daemon(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if args.check:
        _print_jobs(daemon)
        return 0

    if args.run_now:
        return _run_once(daemon, args.run_now)

    return _serve(daemon)


if __name__ == '__main__':
    sys.exit(main())

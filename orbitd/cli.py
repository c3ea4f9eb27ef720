"""Command-line entry point."""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from orbitd import __version__
from orbitd.config import Config, load_config
from orbitd.docker_api import EngineClient
from orbitd.errors import ConfigError
from orbitd.registry import RegistryClient
from orbitd.scheduler import Scheduler


logger = logging.getLogger('orbitd')


def setup_logging(debug: bool = False) -> logging.Logger:
    """Configure the 'orbitd' logger hierarchy once."""
    root = logging.getLogger('orbitd')
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return root


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='orbitd',
        description=(
            'Container update daemon: keeps running containers on the newest '
            'image their update policy allows, recreating them with their '
            'full configuration and rolling back on failure.'
        ),
    )
    parser.add_argument(
        'command',
        nargs='?',
        choices=['start', 's'],
        default='start',
        help='Start the daemon (default)'
    )
    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'orbitd {__version__}'
    )
    parser.add_argument(
        '--config',
        default=None,
        help='Path to JSON configuration file (env: ORBITD_CONFIG)'
    )
    parser.add_argument(
        '--policy', '-p',
        default=None,
        help='Update policy: digest, patch, minor or major (env: ORBITD_POLICY, default: digest)'
    )
    parser.add_argument(
        '--interval', '-i',
        default=None,
        help='Check for updates every interval, e.g. 5m, 1h, 12h (env: ORBITD_INTERVAL, default: 12h)'
    )
    parser.add_argument(
        '--cleanup', '-c',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Remove old images after successful updates (env: ORBITD_CLEANUP, default: on)'
    )
    parser.add_argument(
        '--label-enable',
        action='store_true',
        default=None,
        help='Only monitor containers labelled orbitd.enable=true (env: ORBITD_LABEL_ENABLE)'
    )
    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        default=None,
        help='Enable debug logging (env: ORBITD_DEBUG)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=None,
        help='Show what would be done without replacing containers (env: ORBITD_DRY_RUN)'
    )
    parser.add_argument(
        '--run-once',
        action='store_true',
        default=None,
        help='Run a single update cycle and exit (env: ORBITD_RUN_ONCE)'
    )
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(config: Config, stop_event: Optional[threading.Event] = None) -> None:
    """Wire the clients to a scheduler and run it until cancelled."""
    if not os.path.exists(config.docker_socket):
        logger.warning(f"Docker socket not found at {config.docker_socket}")

    engine = EngineClient(
        socket_path=config.docker_socket,
        stop_timeout=config.stop_timeout,
        pull_timeout=config.pull_timeout,
    )
    registry = RegistryClient(timeout=config.registry_timeout)
    scheduler = Scheduler(config, engine, registry, stop_event=stop_event)
    scheduler.run_forever()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    cli_values = {
        'policy': args.policy,
        'interval': args.interval,
        'cleanup': args.cleanup,
        'label_enable': args.label_enable,
        'debug': args.debug,
        'dry_run': args.dry_run,
        'run_once': args.run_once,
    }

    try:
        config = load_config(cli_values, os.environ, args.config)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

    setup_logging(config.debug)
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    run(config, stop_event)


if __name__ == '__main__':
    main()

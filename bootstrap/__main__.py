#!/usr/bin/env python3
"""
Install and start the node agent on a freshly booted instance.

Configuration comes from NODEUP_* environment variables rendered into the
instance user-data; flags override them.

Usage:
    python -m bootstrap
    python -m bootstrap --arch arm64 --config-path /opt/cortex/conf/node_config.yaml
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from pydantic import ValidationError

from bootstrap.config import BootstrapConfig
from bootstrap.errors import BootstrapError, FetchCancelledError, InvalidConfigurationError
from bootstrap.sequencer import BootstrapSequencer

logger = logging.getLogger("bootstrap")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download, verify and start the node agent.")
    parser.add_argument(
        "--arch",
        default=None,
        help="Architecture to install (default: detect from the host)",
    )
    parser.add_argument(
        "--install-dir",
        type=Path,
        default=None,
        help="Install directory (default: NODEUP_INSTALL_DIR or /opt/cortex)",
    )
    parser.add_argument(
        "--config-path",
        type=Path,
        default=None,
        help="Node agent configuration file passed to the agent as --conf",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: NODEUP_LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> BootstrapConfig:
    """NODEUP_* settings with command-line overrides applied."""
    try:
        config = BootstrapConfig()
    except ValidationError as e:
        raise InvalidConfigurationError(f"Invalid NODEUP_* configuration: {e}") from e

    overrides = {}
    if args.install_dir is not None:
        overrides["install_dir"] = args.install_dir
    if args.config_path is not None:
        overrides["config_path"] = args.config_path
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if overrides:
        config = config.model_copy(update=overrides)
    return config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args)
    except InvalidConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Bootstrap failed: %s", e)
        return 1

    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)

    cancel_event = threading.Event()

    def _request_shutdown(signum, frame) -> None:
        logger.info("Received signal %d, stopping after the current download attempt", signum)
        cancel_event.set()

    signal.signal(signal.SIGTERM, _request_shutdown)
    signal.signal(signal.SIGINT, _request_shutdown)

    sequencer = BootstrapSequencer(config, architecture=args.arch, cancel_event=cancel_event)
    try:
        sequencer.run()
    except FetchCancelledError as e:
        logger.error("%s", e)
        return 130
    except BootstrapError as e:
        logger.error("Bootstrap failed: %s", e)
        return 1

    logger.info("== Node agent handed off ==")
    return 0


if __name__ == "__main__":
    sys.exit(main())

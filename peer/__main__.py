from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from shared.protocol import (
    DEFAULT_CHANNEL_LABEL,
    DEFAULT_GATHER_TIMEOUT,
    DEFAULT_STUN_SERVERS,
    DEFAULT_UI_PORT,
    PeerConfig,
)

from .app import PeerApp

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serverless peer-to-peer chat over copy/paste tokens")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local control API")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local control API")
    parser.add_argument(
        "--stun-server",
        action="append",
        dest="stun_servers",
        default=None,
        help="STUN server URL; repeat to add several (defaults to public Google servers)",
    )
    parser.add_argument("--no-stun", action="store_true", help="Gather host candidates only")
    parser.add_argument(
        "--gather-timeout",
        type=float,
        default=DEFAULT_GATHER_TIMEOUT,
        help="Seconds to wait for candidate gathering before giving up",
    )
    parser.add_argument("--channel-label", default=DEFAULT_CHANNEL_LABEL, help="Label of the data channel")
    parser.add_argument("--open-browser", action="store_true", help="Open the control URL in a browser")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def config_from_args(args: argparse.Namespace) -> PeerConfig:
    if args.no_stun:
        stun_servers: tuple[str, ...] = ()
    elif args.stun_servers:
        stun_servers = tuple(args.stun_servers)
    else:
        stun_servers = DEFAULT_STUN_SERVERS
    return PeerConfig(
        stun_servers=stun_servers,
        channel_label=args.channel_label,
        gather_timeout=max(0.1, args.gather_timeout),
    )


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=log_handlers,
        force=True,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args)

    app = PeerApp(config_from_args(args))
    asyncio.run(app.run(host=args.ui_host, port=args.ui_port, open_browser=args.open_browser))


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from shared.protocol import DEFAULT_SIGNALING_HOST, DEFAULT_SIGNALING_PORT

from signaling.server import SignalingServer, SignalingServerRunner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebRTC room signaling coordinator")
    parser.add_argument("--host", default=DEFAULT_SIGNALING_HOST, help="Host/IP to bind the signaling server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", DEFAULT_SIGNALING_PORT)),
        help="HTTP/WebSocket port (defaults to $PORT)",
    )
    parser.add_argument(
        "--cors-origin",
        action="append",
        dest="cors_origins",
        default=None,
        help="Allowed CORS origin; repeat for several (default: any origin)",
    )
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
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args)

    server = SignalingServer(cors_origins=args.cors_origins)
    runner = SignalingServerRunner(
        server,
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower() if args.log_level != "NOTSET" else "info",
    )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await runner.start()
    assert runner.task is not None
    stop_waiter = asyncio.create_task(stop_event.wait())
    await asyncio.wait({stop_waiter, runner.task}, return_when=asyncio.FIRST_COMPLETED)
    stop_waiter.cancel()

    logger.info("Stopping signaling server (%d rooms open)", server.registry.room_count)
    try:
        await runner.stop()
    except Exception:
        logger.exception("Error stopping signaling server")
    server.registry.clear()
    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

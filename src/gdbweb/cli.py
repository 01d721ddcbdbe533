"""Command-line entry point: ``gdbweb``."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from gdbcopilot.config import load_config
from gdbcopilot.errors import ConfigError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gdbweb", description="Serve the GDB copilot web UI")
    parser.add_argument("--config", type=Path, help="Path to a gdbcopilot JSON config file")
    parser.add_argument("--host", help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, help="Port (overrides config)")
    parser.add_argument("--gdb", dest="gdb_path", help="gdb executable to use")
    parser.add_argument("--log-level", choices=["debug", "info", "warning", "error"], help="Process log level")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"[gdbweb] configuration error: {e}", file=sys.stderr)
        return 2
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.gdb_path:
        config.gdb.path = args.gdb_path
    if args.log_level:
        config.logs.level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.logs.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from .app.main import create_app

    app = create_app(config)
    logger.info("gdbweb listening on http://%s:%d (config: %s)", config.server.host, config.server.port, config.source)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logs.level,
        timeout_graceful_shutdown=int(config.server.shutdown_grace),
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Run the iterate daemon: ``python -m iterate_daemon``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from .config import ConfigError, load_config
from .server.api import create_app

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Iterate daemon - run parallel UI iterations on git worktrees",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Repository to manage (default: $ITERATE_CWD or current directory)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Daemon port (default: $ITERATE_PORT or daemonPort from config)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=DEFAULT_HOST,
        help=f"Host to bind to (default: {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: info)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_dir = (args.project_dir or Path(os.environ.get("ITERATE_CWD") or Path.cwd())).expanduser().resolve()
    try:
        config = load_config(project_dir)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    port = args.port or int(os.environ.get("ITERATE_PORT") or config.daemon_port)

    server: Optional[uvicorn.Server] = None

    def request_exit() -> None:
        if server is not None:
            server.should_exit = True

    app = create_app(project_dir=project_dir, config=config, on_shutdown=request_exit)
    server = uvicorn.Server(
        uvicorn.Config(app, host=args.host, port=port, log_level=args.log_level)
    )
    logger.info("Iterate daemon listening on http://%s:%s", args.host, port)
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Command line entry point: ``python -m eufy_bridge``."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

import uvicorn

from .app import create_app
from .config import BridgeConfig, ConfigError
from .version import APP_VERSION

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def setup_logging(level_name: str = "INFO", log_file: str | None = None) -> None:
    """Configure console (and optional file) logging on the root logger."""

    level = getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
    )
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if level != logging.DEBUG:
        logging.getLogger("websockets").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the bridge CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m eufy_bridge",
        description="Relay Eufy doorbell recordings to an n8n webhook",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=_LEVELS,
        help="Root log level. Default: INFO.",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this file.")
    parser.add_argument("--host", default=None, help="Override CAPTCHA_HOST.")
    parser.add_argument("--port", type=int, default=None, help="Override CAPTCHA_PORT.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    logger = logging.getLogger("eufy_bridge")
    try:
        config = BridgeConfig.from_env()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    host = args.host or config.captcha_host
    port = args.port or config.captcha_port
    logger.info("Captcha page available at http://%s:%d/captcha", host, port)
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    return run(argv)


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())

"""
Process entrypoint: bootstrap the backend and translate the outcome to an exit code.

Run as script from backend dir: python backend_entry.py
  python backend_entry.py --port 8080        -> override PORT
  python backend_entry.py --log-level DEBUG  -> override LOG_LEVEL

Exit codes: 0 after a graceful shutdown, 1 on a fatal bootstrap failure or
when shutdown exceeds its timeout.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

# When run as a script, ensure backend dir is on path so "from bootstrap import Bootstrap" works
_backend_dir = Path(__file__).resolve().parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

from bootstrap import Bootstrap  # noqa: E402
from core.config import Settings, get_settings  # noqa: E402
from core.logging import setup_logging  # noqa: E402


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line overrides applied."""
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.log_level:
        overrides["log_level"] = args.log_level
    return dataclasses.replace(get_settings(), **overrides)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the backend server")
    parser.add_argument("--host", help="Bind address (default: HOST or derived from ENV)")
    parser.add_argument("--port", type=int, help="Listen port (default: PORT or 8000)")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = build_settings(args)
    setup_logging(settings)
    logger = logging.getLogger(__name__)
    logger.info("Backend entry: env=%s, host=%s, port=%s", settings.env, settings.host, settings.port)
    return asyncio.run(Bootstrap(settings).run())


if __name__ == "__main__":
    sys.exit(main())

import argparse
from typing import Optional, Sequence

import uvicorn

from relayhub.config import HOST, PORT, LOG_LEVEL, HUB_VERSION

_LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relayhub",
        description="Relay coding-agent sessions between CLI agents and web/voice clients",
    )
    parser.add_argument("--host", default=HOST, help=f"Bind host (default {HOST}, env RELAYHUB_HOST)")
    parser.add_argument("--port", type=int, default=PORT, help=f"Bind port (default {PORT}, env RELAYHUB_PORT)")
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default=LOG_LEVEL.lower() if LOG_LEVEL.lower() in _LOG_LEVELS else "info",
        help="Server log level (env RELAYHUB_LOG_LEVEL)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument("--version", action="version", version=f"relayhub {HUB_VERSION}")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # One process only: the hub keeps sessions and notification timers in memory.
    uvicorn.run(
        "relayhub.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()

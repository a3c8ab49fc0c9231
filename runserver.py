from __future__ import annotations

import argparse
import logging
import os

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the file conversion server.")
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "127.0.0.1"),
        help="Host to bind (default: %(default)s or env HOST)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8000")),
        help="Port to bind (default: %(default)s or env PORT)",
    )
    parser.add_argument(
        "--app",
        default="fileconvert.main:app",
        help="ASGI app target (default: %(default)s)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload (default: False)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=("critical", "error", "warning", "info", "debug", "trace"),
        help="Log level for the server and the converter (default: info)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    level = "DEBUG" if args.log_level == "trace" else args.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(threadName)-12.12s] [%(levelname)-5.5s] %(name)s: %(message)s",
    )
    uvicorn.run(
        app=args.app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()

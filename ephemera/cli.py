"""
Command line entry point.

    ephemera serve --host 0.0.0.0 --port 3000 --log-level INFO

Settings come from EPHEMERA_* environment variables; a .env file in the
working directory is loaded first. Command line flags override them.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ephemera",
        description="Disposable sandboxes for running shell commands.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API server.")
    serve.add_argument("--host", help="Host to bind to (EPHEMERA_HOST).")
    serve.add_argument("--port", type=int, help="Port to listen on (EPHEMERA_PORT).")
    serve.add_argument("--runtime", choices=["podman", "docker"], help="Container runtime (EPHEMERA_RUNTIME).")
    serve.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def serve(args: argparse.Namespace) -> None:
    import uvicorn

    from ephemera.server.app import create_app
    from ephemera.server.config import get_settings, reset_settings

    # Flags are applied through the environment so Settings sees one source.
    if args.host:
        os.environ["EPHEMERA_HOST"] = args.host
    if args.port:
        os.environ["EPHEMERA_PORT"] = str(args.port)
    if args.runtime:
        os.environ["EPHEMERA_RUNTIME"] = args.runtime
    reset_settings()

    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_level=args.log_level.lower(),
    )


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    args = _parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "serve":
        serve(args)


if __name__ == "__main__":
    main()

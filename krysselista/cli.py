import argparse
import os

import uvicorn

from krysselista.config import DEPARTMENTS, HOST, PORT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Krysselista attendance and messaging server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument("--db", help="SQLite database path (overrides KRYSSELISTA_DB)")
    parser.add_argument(
        "--departments",
        help=f"Comma-separated department order (default: {','.join(DEPARTMENTS)})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    # the app reads its configuration at import, which uvicorn does after this point
    if args.db:
        os.environ["KRYSSELISTA_DB"] = args.db
    if args.departments:
        os.environ["KRYSSELISTA_DEPARTMENTS"] = args.departments

    uvicorn.run(
        "krysselista.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()

"""Command line entry point for running the gateway."""

import argparse
import logging

from portcullis.config import Settings
from portcullis.transport.http.server import GatewayServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portcullis",
        description="OAuth 2.1 authentication gateway. Settings are read from "
        "PORTCULLIS_* environment variables or .env; flags override them.",
    )
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    parser.add_argument(
        "--require-scope",
        action="append",
        default=[],
        metavar="SCOPE",
        help="Scope every protected request must carry (repeatable)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    overrides = {
        key: value
        for key, value in {
            "host": args.host,
            "port": args.port,
            "log_level": args.log_level,
        }.items()
        if value is not None
    }
    settings = Settings(**overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    GatewayServer(settings, required_scopes=args.require_scope).run()


if __name__ == "__main__":
    main()

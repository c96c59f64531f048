"""Run the connect service: ``python -m tink_connect``."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

from tink_connect.core.errors import ConfigurationError
from tink_connect.servers.app import create_app
from tink_connect.utils.environment import Settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Tink bank-connection service")
    parser.add_argument("--host", default=os.getenv("TINK_CONNECT_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("TINK_CONNECT_PORT", "8000")))
    parser.add_argument(
        "--log-level", default=os.getenv("TINK_CONNECT_LOG_LEVEL", "INFO").upper()
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return 1

    uvicorn.run(
        create_app(settings),
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

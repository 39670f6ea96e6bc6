"""
Command-line entry point: ``python -m hwtelemetry`` or ``hwtelemetry``.
"""

from __future__ import annotations

import sys

import uvicorn

from hwtelemetry.config import load_config
from hwtelemetry.logging import get_logger, setup_logging
from hwtelemetry.server import create_app


def main(argv: list[str] | None = None) -> int:
    """Load configuration, configure logging and serve until interrupted."""
    config = load_config(cli_args=argv if argv is not None else sys.argv[1:])
    setup_logging(config.logging)
    logger = get_logger(__name__)

    app = create_app(config)
    logger.info(
        "Starting hwtelemetry",
        extra={"host": config.server.host, "port": config.server.port},
    )
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
        timeout_graceful_shutdown=int(config.server.shutdown_timeout_seconds),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

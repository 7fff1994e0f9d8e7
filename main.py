"""server_uploader — entry point.

Configures logging and hands the command line to :mod:`server_uploader.cli`.
"""

from __future__ import annotations

import logging
import sys

from server_uploader import cli

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def _configure_logging() -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def main() -> None:
    """Application entry point."""
    _configure_logging()
    sys.exit(cli.run(sys.argv[1:]))


if __name__ == "__main__":
    main()

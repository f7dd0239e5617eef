"""Logging setup for callers embedding the migration engine."""

import logging
import sys


def setup_logging(level: int | str = logging.INFO) -> None:
    """Send log records to stdout with a timestamped single-line format."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

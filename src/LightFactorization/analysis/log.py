"""Set global logger settings
"""

import logging

from LightFactorization.analysis.config import DEFAULT_LOG_FORMAT


def configure_logging(level="INFO", fmt: str = DEFAULT_LOG_FORMAT, verbose: bool = False):
    """Configure the root logger for command line runs.

    Args:
        level: logging level name or number
        fmt: record format
        verbose: force DEBUG regardless of level
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format=fmt,
        handlers=[
            logging.StreamHandler(),  # Output to console
        ],
        force=True,
    )

"""
Logging utilities for the PE HA upgrade tool.
"""

import logging
import sys
from typing import Optional

# Libraries that log every connection and request at INFO
NOISY_LOGGERS = ("paramiko", "urllib3")


def setup_logging(
    verbose: bool = False, log_file: Optional[str] = "pe-upgrade.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file, or None to log to stdout only

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)

    return logging.getLogger(__name__)

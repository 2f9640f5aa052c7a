"""
Process-wide logging setup for the CLI and background sync jobs.
"""

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(levelname)-8s - [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure the root logger once; later calls only change the level."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

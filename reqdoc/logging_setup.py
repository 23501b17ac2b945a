"""Central logging configuration for the reqdoc command line.

Module loggers only emit records; this installs one stderr handler on the
root logger so diagnostics never mix with the report written to stdout.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stderr",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def configure_logging(level: str | int = "WARNING") -> None:
    """Configure logging once.

    If the root logger already has handlers (an embedding application, or a
    test harness) only the reqdoc logger level is adjusted.
    """
    if isinstance(level, int):
        level = logging.getLevelName(level)
    level = level.upper()

    root = logging.getLogger()
    if root.handlers:
        logging.getLogger("reqdoc").setLevel(level)
        return
    dictConfig(_dict_config(level))

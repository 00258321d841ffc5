"""
Structured logging: one JSON object per line, trace_id carried when known.
"""
from __future__ import annotations

import json
import logging
import os

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str = "") -> None:
    """Bootstrap-only: root handler with plain message format (the message is already JSON)."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).lower()
    logging.basicConfig(
        level=_LEVELS.get(level, logging.INFO),
        format="%(asctime)s %(name)s %(message)s",
    )


def json_log(logger: logging.Logger, level: str, message: str, **fields) -> None:
    log_obj = {"level": level, "message": message, **fields}
    logger.log(_LEVELS.get(level, logging.INFO), json.dumps(log_obj, ensure_ascii=False, default=str))

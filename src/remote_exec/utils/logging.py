"""Logging helpers."""

from __future__ import annotations

import logging
import os
from typing import Optional

_LOGGING_CONFIGURED = False

LOG_LEVEL_ENV = "REMOTE_EXEC_LOG_LEVEL"


def get_logger(name: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        level_name = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        )
        # paramiko logs every channel event at INFO
        logging.getLogger("paramiko").setLevel(logging.WARNING)
        _LOGGING_CONFIGURED = True
    return logging.getLogger(name)

"""
logger.py - Project logger built on loguru
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from loguru import logger as _logger


MODULE_W = 10


@dataclass(frozen=True)
class LoggingCfg:
    """Project-wide logging configuration."""
    level: str = "INFO"
    log_format: str = (
        "<green>{time:HH:mm:ss}</green>"
        "[<level>{level:.3}</level>]"
        f"[<cyan>{{extra[module]:<{MODULE_W}.{MODULE_W}}}</cyan>] "
        "<level>{message}</level>"
    )
    log_file_format: str = (
        f"{{time:YYYY-MM-DD HH:mm:ss}}[{{level:.3}}]"
        f"[{{extra[module]:<{MODULE_W}.{MODULE_W}}}] "
        "{message}"
    )


LOGCFG = LoggingCfg()


class Logger:
    """Thin wrapper around loguru with one shared configuration."""

    _configured: bool = False
    _lock = threading.Lock()

    @staticmethod
    def _configure(level: str, log_file: Optional[Path]) -> None:
        _logger.remove()
        _logger.add(sys.stderr, level=level, format=LOGCFG.log_format)
        if log_file is not None:
            _logger.add(log_file, level=level, format=LOGCFG.log_file_format)
        Logger._configured = True

    @staticmethod
    def configure(
        level: Optional[str] = None,
        log_file: Optional[Union[Path, str]] = None,
    ) -> None:
        """
        Reset sinks with the given level and optional log file.

        Can be called at any time; later calls replace earlier sinks.
        """
        with Logger._lock:
            Logger._configure(
                level or LOGCFG.level,
                Path(log_file) if log_file is not None else None,
            )

    @staticmethod
    def get_logger(name: str):
        """Return the shared loguru logger bound to ``name`` (in extra[module])."""
        with Logger._lock:
            if not Logger._configured:
                Logger._configure(LOGCFG.level, None)
        return _logger.bind(module=name)

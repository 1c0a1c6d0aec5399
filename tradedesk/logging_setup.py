"""Loguru configuration shared by the dashboard server and the scripts."""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: Optional[str] = "dashboard.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Replace loguru's default sink with the dashboard sinks.

    Args:
        log_file: Rotating log file (100 MB, kept 7 days); falsy for console only
        level: Minimum level for every sink
        enable_console: Also log colorized output to stdout

    Tracebacks never include local variable values (`diagnose=False`):
    handler locals hold API secrets and OAuth tokens.
    """
    logger.remove()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            format=LOG_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
            diagnose=False,
        )

    if enable_console:
        logger.add(sys.stdout, format=LOG_FORMAT, level=level, colorize=True, diagnose=False)


__all__ = ["logger", "setup_logging"]

"""Loguru setup for the API process."""

import logging
import sys
from pathlib import Path

from loguru import logger

from clinicase.utils.env_cfg import load_log_env

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{line} | {message}"

# stdlib loggers of the server stack, rerouted into loguru
BRIDGED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


class LoguruBridge(logging.Handler):
    """
    Forward stdlib ``logging`` records to loguru, keeping level and exception info.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(
            level, "[{}] {}", record.name, record.getMessage()
        )


def setup_logging(
    console_level: str | None = None,
    rotation: str = "10 MB",
    retention: int = 5,
    diagnose: bool = False,
) -> Path:
    """
    Route all service logs through loguru.

    The console sink prints at ``console_level`` (``LOG_LEVEL`` by default); the file
    sink at ``LOG_PATH`` keeps everything from DEBUG up, including the per-exchange
    ``[InteractiveCase]`` trace lines. Uvicorn and FastAPI loggers are bridged in.

    Args:
        console_level (str | None, optional): Console level override. Defaults to None.
        rotation (str, optional): File rotation policy. Defaults to "10 MB".
        retention (int, optional): Number of rotated files kept. Defaults to 5.
        diagnose (bool, optional): Show variable values in tracebacks. Defaults to False.

    Returns:
        Path: The log file path.
    """
    cfg = load_log_env()
    level = (console_level or cfg.level).upper()
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, diagnose=diagnose)
    logger.add(
        cfg.path,
        level="DEBUG",
        format=LOG_FORMAT,
        rotation=rotation,
        retention=retention,
        encoding="utf-8",
        enqueue=True,
        backtrace=True,
        diagnose=diagnose,
    )

    bridge = LoguruBridge()
    for name in BRIDGED_LOGGERS:
        std = logging.getLogger(name)
        std.handlers = [bridge]
        std.propagate = False

    logger.info("[Logging] console={} file={}", level, cfg.path)
    return cfg.path

"""
logging_config.py — Loguru setup for ProcureDesk

Loguru is the only logging backend; stdlib logging (uvicorn, SQLAlchemy,
alembic, any module using logging.getLogger) is forwarded into it.

Business Rules:
- APP_ENV=production → one JSON object per line on stdout
- Anything else → colored console lines tagged with the request ID
- LOG_FILE set → extra JSON file sink, 50MB rotation, 7-day retention
- The request ID comes from logger.contextualize() in the HTTP middleware

Called by: app/main.py (lifespan startup)
Depends on: loguru
"""

import logging
import os
import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{rid}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{message}\n{exception}"
)


def _console_format(record) -> str:
    rid = "{extra[request_id]}" if "request_id" in record["extra"] else "--------"
    return CONSOLE_FORMAT.replace("{rid}", rid)


def setup_logging() -> None:
    """Install the sinks and the stdlib bridge. Safe to call more than once."""
    logger.remove()

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    production = os.getenv("APP_ENV", "").lower() == "production"
    log_file = os.getenv("LOG_FILE", "")

    if production:
        logger.add(sys.stdout, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=_console_format, colorize=True)

    if log_file:
        logger.add(
            log_file,
            level=level,
            serialize=True,
            rotation="50 MB",
            retention="7 days",
            compression="gz",
        )

    logging.basicConfig(handlers=[_StdlibBridge()], level=0, force=True)
    for name in ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging configured", level=level, production=production)


class _StdlibBridge(logging.Handler):
    """Forward stdlib records to Loguru, keeping the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())

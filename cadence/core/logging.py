import logging
import sys
from typing import Any

from loguru import logger

from cadence.config import get_settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level> | {extra}"
)
PLAIN_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message} | {extra}"

# Loggers of libraries whose records are routed through loguru
INTERCEPTED_LOGGERS = [
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "sqlalchemy.engine",
    "apscheduler",
    "httpx",
]


class InterceptHandler(logging.Handler):
    """Intercept stdlib logging and redirect to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _quiet_filter(record: dict[str, Any]) -> bool:
    """Drop health checks and scheduler heartbeat noise above DEBUG."""
    message = record.get("message", "")
    if "/health" in message or message.startswith("Looking for due schedules"):
        return bool(record["level"].no <= 10)
    return True


def setup_logging() -> None:
    """Configure loguru for the application.

    Debug mode logs colourised DEBUG output to stderr. Otherwise INFO goes to
    stderr as plain text, or one JSON object per line when `log_json` is set.
    `log_file` adds a rotated file sink with the same level.
    """
    settings = get_settings()
    level = "DEBUG" if settings.debug else "INFO"

    logger.remove()

    if settings.debug:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, backtrace=True, diagnose=True)
    elif settings.log_json:
        logger.add(sys.stderr, level=level, serialize=True, filter=_quiet_filter, diagnose=False)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=PLAIN_FORMAT,
            filter=_quiet_filter,
            backtrace=True,
            diagnose=False,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=level,
            format=PLAIN_FORMAT,
            filter=_quiet_filter,
            rotation="50 MB",
            retention="14 days",
            compression="gz",
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]


def get_logger(name: str) -> Any:
    """Get a logger bound to a name."""
    return logger.bind(name=name)

import logging
import sys

from loguru import logger

from mapwatch.config import settings

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

# stdlib logger name -> minimum level forwarded to loguru
_INTERCEPTED = {
    "uvicorn": None,
    "uvicorn.access": None,
    "uvicorn.error": None,
    "fastapi": None,
    "apscheduler": None,
    "sqlalchemy.engine": logging.WARNING,
}
_QUIET = ("httpx", "httpcore")


class InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str | None = None, log_file: str | None = None):
    level = (level or settings.log_level).upper()
    log_file = log_file or settings.log_file

    logger.remove()
    # enqueue: parse and commit log from asyncio.to_thread workers
    logger.add(sys.stdout, format=_CONSOLE_FORMAT, level=level, colorize=True, enqueue=True)
    if log_file:
        logger.add(
            log_file,
            format=_FILE_FORMAT,
            level=level,
            rotation="1 day",
            retention=f"{settings.retention_days} days",
            enqueue=True,
        )

    handler = InterceptHandler()
    for name, floor in _INTERCEPTED.items():
        std = logging.getLogger(name)
        std.handlers = [handler]
        std.propagate = False
        if floor is not None:
            std.setLevel(floor)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging ready at {} (file sink: {})", level, log_file or "off")

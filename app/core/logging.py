import logging
import sys
from typing import Any

from loguru import logger

from app.config import get_settings

# Bound fields that may carry a credential; only a prefix is ever written
SECRET_FIELDS = frozenset({"session", "session_id", "cookie", "cookie_header", "token"})

DEBUG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level> | {extra}"
)
PLAIN_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message} | {extra}"
)


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, httpx, apscheduler) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk past the logging module so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def mask_secret(value: str, visible: int = 8) -> str:
    """Shorten a credential for log output."""
    if not value:
        return "<empty>"
    return f"{value[:visible]}..." if len(value) > visible else value


def _redact_secrets(record: dict[str, Any]) -> None:
    extra = record["extra"]
    for key in SECRET_FIELDS.intersection(extra):
        value = extra[key]
        if isinstance(value, str) and not value.endswith("..."):
            extra[key] = mask_secret(value)


def _poll_log_filter(record: dict[str, Any]) -> bool:
    """Task polling and health checks only show at DEBUG level."""
    message = record.get("message", "")
    if "/health" in message or "/api/task/" in message:
        return bool(record["level"].no <= 10)
    return True


def setup_logging() -> None:
    """Configure loguru: verbose coloured output in debug, one plain line per event otherwise."""
    settings = get_settings()

    logger.remove()
    logger.configure(patcher=_redact_secrets)  # type: ignore[arg-type]

    if settings.debug:
        logger.add(sys.stderr, level="DEBUG", format=DEBUG_FORMAT, backtrace=True, diagnose=True)
    else:
        logger.add(
            sys.stderr,
            level="INFO",
            format=PLAIN_FORMAT,
            filter=_poll_log_filter,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "apscheduler"):
        logging.getLogger(name).handlers = [InterceptHandler()]
    # Playwright's driver chatter is only useful when debugging the browser pool
    logging.getLogger("playwright").setLevel(logging.DEBUG if settings.debug else logging.WARNING)


def get_logger(name: str) -> Any:
    """Get a logger bound to a name."""
    return logger.bind(name=name)

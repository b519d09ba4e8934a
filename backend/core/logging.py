import logging

from .config import Settings

BANNER_WIDTH = 70

# Third-party loggers that follow the application level, and those held at
# WARNING unless the application itself runs at DEBUG.
_FOLLOW_APP_LEVEL = ("uvicorn", "uvicorn.error", "uvicorn.access")
_QUIET_UNLESS_DEBUG = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "aiosmtplib")


def resolve_level(name: str) -> int:
    """Map a level name such as ``"debug"`` to its logging constant (INFO if unknown)."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(settings: Settings) -> int:
    """Configure root logging from ``settings.log_level`` and ``settings.log_format``.

    Returns the effective level so callers can hand it on (uvicorn).
    """
    level = resolve_level(settings.log_level)
    logging.basicConfig(level=level, format=settings.log_format)

    for logger_name in _FOLLOW_APP_LEVEL:
        logging.getLogger(logger_name).setLevel(level)
    noisy_level = level if level <= logging.DEBUG else logging.WARNING
    for logger_name in _QUIET_UNLESS_DEBUG:
        logging.getLogger(logger_name).setLevel(noisy_level)
    return level


def log_block(logger: logging.Logger, level: int, title: str, lines=()) -> None:
    """Log a framed multi-line block (fatal diagnostics, startup banner)."""
    rule = "═" * BANNER_WIDTH
    logger.log(level, rule)
    logger.log(level, title)
    logger.log(level, rule)
    for line in lines:
        logger.log(level, line)
    if lines:
        logger.log(level, rule)

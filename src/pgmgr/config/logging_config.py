import logging
import os
import sys
from typing import ClassVar, Optional

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_COLOR_FORMAT = "\x1b[90m%(asctime)s\x1b[0m | %(levelname_color)s | \x1b[36m%(name)s\x1b[0m | %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_configured: str | int | None = None


def _supports_color() -> bool:
    try:
        return sys.stderr.isatty() and os.getenv("NO_COLOR") is None
    except Exception:
        return False


class _LevelColorFormatter(logging.Formatter):
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\x1b[37m",
        "INFO": "\x1b[32m",
        "WARNING": "\x1b[33m",
        "ERROR": "\x1b[31m",
        "CRITICAL": "\x1b[41m",
    }
    RESET: ClassVar[str] = "\x1b[0m"

    def __init__(self, fmt: str, datefmt: str, use_color: bool):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        record.levelname_color = f"{color}{record.levelname}{self.RESET}" if color else record.levelname
        return super().format(record)


def configure_logging(
    level: Optional[str | int] = None,
    fmt: Optional[str] = None,
    datefmt: Optional[str] = None,
) -> str | int:
    """Configure root logging once with a consistent format.

    Environment overrides:
    - `PGMGR_LOG_LEVEL`
    - `PGMGR_LOG_FORMAT`
    - `PGMGR_LOG_DATEFMT`
    """
    global _configured

    if level is None:
        if _configured is not None:
            return _configured
        level = os.getenv("PGMGR_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = level.upper()

    if _configured is not None and _configured == level:
        return level
    _configured = level

    use_color = _supports_color()
    if fmt is None:
        fmt = os.getenv("PGMGR_LOG_FORMAT") or (_COLOR_FORMAT if use_color else _DEFAULT_FORMAT)
    if datefmt is None:
        datefmt = os.getenv("PGMGR_LOG_DATEFMT", _DEFAULT_DATEFMT)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=fmt, datefmt=datefmt)

    # Align level/formatter for existing stream handlers too (e.g. under pytest)
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setLevel(level)
            handler.setFormatter(_LevelColorFormatter(fmt=fmt, datefmt=datefmt, use_color=use_color))

    # module loggers get pinned to the level current when they were created
    for name in list(logging.root.manager.loggerDict):
        if name == "pgmgr" or name.startswith("pgmgr."):
            logging.getLogger(name).setLevel(level)

    logging.getLogger("psycopg").setLevel(logging.WARNING)
    return level


def get_logger(name: str) -> logging.Logger:
    """Return a module-scoped logger."""
    level = configure_logging()
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger

"""Logging setup for the billing API server.

Root logger writes to stdout and to ``Settings.log_file`` at ``Settings.log_level``.
Service modules log through ``logging.getLogger(__name__)``, so auto-close
decisions, ledger writes and skipped portfolio cycles share one file with the
request logs.
"""

import logging
import sys
from pathlib import Path

from roomsplit.config import Settings, settings as default_settings

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_level(name: str | None) -> int:
    """Map a level name such as ``"warning"`` to its logging constant.

    Unknown or empty names fall back to INFO.
    """
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_server_logging(config: Settings | None = None) -> None:
    """Configure the root logger from settings.

    Calling it again replaces the previous handlers instead of stacking them.

    Args:
        config: Settings to read ``log_file`` and ``log_level`` from
            (default: the global settings)
    """
    config = config or default_settings
    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    level = resolve_log_level(config.log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    for handler in (logging.StreamHandler(sys.stdout), logging.FileHandler(log_path)):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if config.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, logging.getLevelName(level))

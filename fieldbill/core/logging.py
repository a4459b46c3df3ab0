from __future__ import annotations

import logging

from fieldbill.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"

# Framework loggers that are too chatty at INFO for billing hosts.
_QUIET_LOGGERS = {
    "uvicorn.access": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "arq.worker": "INFO",
    "httpx": "WARNING",
}


def _to_level(name: str, default: int) -> int:
    # Resolve level names leniently so a typo in LOG_LEVEL does not crash startup.
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default


def configure_logging() -> None:
    # Make the root logger the single sink for API, worker and script output.
    settings = get_settings()
    level = _to_level(settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)
    logging.captureWarnings(True)
    for name, level_name in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(_to_level(level_name, logging.WARNING))

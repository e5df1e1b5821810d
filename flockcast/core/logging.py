from __future__ import annotations

import logging

from flockcast.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Driver loggers are chatty at INFO; keep them at WARNING unless debugging.
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx")


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; entrypoints call this before any work.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT, force=True)
    if resolved != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

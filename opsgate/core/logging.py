from __future__ import annotations

import logging

from opsgate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once; repeated app factory calls keep existing handlers.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    root.setLevel(resolved)
    # SQL echo stays off unless explicitly requested through the engine.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

from __future__ import annotations

import logging

from syncbridge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once per process; later calls only refresh the level.
    global _configured
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        # httpx logs every request at INFO; keep it quiet unless debugging.
        logging.getLogger("httpx").setLevel(logging.WARNING)
        _configured = True
    root.setLevel(level)

from __future__ import annotations

import logging

from keygate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one root stream handler; repeated calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(resolved)
    # httpx logs every request at INFO; keep backend polling out of the default log.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, root.level))

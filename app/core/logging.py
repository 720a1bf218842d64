from __future__ import annotations

import logging
import sys

from app.core.config import settings

_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.log_level or "INFO").upper())

    # httpx logs every request at INFO; adapters already log failures.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True

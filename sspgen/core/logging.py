from __future__ import annotations

import logging

from sspgen.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    # Idempotent: basicConfig is a no-op once the root logger has handlers.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger("sspgen").setLevel(level)
    # Keep httpx request lines out of INFO logs; they include full URLs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

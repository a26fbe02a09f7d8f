from __future__ import annotations

import logging

from harrier.config import get_settings

# Client libraries log every request at INFO; a sourcing run makes hundreds.
_NOISY_LOGGERS = ("httpx", "openai", "urllib3")

_LOG_CONFIGURED = False


def configure_logging() -> None:
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    _LOG_CONFIGURED = True

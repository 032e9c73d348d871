from __future__ import annotations

import logging

from postureguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "arq", "asyncio")


def configure_logging(level: str | None = None) -> None:
    # Shared by the API, worker and scripts.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format=_LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("postureguard").setLevel(resolved)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

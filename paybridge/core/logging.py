"""Process-wide logging setup for the API and the worker."""

import logging

from paybridge.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())

    if not any(getattr(h, "_paybridge", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._paybridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # httpx logs every request at INFO, including URLs with query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)

from __future__ import annotations

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

_CONFIGURED = False


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """Configure root logging once; later calls only adjust the level."""
    global _CONFIGURED
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if _CONFIGURED:
        logging.getLogger().setLevel(level)
        return

    logging.basicConfig(level=level, format=LOG_FORMAT)
    _CONFIGURED = True

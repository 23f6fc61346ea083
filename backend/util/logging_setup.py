# backend/util/logging_setup.py
from __future__ import annotations

import logging
import sys
from typing import Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Third-party loggers that are chatty at INFO while a model loads
_QUIET = ("llama_cpp", "urllib3", "asyncio")


def init_logging(level: Optional[str] = None) -> None:
    """
    Single stdout handler, 'YYYY-mm-dd HH:MM:SS,ms | LEVEL | name | message'.
    Uvicorn keeps its own handlers.
    """
    lvl_name = (level or "info").lower()
    lvl = _LEVELS.get(lvl_name, logging.INFO)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    root.addHandler(handler)
    root.setLevel(lvl)

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))

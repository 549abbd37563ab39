from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
HANDLER_NAME = "fxrates.stdout"


def configure_logging(level: str = "INFO") -> None:
    """
    One stdout handler on the root logger.
    - Safe to call more than once: our handler is replaced, never stacked.
    - Handlers installed by anyone else (server, test runner) are left alone.
    - Unknown level names fall back to INFO.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        if h.get_name() == HANDLER_NAME:
            root.removeHandler(h)
            h.close()
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root.setLevel(resolved)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

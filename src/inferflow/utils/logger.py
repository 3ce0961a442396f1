from __future__ import annotations

import logging
import os

_ROOT = "inferflow"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    level = os.environ.get("INFERFLOW_LOG_LEVEL", "WARNING").upper()
    root.setLevel(getattr(logging, level, logging.WARNING))
    root.propagate = True
    _configured = True


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the `inferflow` namespace.

    The namespace logger is set up once: a stream handler and the level taken
    from INFERFLOW_LOG_LEVEL (WARNING by default).
    """
    _configure_root()
    if not name or name == _ROOT:
        return logging.getLogger(_ROOT)
    if not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)

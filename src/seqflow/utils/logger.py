from __future__ import annotations

import logging
import os

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    root = logging.getLogger("seqflow")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    level = os.environ.get("SEQFLOW_LOG_LEVEL", "WARNING").upper()
    root.setLevel(getattr(logging, level, logging.WARNING))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``seqflow`` hierarchy (level from SEQFLOW_LOG_LEVEL)."""
    _configure_root()
    if not name.startswith("seqflow"):
        name = f"seqflow.{name}"
    return logging.getLogger(name)

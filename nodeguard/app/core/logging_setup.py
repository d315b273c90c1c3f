from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

from .settings import DATA_DIR, probe_log_path

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CONFIGURED = False


def get_runtime_log_paths(data_dir: Optional[str] = None) -> Dict[str, str]:
    base = data_dir or DATA_DIR
    return {
        "nodeguard": os.path.join(base, "nodeguard.log"),
        "probe": probe_log_path(base),
    }


def setup_logging(level: int = logging.INFO, data_dir: Optional[str] = None) -> None:
    """Attach stream + rotating file handlers to the root logger (idempotent)."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    root = logging.getLogger()
    root.setLevel(level)
    fmt = logging.Formatter(_LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(fmt)
    root.addHandler(stream)

    path = get_runtime_log_paths(data_dir)["nodeguard"]
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fh = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError:
        # read-only data dir: keep stream logging only
        root.warning("log file unavailable: %s", path)
    _CONFIGURED = True

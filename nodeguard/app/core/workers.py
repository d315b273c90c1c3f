from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Set

logger = logging.getLogger(__name__)

_WORKERS: Set[threading.Thread] = set()
_WORKERS_LOCK = threading.Lock()


def spawn_worker(fn: Callable[..., Any], *args: Any, label: str = "worker") -> threading.Thread:
    """Run fn in a daemon thread, retained until it returns. Crashes are logged."""

    def _runner() -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("%s worker crashed", str(label or "worker"))
        finally:
            with _WORKERS_LOCK:
                _WORKERS.discard(threading.current_thread())

    th = threading.Thread(target=_runner, name=f"nodeguard-{label}", daemon=True)
    with _WORKERS_LOCK:
        _WORKERS.add(th)
    th.start()
    return th

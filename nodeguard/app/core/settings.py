from __future__ import annotations

import os
from typing import Optional


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name) or "").strip() or default


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    try:
        v = float((os.getenv(name) or str(default)).strip() or default)
    except Exception:
        v = float(default)
    if v < lo:
        v = lo
    if v > hi:
        v = hi
    return v


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    return int(_env_float(name, float(default), float(lo), float(hi)))


DATA_DIR = _env_str("NODEGUARD_DATA_DIR", "/etc/nodeguard")
DB_PATH = _env_str("NODEGUARD_DB", os.path.join(DATA_DIR, "nodeguard.db"))
SINGBOX_PATH = _env_str("NODEGUARD_SINGBOX_PATH", "/usr/local/bin/sing-box")

# probe process
PROBE_READY_TIMEOUT = _env_float("NODEGUARD_PROBE_READY_TIMEOUT", 5.0, 1.0, 60.0)
PROBE_READY_POLL = _env_float("NODEGUARD_PROBE_READY_POLL", 0.1, 0.02, 1.0)
PROBE_STOP_GRACE = _env_float("NODEGUARD_PROBE_STOP_GRACE", 3.0, 0.5, 30.0)

# measurements
HEALTH_CONCURRENCY = _env_int("NODEGUARD_HEALTH_CONCURRENCY", 50, 1, 200)
SITE_CONCURRENCY = _env_int("NODEGUARD_SITE_CONCURRENCY", 80, 1, 200)
DELAY_TIMEOUT_MS = _env_int("NODEGUARD_DELAY_TIMEOUT_MS", 5000, 500, 30000)
HEALTH_CHECK_URL = _env_str("NODEGUARD_HEALTH_URL", "https://www.gstatic.com/generate_204")

# geolocation
GEO_URL = _env_str("NODEGUARD_GEO_URL", "http://ip-api.com/json/")
GEO_REQUEST_TIMEOUT = 10.0
# ip-api.com allows ~45 req/min
GEO_RATE_INTERVAL = _env_float("NODEGUARD_GEO_RATE_INTERVAL", 1.5, 0.0, 10.0)
GEO_CACHE_HOURS = _env_int("NODEGUARD_GEO_CACHE_HOURS", 24, 1, 720)

DEFAULT_ARCHIVE_THRESHOLD = 10
DEFAULT_SITE_TARGETS = ("chatgpt.com", "youtube.com", "instagram.com", "2ip.ru")

# pipeline: failures after which an archived node copied from a subscription is removed
PIPELINE_STALE_THRESHOLD = 5


def probe_log_path(data_dir: Optional[str] = None) -> str:
    return os.path.join(data_dir or DATA_DIR, "probe.log")

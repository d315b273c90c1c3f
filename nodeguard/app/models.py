from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .core.settings import DEFAULT_ARCHIVE_THRESHOLD, DEFAULT_SITE_TARGETS
from .utils.normalize import node_key

STATUS_PENDING = "pending"
STATUS_VERIFIED = "verified"
STATUS_ARCHIVED = "archived"
NODE_STATUSES = (STATUS_PENDING, STATUS_VERIFIED, STATUS_ARCHIVED)

# outbound keys that map onto UnifiedNode columns; the rest goes to ``extra``
_OUTBOUND_CORE_KEYS = ("tag", "type", "server", "server_port")


@dataclass
class UnifiedNode:
    tag: str
    type: str
    server: str
    server_port: int
    id: int = 0
    country: str = ""
    country_emoji: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_PENDING
    source: str = ""
    display_name: str = ""
    consecutive_failures: int = 0
    last_checked_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    promoted_at: Optional[float] = None
    archived_at: Optional[float] = None

    @property
    def key(self) -> str:
        return node_key(self.server, self.server_port)

    def routing_tag(self) -> str:
        return (self.tag or "").strip()

    def display_or_tag(self) -> str:
        return (self.display_name or "").strip() or self.routing_tag()

    def to_outbound(self) -> Dict[str, Any]:
        ob: Dict[str, Any] = {
            "tag": self.tag,
            "type": self.type,
            "server": self.server,
            "server_port": int(self.server_port),
        }
        for k, v in (self.extra or {}).items():
            if k in _OUTBOUND_CORE_KEYS:
                continue
            ob[k] = v
        return ob

    @classmethod
    def from_outbound(cls, ob: Dict[str, Any], source: str = "") -> "UnifiedNode":
        try:
            port = int(ob.get("server_port") or 0)
        except Exception:
            port = 0
        extra = {k: v for k, v in ob.items() if k not in _OUTBOUND_CORE_KEYS}
        return cls(
            tag=str(ob.get("tag") or "").strip(),
            type=str(ob.get("type") or "").strip(),
            server=str(ob.get("server") or "").strip(),
            server_port=port,
            extra=extra,
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["key"] = self.key
        return d


@dataclass(frozen=True)
class VerificationLog:
    timestamp: float
    pending_checked: int = 0
    pending_promoted: int = 0
    pending_archived: int = 0
    verified_checked: int = 0
    verified_demoted: int = 0
    duration_ms: int = 0
    error: str = ""
    id: int = 0


@dataclass(frozen=True)
class PipelineLog:
    subscription_id: str
    timestamp: float
    total_nodes: int = 0
    checked_nodes: int = 0
    alive_nodes: int = 0
    copied_nodes: int = 0
    skipped_nodes: int = 0
    removed_stale: int = 0
    duration_ms: int = 0
    error: str = ""
    id: int = 0


@dataclass
class Settings:
    subscription_interval: int = 60
    verification_interval: int = 30
    archive_threshold: int = DEFAULT_ARCHIVE_THRESHOLD
    site_check_targets: List[str] = field(default_factory=lambda: list(DEFAULT_SITE_TARGETS))
    geo_enabled: bool = True
    auto_pipeline: bool = True

    def effective_archive_threshold(self) -> int:
        t = int(self.archive_threshold or 0)
        return t if t > 0 else DEFAULT_ARCHIVE_THRESHOLD


@dataclass
class Subscription:
    id: str
    name: str
    url: str = ""
    enabled: bool = True
    auto_pipeline: bool = False
    remove_dead: bool = False
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    updated_at: Optional[float] = None
    pipeline_last_run: Optional[float] = None


@dataclass
class GeoData:
    server: str
    server_port: int
    node_tag: str = ""
    timestamp: float = field(default_factory=time.time)
    status: str = "fail"
    country: str = ""
    country_code: str = ""
    region_name: str = ""
    city: str = ""
    isp: str = ""
    org: str = ""
    query_ip: str = ""

    @property
    def key(self) -> str:
        return node_key(self.server, self.server_port)


@dataclass
class HealthMeasurement:
    server: str
    server_port: int
    node_tag: str
    alive: bool
    latency_ms: int
    timestamp: float = field(default_factory=time.time)
    mode: str = "probe"


@dataclass
class SiteMeasurement:
    server: str
    server_port: int
    node_tag: str
    site: str
    delay_ms: int
    timestamp: float = field(default_factory=time.time)
    mode: str = "probe"


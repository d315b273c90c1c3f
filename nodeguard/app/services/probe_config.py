from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from ..core.settings import HEALTH_CHECK_URL
from ..models import UnifiedNode

PROBE_TAG_PREFIX = "probe_"
URLTEST_TAG = "Proxy"
GEO_SELECTOR_TAG = "GeoSelector"
GEO_INBOUND_TAG = "geo-in"

# DIRECT and REJECT always precede the node outbounds
SYSTEM_OUTBOUNDS = 2


def probe_tag(index: int) -> str:
    return f"{PROBE_TAG_PREFIX}{int(index)}"


@dataclass
class ProbeTagMap:
    """probe tag <-> node identity for one probe run."""

    probe_to_key: Dict[str, str] = field(default_factory=dict)
    key_to_probe: Dict[str, str] = field(default_factory=dict)
    probe_to_tag: Dict[str, str] = field(default_factory=dict)

    def add(self, ptag: str, node: UnifiedNode) -> None:
        self.probe_to_key[ptag] = node.key
        self.key_to_probe[node.key] = ptag
        self.probe_to_tag[ptag] = node.routing_tag()

    def probe_tag_for(self, node: UnifiedNode) -> str:
        return self.key_to_probe.get(node.key, "")

    def __len__(self) -> int:
        return len(self.probe_to_key)


def node_to_outbound(node: UnifiedNode, tag: str) -> Dict[str, Any]:
    ob = copy.deepcopy(node.to_outbound())
    ob["tag"] = tag
    # sing-box rejects xray's transport.mode
    transport = ob.get("transport")
    if isinstance(transport, dict):
        transport.pop("mode", None)
    return ob


def build_probe_config(
    nodes: Sequence[UnifiedNode], control_port: int, geo_port: int
) -> Tuple[Dict[str, Any], ProbeTagMap]:
    """Minimal run config: every node behind a synthetic ``probe_<i>`` tag."""
    outbounds: List[Dict[str, Any]] = [
        {"type": "direct", "tag": "DIRECT"},
        {"type": "block", "tag": "REJECT"},
    ]
    tag_map = ProbeTagMap()
    tags: List[str] = []
    for i, n in enumerate(nodes):
        ptag = probe_tag(i)
        outbounds.append(node_to_outbound(n, ptag))
        tags.append(ptag)
        tag_map.add(ptag, n)

    if tags:
        outbounds.append(
            {
                "type": "urltest",
                "tag": URLTEST_TAG,
                "outbounds": list(tags),
                "url": HEALTH_CHECK_URL,
                "interval": "5m",
                "tolerance": 50,
            }
        )
        outbounds.append({"type": "selector", "tag": GEO_SELECTOR_TAG, "outbounds": list(tags)})

    cfg: Dict[str, Any] = {
        "log": {"level": "warn", "timestamp": True},
        "outbounds": outbounds,
        "experimental": {
            "clash_api": {
                "external_controller": f"127.0.0.1:{int(control_port)}",
                "default_mode": "rule",
            }
        },
    }
    if geo_port > 0 and tags:
        cfg["inbounds"] = [
            {"type": "mixed", "tag": GEO_INBOUND_TAG, "listen": "127.0.0.1", "listen_port": int(geo_port)}
        ]
        cfg["route"] = {
            "rules": [{"inbound": [GEO_INBOUND_TAG], "outbound": GEO_SELECTOR_TAG}],
            "final": "DIRECT",
        }
    return cfg, tag_map

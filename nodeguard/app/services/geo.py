"""
GeoIP pass - 节点出口地理位置

Pins one node at a time on the probe's GeoSelector and asks ip-api.com through
the probe's mixed inbound which exit address and country it sees.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, Optional, Sequence

import httpx

from ..core.events import EventBus
from ..core.settings import GEO_CACHE_HOURS, GEO_RATE_INTERVAL, GEO_REQUEST_TIMEOUT, GEO_URL
from ..db import SQLiteStore, StoreError
from ..models import GeoData, UnifiedNode
from ..utils.normalize import country_emoji, dedupe_by_key
from .clash_api import ClashAPIError
from .probe import ProbeSession
from .probe_config import GEO_SELECTOR_TAG

logger = logging.getLogger(__name__)

UNKNOWN_COUNTRY_CODE = "UNKNOWN"
UNKNOWN_COUNTRY_NAME = "Unknown"

# selector switch is applied asynchronously by the engine
_SWITCH_SETTLE = 0.05


class GeoLookupError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GeoChecker:
    def __init__(
        self,
        store: SQLiteStore,
        bus: Optional[EventBus] = None,
        url: str = GEO_URL,
        rate_interval: float = GEO_RATE_INTERVAL,
        cache_hours: int = GEO_CACHE_HOURS,
        timeout: float = GEO_REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.bus = bus
        self.url = url
        self.rate_interval = rate_interval
        self.cache_hours = cache_hours
        self.timeout = timeout
        self._sleep = sleep

    def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(event_type, data)

    def fetch(self, proxy_port: int, node: UnifiedNode) -> GeoData:
        """One ip-api lookup through the mixed inbound (HTTP CONNECT)."""
        proxy = f"http://127.0.0.1:{int(proxy_port)}"
        try:
            with httpx.Client(proxy=proxy, timeout=self.timeout, trust_env=False) as client:
                r = client.get(self.url)
                data = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GeoLookupError(f"request failed: {exc}") from exc
        if not isinstance(data, dict):
            raise GeoLookupError("unexpected response shape")
        if data.get("status") != "success":
            raise GeoLookupError(f"ip-api returned fail: {data.get('message') or ''}")
        return GeoData(
            server=node.server,
            server_port=node.server_port,
            node_tag=node.routing_tag(),
            status="success",
            country=str(data.get("country") or ""),
            country_code=str(data.get("countryCode") or ""),
            region_name=str(data.get("regionName") or ""),
            city=str(data.get("city") or ""),
            isp=str(data.get("isp") or ""),
            org=str(data.get("org") or ""),
            query_ip=str(data.get("query") or ""),
        )

    def check(self, nodes: Sequence[UnifiedNode], session: ProbeSession) -> Dict[str, GeoData]:
        unique = dedupe_by_key(nodes)
        if not unique:
            return {}
        if session.geo_port <= 0:
            raise GeoLookupError("geo proxy port not available")

        try:
            existing = self.store.get_geo_data_bulk([n.key for n in unique])
        except (StoreError, sqlite3.Error) as exc:
            logger.warning("failed to fetch existing geo data: %s", exc)
            existing = {}

        cutoff = time.time() - self.cache_hours * 3600
        todo = [
            n
            for n in unique
            if not (n.key in existing and existing[n.key].status == "success" and existing[n.key].timestamp > cutoff)
        ]
        results: Dict[str, GeoData] = dict(existing)
        if not todo:
            logger.info("all %d nodes have fresh geo data, skipping", len(unique))
            return results

        logger.info("checking GeoIP for %d nodes (skipped %d fresh)", len(todo), len(unique) - len(todo))
        api = session.api()
        total = len(todo)
        for i, n in enumerate(todo):
            ptag = session.tag_map.probe_tag_for(n) or n.routing_tag()
            try:
                api.switch_selector(GEO_SELECTOR_TAG, ptag)
                self._sleep(_SWITCH_SETTLE)
                geo = self.fetch(session.geo_port, n)
            except (ClashAPIError, GeoLookupError) as exc:
                logger.info("GeoIP lookup failed for %s (%s): %s", n.routing_tag(), n.key, exc)
                geo = GeoData(
                    server=n.server,
                    server_port=n.server_port,
                    node_tag=n.routing_tag(),
                    status="fail",
                    country=UNKNOWN_COUNTRY_NAME,
                    country_code=UNKNOWN_COUNTRY_CODE,
                )
            self._save(geo)
            results[n.key] = geo
            self._publish(
                "verify:geo_progress",
                {
                    "current": i + 1,
                    "total": total,
                    "tag": n.routing_tag(),
                    "country": geo.country_code,
                    "city": geo.city,
                    "ip": geo.query_ip,
                    "status": geo.status,
                },
            )
            if i < total - 1 and self.rate_interval > 0:
                self._sleep(self.rate_interval)

        logger.info("GeoIP check completed: %d/%d nodes checked", len(todo), len(unique))
        return results

    def _save(self, geo: GeoData) -> None:
        try:
            self.store.upsert_geo_data(geo)
            if geo.country_code:
                self.store.update_node_country(
                    geo.server, geo.server_port, geo.country_code, country_emoji(geo.country_code)
                )
        except (StoreError, sqlite3.Error) as exc:
            logger.warning("failed to save geo data for %s: %s", geo.key, exc)

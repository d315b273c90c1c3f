"""
Health / site checks through the probe - 探针测量

Every measurement is a control-API delay call against a node's probe tag, so
node-level failures come back as a 0 delay and never as an exception.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..core.events import EventBus
from ..core.settings import DELAY_TIMEOUT_MS, HEALTH_CHECK_URL, HEALTH_CONCURRENCY, SITE_CONCURRENCY
from ..db import SQLiteStore, StoreError
from ..models import HealthMeasurement, SiteMeasurement, UnifiedNode
from ..utils.normalize import dedupe_by_key, normalize_site_check_url, sanitize_site_targets
from .clash_api import ClashAPI
from .probe import ProbeSession

logger = logging.getLogger(__name__)


@dataclass
class HealthResult:
    alive: bool = False
    latency_ms: int = 0


@dataclass
class SiteResult:
    sites: Dict[str, int] = field(default_factory=dict)

    def all_ok(self) -> bool:
        return bool(self.sites) and all(d > 0 for d in self.sites.values())


def _run_bounded(fn: Callable[[UnifiedNode], None], nodes: Sequence[UnifiedNode], workers: int) -> None:
    if not nodes:
        return
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(nodes)))) as pool:
        for fut in [pool.submit(fn, n) for n in nodes]:
            fut.result()


class NodeChecker:
    def __init__(
        self,
        store: Optional[SQLiteStore] = None,
        bus: Optional[EventBus] = None,
        health_url: str = HEALTH_CHECK_URL,
        timeout_ms: int = DELAY_TIMEOUT_MS,
        health_concurrency: int = HEALTH_CONCURRENCY,
        site_concurrency: int = SITE_CONCURRENCY,
    ):
        self.store = store
        self.bus = bus
        self.health_url = health_url
        self.timeout_ms = timeout_ms
        self.health_concurrency = health_concurrency
        self.site_concurrency = site_concurrency

    def _publish(self, event_type: str, data: Dict[str, int]) -> None:
        if self.bus is not None:
            self.bus.publish(event_type, data)

    def health_check(self, nodes: Sequence[UnifiedNode], session: ProbeSession) -> Dict[str, HealthResult]:
        """One delay probe per unique endpoint, keyed by identity."""
        unique = dedupe_by_key(nodes)
        api = session.api()
        results: Dict[str, HealthResult] = {}
        lock = threading.Lock()
        done = [0]
        total = len(unique)

        def _one(n: UnifiedNode) -> None:
            ptag = session.tag_map.probe_tag_for(n)
            delay = api.proxy_delay(ptag, self.health_url, self.timeout_ms) if ptag else 0
            with lock:
                results[n.key] = HealthResult(alive=delay > 0, latency_ms=delay)
                done[0] += 1
                cur = done[0]
            self._publish("verify:health_progress", {"current": cur, "total": total})

        _run_bounded(_one, unique, self.health_concurrency)

        if self.store is not None:
            rows = [
                HealthMeasurement(
                    server=n.server,
                    server_port=n.server_port,
                    node_tag=n.routing_tag(),
                    alive=results[n.key].alive,
                    latency_ms=results[n.key].latency_ms,
                )
                for n in unique
                if n.key in results
            ]
            try:
                self.store.add_health_measurements(rows)
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to save health measurements: %s", exc)
        alive = sum(1 for r in results.values() if r.alive)
        logger.info("health check: %d/%d alive", alive, total)
        return results

    def site_check(
        self, nodes: Sequence[UnifiedNode], session: ProbeSession, targets: Optional[Sequence[str]] = None
    ) -> Dict[str, SiteResult]:
        """Delay to every target site per node; 0 marks an unreachable site."""
        unique = dedupe_by_key(nodes)
        sites = sanitize_site_targets(targets)
        api: ClashAPI = session.api()
        results: Dict[str, SiteResult] = {}
        lock = threading.Lock()
        done = [0]
        total = len(unique)

        def _one(n: UnifiedNode) -> None:
            ptag = session.tag_map.probe_tag_for(n)
            res = SiteResult()
            for site in sites:
                url = normalize_site_check_url(site)
                res.sites[site] = api.proxy_delay(ptag, url, self.timeout_ms) if ptag else 0
            with lock:
                results[n.key] = res
                done[0] += 1
                cur = done[0]
            self._publish("verify:site_progress", {"current": cur, "total": total})

        _run_bounded(_one, unique, self.site_concurrency)

        if self.store is not None:
            rows: List[SiteMeasurement] = []
            for n in unique:
                r = results.get(n.key)
                if r is None:
                    continue
                for site, delay in r.sites.items():
                    rows.append(
                        SiteMeasurement(
                            server=n.server,
                            server_port=n.server_port,
                            node_tag=n.routing_tag(),
                            site=site,
                            delay_ms=delay,
                        )
                    )
            try:
                self.store.add_site_measurements(rows)
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to save site measurements: %s", exc)
        return results

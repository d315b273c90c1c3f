"""
Subscription pipeline - 订阅节点自动入池

For each subscription with auto_pipeline on: health-check its nodes through
the probe, copy alive endpoints the pool does not know yet as ``pending``, and
optionally drop stale nodes that came from it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import nullcontext
from dataclasses import replace
from typing import Any, Callable, ContextManager, Dict, List, Optional, Set

from ..core.settings import PIPELINE_STALE_THRESHOLD
from ..db import SQLiteStore, StoreError
from ..models import STATUS_ARCHIVED, STATUS_PENDING, PipelineLog, Subscription, UnifiedNode
from ..utils.normalize import dedupe_by_key
from .checks import NodeChecker
from .probe import ProbeError, ProbeManager

logger = logging.getLogger(__name__)


def subscription_nodes(sub: Subscription) -> List[UnifiedNode]:
    out: List[UnifiedNode] = []
    for ob in sub.nodes:
        n = UnifiedNode.from_outbound(ob, source=sub.id)
        if n.server and n.server_port > 0 and n.type:
            out.append(n)
    return out


class PipelineRunner:
    def __init__(
        self,
        store: SQLiteStore,
        probe: ProbeManager,
        checker: NodeChecker,
        lock: Optional[threading.Lock] = None,
        on_change: Optional[Callable[[], Any]] = None,
        stale_threshold: int = PIPELINE_STALE_THRESHOLD,
    ):
        self.store = store
        self.probe = probe
        self.checker = checker
        self._lock = lock
        self.on_change = on_change
        self.stale_threshold = stale_threshold

    def _guard(self) -> ContextManager[Any]:
        return self._lock if self._lock is not None else nullcontext()

    def run_all(self) -> bool:
        """Run every enabled auto-pipeline subscription; True when the pool changed."""
        any_changed = False
        for sub in self.store.get_subscriptions():
            if not (sub.enabled and sub.auto_pipeline):
                continue
            log = self._run(sub)
            if log.error:
                logger.warning("pipeline %s: error: %s", sub.name, log.error)
                continue
            logger.info(
                "pipeline %s: checked=%d alive=%d copied=%d removed=%d (%dms)",
                sub.name, log.checked_nodes, log.alive_nodes, log.copied_nodes, log.removed_stale, log.duration_ms,
            )
            if log.copied_nodes or log.removed_stale:
                any_changed = True
        if any_changed:
            self._notify()
        return any_changed

    def run(self, sub: Subscription) -> PipelineLog:
        log = self._run(sub)
        if not log.error and (log.copied_nodes or log.removed_stale):
            self._notify()
        return log

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("pipeline on_change callback failed")

    def _run(self, sub: Subscription) -> PipelineLog:
        started = time.monotonic()
        nodes = dedupe_by_key(subscription_nodes(sub))
        counts: Dict[str, int] = {"total_nodes": len(nodes)}
        error = ""
        if nodes:
            with self._guard():
                try:
                    self._run_locked(sub, nodes, counts)
                except ProbeError as exc:
                    error = f"health check failed: {exc.message}"
                except (StoreError, sqlite3.Error) as exc:
                    error = f"store error: {exc}"

        log = PipelineLog(
            subscription_id=sub.id,
            timestamp=time.time(),
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
            **counts,
        )
        try:
            log = replace(log, id=self.store.add_pipeline_log(log))
            self.store.mark_pipeline_run(sub.id, log.timestamp)
        except (StoreError, sqlite3.Error) as exc:
            logger.warning("failed to save pipeline log for %s: %s", sub.id, exc)
        return log

    def _run_locked(self, sub: Subscription, nodes: List[UnifiedNode], counts: Dict[str, int]) -> None:
        session = self.probe.ensure_running(nodes)
        health = self.checker.health_check(nodes, session)
        counts["checked_nodes"] = len(health)

        alive = [n for n in nodes if n.key in health and health[n.key].alive]
        counts["alive_nodes"] = len(alive)

        copied = skipped = 0
        for n in alive:
            if self.store.find_node(n.server, n.server_port) is not None:
                skipped += 1
                continue
            n.status = STATUS_PENDING
            try:
                self.store.add_node(n)
            except StoreError as exc:
                logger.warning("pipeline failed to add node %s: %s", n.routing_tag(), exc)
                continue
            copied += 1
        counts["copied_nodes"] = copied
        counts["skipped_nodes"] = skipped

        if sub.remove_dead:
            counts["removed_stale"] = self._remove_stale(sub, {n.key for n in nodes})

    def stale_nodes(self, sub: Subscription, current_keys: Optional[Set[str]] = None) -> List[UnifiedNode]:
        """Pool nodes from sub that left the subscription, or are archived and failing."""
        if current_keys is None:
            current_keys = {n.key for n in subscription_nodes(sub)}
        stale: List[UnifiedNode] = []
        for n in self.store.get_nodes_by_source(sub.id):
            if n.key not in current_keys:
                stale.append(n)
            elif n.status == STATUS_ARCHIVED and n.consecutive_failures >= self.stale_threshold:
                stale.append(n)
        return stale

    def _remove_stale(self, sub: Subscription, current_keys: Set[str]) -> int:
        removed = 0
        for n in self.stale_nodes(sub, current_keys):
            try:
                self.store.delete_node(n.id)
            except StoreError as exc:
                logger.warning("failed to remove stale node %s: %s", n.routing_tag(), exc)
                continue
            removed += 1
        return removed

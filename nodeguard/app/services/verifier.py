"""
Verification cycle - 节点验证周期

pending -> verified on a passing check, pending -> archived after too many
consecutive failures, verified -> pending (a fresh window) when a verified
node keeps failing. The store stays the source of truth: lifecycle state is
re-read at the start of every cycle.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..core.events import EventBus
from ..db import SQLiteStore, StoreError
from ..models import STATUS_PENDING, STATUS_VERIFIED, UnifiedNode, VerificationLog
from ..utils.normalize import parse_tag_set
from .checks import HealthResult, NodeChecker, SiteResult
from .geo import GeoChecker, GeoLookupError
from .probe import AllNodesBroken, BrokenNode, ProbeError, ProbeManager, ProbeSession, ProbeValidationError

logger = logging.getLogger(__name__)


def _matches(n: UnifiedNode, tag_set: Set[str]) -> bool:
    return n.routing_tag() in tag_set or n.display_or_tag() in tag_set


@dataclass
class _Counts:
    pending_checked: int = 0
    pending_promoted: int = 0
    pending_archived: int = 0
    verified_checked: int = 0
    verified_demoted: int = 0
    changed: bool = False


class VerificationEngine:
    def __init__(
        self,
        store: SQLiteStore,
        probe: ProbeManager,
        bus: Optional[EventBus] = None,
        checker: Optional[NodeChecker] = None,
        geo: Optional[GeoChecker] = None,
        on_change: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.probe = probe
        self.bus = bus or EventBus()
        self.checker = checker or NodeChecker(store, self.bus)
        self.geo = geo
        self.on_change = on_change
        # also taken (blocking) by the pipeline so the two never fight over the probe
        self.cycle_lock = threading.Lock()
        self.last_log: Optional[VerificationLog] = None

    def is_running(self) -> bool:
        return self.cycle_lock.locked()

    def run(self) -> Optional[VerificationLog]:
        """Verify every pending and verified node. None when a cycle is already running."""
        return self._run_guarded(set())

    def run_for_tags(self, tags: Sequence[str]) -> Optional[VerificationLog]:
        tag_set = parse_tag_set(tags)
        if not tag_set:
            raise ValueError("no tags given")
        return self._run_guarded(tag_set)

    def _run_guarded(self, tag_set: Set[str]) -> Optional[VerificationLog]:
        if not self.cycle_lock.acquire(blocking=False):
            logger.info("verification already running, trigger skipped")
            return None
        try:
            return self._run_cycle(tag_set)
        finally:
            self.cycle_lock.release()

    def _run_cycle(self, tag_set: Set[str]) -> VerificationLog:
        started = time.monotonic()
        counts = _Counts()
        error = ""
        try:
            self._cycle(tag_set, counts)
        except ProbeError as exc:
            error = f"probe start failed: {exc.message}"
            logger.warning("verification aborted: %s", error)
        except (StoreError, sqlite3.Error) as exc:
            error = f"store error: {exc}"
            logger.warning("verification aborted: %s", error)

        if error:
            # a failed cycle reports zeroed counts
            counts = _Counts(changed=counts.changed)
        log = VerificationLog(
            timestamp=time.time(),
            pending_checked=counts.pending_checked,
            pending_promoted=counts.pending_promoted,
            pending_archived=counts.pending_archived,
            verified_checked=counts.verified_checked,
            verified_demoted=counts.verified_demoted,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
        )
        try:
            log = replace(log, id=self.store.add_verification_log(log))
        except (StoreError, sqlite3.Error) as exc:
            logger.warning("failed to save verification log: %s", exc)
        self.last_log = log

        logger.info(
            "verification completed in %dms: pending checked=%d promoted=%d archived=%d | "
            "verified checked=%d demoted=%d",
            log.duration_ms,
            log.pending_checked,
            log.pending_promoted,
            log.pending_archived,
            log.verified_checked,
            log.verified_demoted,
        )
        payload: Dict[str, Any] = {
            "duration_ms": log.duration_ms,
            "promoted": log.pending_promoted,
            "demoted": log.verified_demoted,
            "archived": log.pending_archived,
        }
        if error:
            payload["error"] = error
        self.bus.publish_timestamped("verify:complete", payload)

        if counts.changed and self.on_change is not None:
            try:
                self.on_change()
            except Exception:
                logger.exception("on_change callback failed")
        return log

    # ---------- cycle ----------

    def _collect(self, tag_set: Set[str]) -> Tuple[List[UnifiedNode], List[UnifiedNode]]:
        pending = self.store.get_nodes(STATUS_PENDING)
        verified = self.store.get_nodes(STATUS_VERIFIED)
        if tag_set:
            pending = [n for n in pending if _matches(n, tag_set)]
            verified = [n for n in verified if _matches(n, tag_set)]
        return pending, verified

    def _cycle(self, tag_set: Set[str], c: _Counts) -> None:
        settings = self.store.get_settings()
        threshold = settings.effective_archive_threshold()

        pending, verified = self._collect(tag_set)
        pending = self._archive_over_threshold(pending, threshold, c)
        if not pending and not verified:
            return

        self.bus.publish_timestamped(
            "verify:start", {"pending_count": len(pending), "verified_count": len(verified)}
        )

        session, pending, verified = self._ensure_probe(pending, verified, tag_set, c)
        if session is None:
            return
        nodes = pending + verified

        self.bus.publish("verify:health_start", {"total_nodes": len(nodes)})
        health = self.checker.health_check(nodes, session)

        alive_nodes = [n for n in nodes if health.get(n.key, HealthResult()).alive]
        self.bus.publish("verify:site_start", {"total_nodes": len(alive_nodes)})
        sites: Optional[Dict[str, SiteResult]] = {}
        if alive_nodes:
            try:
                sites = self.checker.site_check(alive_nodes, session, settings.site_check_targets)
            except Exception as exc:
                logger.warning("site check failed (continuing with health only): %s", exc)
                sites = None

        self._pending_pass(pending, health, sites, threshold, c)
        self._verified_pass(verified, health, sites, threshold, c)

        if self.geo is not None and settings.geo_enabled and alive_nodes:
            self._geo_pass(alive_nodes, session)

    def _passed(
        self, n: UnifiedNode, health: Dict[str, HealthResult], sites: Optional[Dict[str, SiteResult]]
    ) -> Tuple[bool, bool]:
        alive = health.get(n.key, HealthResult()).alive
        sites_ok = True
        if alive and sites is not None:
            r = sites.get(n.key)
            sites_ok = r is not None and r.all_ok()
        return alive, sites_ok

    def _node_payload(self, n: UnifiedNode, **extra: Any) -> Dict[str, Any]:
        d: Dict[str, Any] = {"tag": n.routing_tag(), "server": n.server, "server_port": n.server_port}
        d.update(extra)
        return d

    def _archive_over_threshold(self, pending: List[UnifiedNode], threshold: int, c: _Counts) -> List[UnifiedNode]:
        kept: List[UnifiedNode] = []
        for n in pending:
            if n.consecutive_failures < threshold:
                kept.append(n)
                continue
            try:
                self.store.archive_node(n.id)
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to archive threshold-exceeded node %s: %s", n.id, exc)
                kept.append(n)
                continue
            c.pending_archived += 1
            c.changed = True
            self.bus.publish_timestamped(
                "verify:node_archived",
                self._node_payload(n, failures=n.consecutive_failures, reason="threshold exceeded before check"),
            )
        return kept

    def _ensure_probe(
        self, pending: List[UnifiedNode], verified: List[UnifiedNode], tag_set: Set[str], c: _Counts
    ) -> Tuple[Optional[ProbeSession], List[UnifiedNode], List[UnifiedNode]]:
        """Start (or reuse) the probe; nodes the engine rejects are archived right away."""
        by_key = {n.key: n for n in pending + verified}
        try:
            session: Optional[ProbeSession] = self.probe.ensure_running(pending + verified)
            broken: Sequence[BrokenNode] = session.broken_nodes
        except ProbeValidationError as exc:
            if not exc.broken_nodes:
                raise
            self._archive_broken(exc.broken_nodes, by_key, c)
            if isinstance(exc, AllNodesBroken):
                raise
            session, broken = None, ()

        if not broken and session is not None:
            return session, pending, verified
        if broken:
            self._archive_broken(broken, by_key, c)

        pending, verified = self._collect(tag_set)
        if not pending and not verified:
            return None, pending, verified
        return self.probe.ensure_running(pending + verified), pending, verified

    def _archive_broken(self, broken: Sequence[BrokenNode], by_key: Dict[str, UnifiedNode], c: _Counts) -> None:
        logger.info("found %d broken node(s) during probe validation", len(broken))
        for bn in broken:
            n = by_key.get(bn.key)
            if n is None:
                continue
            try:
                self.store.archive_node(n.id)
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to archive broken node %s (%s): %s", n.id, bn.tag, exc)
                continue
            c.pending_archived += 1
            c.changed = True
            self.bus.publish_timestamped(
                "verify:node_archived", self._node_payload(n, reason=f"broken config: {bn.error}")
            )
            logger.info("archived broken node: %s - %s", bn.tag, bn.error)
            try:
                self.store.add_unsupported_node(n.server, n.server_port, bn.tag, bn.error)
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to persist unsupported node %s: %s", bn.tag, exc)

    def _pending_pass(
        self,
        pending: List[UnifiedNode],
        health: Dict[str, HealthResult],
        sites: Optional[Dict[str, SiteResult]],
        threshold: int,
        c: _Counts,
    ) -> None:
        c.pending_checked = len(pending)
        for i, n in enumerate(pending):
            alive, sites_ok = self._passed(n, health, sites)
            try:
                if alive and sites_ok:
                    self.store.promote_node(n.id)
                    c.pending_promoted += 1
                    c.changed = True
                    self.bus.publish("verify:node_promoted", self._node_payload(n))
                else:
                    failures = self.store.increment_consecutive_failures(n.id)
                    if failures >= threshold:
                        self.store.archive_node(n.id)
                        c.pending_archived += 1
                        c.changed = True
                        self.bus.publish("verify:node_archived", self._node_payload(n, failures=failures))
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to update pending node %s: %s", n.id, exc)
            self.bus.publish(
                "verify:progress",
                {
                    "phase": STATUS_PENDING,
                    "current": i + 1,
                    "total": len(pending),
                    "tag": n.routing_tag(),
                    "alive": alive,
                    "sites_ok": sites_ok,
                },
            )

    def _verified_pass(
        self,
        verified: List[UnifiedNode],
        health: Dict[str, HealthResult],
        sites: Optional[Dict[str, SiteResult]],
        threshold: int,
        c: _Counts,
    ) -> None:
        c.verified_checked = len(verified)
        for i, n in enumerate(verified):
            alive, sites_ok = self._passed(n, health, sites)
            try:
                if alive and sites_ok:
                    self.store.reset_consecutive_failures(n.id)
                else:
                    failures = self.store.increment_consecutive_failures(n.id)
                    if failures >= threshold:
                        # back to pending, never straight to archived
                        self.store.demote_node(n.id)
                        c.verified_demoted += 1
                        c.changed = True
                        self.bus.publish("verify:node_demoted", self._node_payload(n, failures=failures))
            except (StoreError, sqlite3.Error) as exc:
                logger.warning("failed to update verified node %s: %s", n.id, exc)
            self.bus.publish(
                "verify:progress",
                {
                    "phase": STATUS_VERIFIED,
                    "current": i + 1,
                    "total": len(verified),
                    "tag": n.routing_tag(),
                    "alive": alive,
                    "sites_ok": sites_ok,
                },
            )

    def _geo_pass(self, nodes: List[UnifiedNode], session: ProbeSession) -> None:
        geo = self.geo
        if geo is None:
            return
        self.bus.publish("verify:geo_start", {"total_nodes": len(nodes)})
        checked = 0
        try:
            checked = len(geo.check(nodes, session))
        except GeoLookupError as exc:
            logger.warning("geo pass skipped: %s", exc.message)
        self.bus.publish("verify:geo_complete", {"checked": checked})

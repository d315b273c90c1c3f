from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .core.settings import DB_PATH
from .models import (
    STATUS_ARCHIVED,
    STATUS_PENDING,
    STATUS_VERIFIED,
    GeoData,
    HealthMeasurement,
    PipelineLog,
    Settings,
    SiteMeasurement,
    Subscription,
    UnifiedNode,
    VerificationLog,
)
from .utils.normalize import node_key


class StoreError(Exception):
    """Store mutation could not be applied."""


def now() -> float:
    return time.time()


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS settings (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS nodes (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      tag TEXT NOT NULL,
      type TEXT NOT NULL,
      server TEXT NOT NULL,
      server_port INTEGER NOT NULL,
      country TEXT NOT NULL DEFAULT '',
      country_emoji TEXT NOT NULL DEFAULT '',
      extra_json TEXT NOT NULL DEFAULT '{}',
      status TEXT NOT NULL DEFAULT 'pending',
      source TEXT NOT NULL DEFAULT '',
      display_name TEXT NOT NULL DEFAULT '',
      consecutive_failures INTEGER NOT NULL DEFAULT 0,
      last_checked_at REAL,
      created_at REAL NOT NULL,
      promoted_at REAL,
      archived_at REAL,
      UNIQUE(server, server_port)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_status ON nodes(status);",
    """
    CREATE TABLE IF NOT EXISTS verification_logs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      timestamp REAL NOT NULL,
      pending_checked INTEGER NOT NULL DEFAULT 0,
      pending_promoted INTEGER NOT NULL DEFAULT 0,
      pending_archived INTEGER NOT NULL DEFAULT 0,
      verified_checked INTEGER NOT NULL DEFAULT 0,
      verified_demoted INTEGER NOT NULL DEFAULT 0,
      duration_ms INTEGER NOT NULL DEFAULT 0,
      error TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_logs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      subscription_id TEXT NOT NULL,
      timestamp REAL NOT NULL,
      total_nodes INTEGER NOT NULL DEFAULT 0,
      checked_nodes INTEGER NOT NULL DEFAULT 0,
      alive_nodes INTEGER NOT NULL DEFAULT 0,
      copied_nodes INTEGER NOT NULL DEFAULT 0,
      skipped_nodes INTEGER NOT NULL DEFAULT 0,
      removed_stale INTEGER NOT NULL DEFAULT 0,
      duration_ms INTEGER NOT NULL DEFAULT 0,
      error TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS health_measurements (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      node_key TEXT NOT NULL,
      node_tag TEXT NOT NULL DEFAULT '',
      timestamp REAL NOT NULL,
      alive INTEGER NOT NULL,
      latency_ms INTEGER NOT NULL DEFAULT 0,
      mode TEXT NOT NULL DEFAULT 'probe'
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_health_key_ts ON health_measurements(node_key, timestamp);",
    """
    CREATE TABLE IF NOT EXISTS site_measurements (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      node_key TEXT NOT NULL,
      node_tag TEXT NOT NULL DEFAULT '',
      timestamp REAL NOT NULL,
      site TEXT NOT NULL,
      delay_ms INTEGER NOT NULL DEFAULT 0,
      mode TEXT NOT NULL DEFAULT 'probe'
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS unsupported_nodes (
      node_key TEXT PRIMARY KEY,
      node_tag TEXT NOT NULL DEFAULT '',
      error TEXT NOT NULL DEFAULT '',
      detected_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS geo_data (
      node_key TEXT PRIMARY KEY,
      server TEXT NOT NULL,
      server_port INTEGER NOT NULL,
      node_tag TEXT NOT NULL DEFAULT '',
      timestamp REAL NOT NULL,
      status TEXT NOT NULL,
      country TEXT NOT NULL DEFAULT '',
      country_code TEXT NOT NULL DEFAULT '',
      region_name TEXT NOT NULL DEFAULT '',
      city TEXT NOT NULL DEFAULT '',
      isp TEXT NOT NULL DEFAULT '',
      org TEXT NOT NULL DEFAULT '',
      query_ip TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      url TEXT NOT NULL DEFAULT '',
      enabled INTEGER NOT NULL DEFAULT 1,
      auto_pipeline INTEGER NOT NULL DEFAULT 0,
      remove_dead INTEGER NOT NULL DEFAULT 0,
      nodes_json TEXT NOT NULL DEFAULT '[]',
      updated_at REAL,
      pipeline_last_run REAL
    );
    """,
)

_NODE_COLS = (
    "id, tag, type, server, server_port, country, country_emoji, extra_json, status, source, "
    "display_name, consecutive_failures, last_checked_at, created_at, promoted_at, archived_at"
)


def _row_to_node(row: sqlite3.Row) -> UnifiedNode:
    try:
        extra = json.loads(row["extra_json"] or "{}")
    except Exception:
        extra = {}
    return UnifiedNode(
        id=int(row["id"]),
        tag=str(row["tag"]),
        type=str(row["type"]),
        server=str(row["server"]),
        server_port=int(row["server_port"]),
        country=str(row["country"] or ""),
        country_emoji=str(row["country_emoji"] or ""),
        extra=extra if isinstance(extra, dict) else {},
        status=str(row["status"]),
        source=str(row["source"] or ""),
        display_name=str(row["display_name"] or ""),
        consecutive_failures=int(row["consecutive_failures"] or 0),
        last_checked_at=row["last_checked_at"],
        created_at=float(row["created_at"]),
        promoted_at=row["promoted_at"],
        archived_at=row["archived_at"],
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    try:
        nodes = json.loads(row["nodes_json"] or "[]")
    except Exception:
        nodes = []
    return Subscription(
        id=str(row["id"]),
        name=str(row["name"]),
        url=str(row["url"] or ""),
        enabled=bool(row["enabled"]),
        auto_pipeline=bool(row["auto_pipeline"]),
        remove_dead=bool(row["remove_dead"]),
        nodes=[n for n in nodes if isinstance(n, dict)] if isinstance(nodes, list) else [],
        updated_at=row["updated_at"],
        pipeline_last_run=row["pipeline_last_run"],
    )


class SQLiteStore:
    """Single source of truth for node lifecycle state, logs and measurements."""

    def __init__(self, path: str = DB_PATH):
        self.path = path
        self._init_lock = threading.Lock()
        self._ready = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        with self._init_lock:
            if self._ready:
                return
            with self._connect() as conn:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
            self._ready = True

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        self.init_db()
        with self._connect() as conn:
            yield conn

    # ==================== settings ====================

    def get_settings(self) -> Settings:
        with self._db() as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
        raw: Dict[str, Any] = {}
        for r in rows:
            try:
                raw[str(r["key"])] = json.loads(r["value"])
            except Exception:
                continue
        s = Settings()
        for name in ("subscription_interval", "verification_interval", "archive_threshold"):
            if name in raw:
                try:
                    setattr(s, name, max(0, int(raw[name])))
                except Exception:
                    pass
        for name in ("geo_enabled", "auto_pipeline"):
            if name in raw:
                setattr(s, name, bool(raw[name]))
        targets = raw.get("site_check_targets")
        if isinstance(targets, list):
            s.site_check_targets = [str(t) for t in targets if str(t).strip()]
        return s

    def update_settings(self, **values: Any) -> Settings:
        known = set(Settings.__dataclass_fields__.keys())
        with self._db() as conn:
            for k, v in values.items():
                if k not in known:
                    raise StoreError(f"unknown setting: {k}")
                conn.execute(
                    "INSERT INTO settings(key, value) VALUES(?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (k, json.dumps(v)),
                )
        return self.get_settings()

    # ==================== nodes ====================

    def add_node(self, node: UnifiedNode) -> int:
        try:
            with self._db() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO nodes(tag, type, server, server_port, country, country_emoji, extra_json,
                                      status, source, display_name, consecutive_failures, last_checked_at,
                                      created_at, promoted_at, archived_at)
                    VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        node.tag,
                        node.type,
                        node.server,
                        int(node.server_port),
                        node.country,
                        node.country_emoji,
                        json.dumps(node.extra or {}, ensure_ascii=False),
                        node.status,
                        node.source,
                        node.display_name,
                        int(node.consecutive_failures),
                        node.last_checked_at,
                        node.created_at or now(),
                        node.promoted_at,
                        node.archived_at,
                    ),
                )
                node_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"node already exists: {node.key}") from exc
        node.id = node_id
        return node_id

    def get_node(self, node_id: int) -> Optional[UnifiedNode]:
        with self._db() as conn:
            row = conn.execute(f"SELECT {_NODE_COLS} FROM nodes WHERE id=?", (int(node_id),)).fetchone()
        return _row_to_node(row) if row else None

    def find_node(self, server: str, server_port: int) -> Optional[UnifiedNode]:
        with self._db() as conn:
            row = conn.execute(
                f"SELECT {_NODE_COLS} FROM nodes WHERE server=? AND server_port=?",
                (server, int(server_port)),
            ).fetchone()
        return _row_to_node(row) if row else None

    def get_nodes(self, status: Optional[str] = None) -> List[UnifiedNode]:
        with self._db() as conn:
            if status:
                rows = conn.execute(
                    f"SELECT {_NODE_COLS} FROM nodes WHERE status=? ORDER BY id", (status,)
                ).fetchall()
            else:
                rows = conn.execute(f"SELECT {_NODE_COLS} FROM nodes ORDER BY id").fetchall()
        return [_row_to_node(r) for r in rows]

    def get_nodes_by_source(self, source: str, status: Optional[str] = None) -> List[UnifiedNode]:
        return [n for n in self.get_nodes(status) if n.source == source]

    def delete_node(self, node_id: int) -> None:
        self._exec_one("DELETE FROM nodes WHERE id=?", (int(node_id),), node_id)

    def get_node_counts(self) -> Dict[str, int]:
        counts = {STATUS_PENDING: 0, STATUS_VERIFIED: 0, STATUS_ARCHIVED: 0}
        with self._db() as conn:
            for r in conn.execute("SELECT status, COUNT(*) AS c FROM nodes GROUP BY status").fetchall():
                counts[str(r["status"])] = int(r["c"])
        return counts

    def _exec_one(self, sql: str, params: Sequence[Any], node_id: int) -> None:
        with self._db() as conn:
            cur = conn.execute(sql, tuple(params))
            if cur.rowcount == 0:
                raise StoreError(f"node not found: {node_id}")

    def promote_node(self, node_id: int) -> None:
        t = now()
        self._exec_one(
            "UPDATE nodes SET status='verified', promoted_at=?, consecutive_failures=0, last_checked_at=? WHERE id=?",
            (t, t, int(node_id)),
            node_id,
        )

    def demote_node(self, node_id: int) -> None:
        """verified -> pending; the demoting failure stays counted."""
        self._exec_one(
            "UPDATE nodes SET status='pending', promoted_at=NULL, consecutive_failures=1, last_checked_at=? WHERE id=?",
            (now(), int(node_id)),
            node_id,
        )

    def archive_node(self, node_id: int) -> None:
        self._exec_one(
            "UPDATE nodes SET status='archived', archived_at=? WHERE id=?",
            (now(), int(node_id)),
            node_id,
        )

    def unarchive_node(self, node_id: int) -> None:
        self._exec_one(
            "UPDATE nodes SET status='pending', archived_at=NULL, consecutive_failures=0 WHERE id=?",
            (int(node_id),),
            node_id,
        )

    def increment_consecutive_failures(self, node_id: int) -> int:
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE nodes SET consecutive_failures=consecutive_failures+1, last_checked_at=? WHERE id=?",
                (now(), int(node_id)),
            )
            if cur.rowcount == 0:
                raise StoreError(f"node not found: {node_id}")
            row = conn.execute("SELECT consecutive_failures FROM nodes WHERE id=?", (int(node_id),)).fetchone()
        return int(row["consecutive_failures"])

    def reset_consecutive_failures(self, node_id: int) -> None:
        self._exec_one(
            "UPDATE nodes SET consecutive_failures=0, last_checked_at=? WHERE id=?",
            (now(), int(node_id)),
            node_id,
        )

    def get_consecutive_failures(self, server: str, server_port: int) -> int:
        with self._db() as conn:
            row = conn.execute(
                "SELECT consecutive_failures FROM nodes WHERE server=? AND server_port=?",
                (server, int(server_port)),
            ).fetchone()
        return int(row["consecutive_failures"]) if row else 0

    def update_node_country(self, server: str, server_port: int, code: str, emoji: str) -> None:
        with self._db() as conn:
            conn.execute(
                "UPDATE nodes SET country=?, country_emoji=? WHERE server=? AND server_port=?",
                (code, emoji, server, int(server_port)),
            )

    # ==================== run logs ====================

    def add_verification_log(self, log: VerificationLog) -> int:
        with self._db() as conn:
            cur = conn.execute(
                """
                INSERT INTO verification_logs(timestamp, pending_checked, pending_promoted, pending_archived,
                                              verified_checked, verified_demoted, duration_ms, error)
                VALUES(?,?,?,?,?,?,?,?)
                """,
                (
                    log.timestamp,
                    log.pending_checked,
                    log.pending_promoted,
                    log.pending_archived,
                    log.verified_checked,
                    log.verified_demoted,
                    log.duration_ms,
                    log.error,
                ),
            )
            return int(cur.lastrowid)

    def get_verification_logs(self, limit: int = 20) -> List[VerificationLog]:
        if limit <= 0:
            limit = 20
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_logs ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [
            VerificationLog(
                id=int(r["id"]),
                timestamp=float(r["timestamp"]),
                pending_checked=int(r["pending_checked"]),
                pending_promoted=int(r["pending_promoted"]),
                pending_archived=int(r["pending_archived"]),
                verified_checked=int(r["verified_checked"]),
                verified_demoted=int(r["verified_demoted"]),
                duration_ms=int(r["duration_ms"]),
                error=str(r["error"] or ""),
            )
            for r in rows
        ]

    def add_pipeline_log(self, log: PipelineLog) -> int:
        with self._db() as conn:
            cur = conn.execute(
                """
                INSERT INTO pipeline_logs(subscription_id, timestamp, total_nodes, checked_nodes, alive_nodes,
                                          copied_nodes, skipped_nodes, removed_stale, duration_ms, error)
                VALUES(?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    log.subscription_id,
                    log.timestamp,
                    log.total_nodes,
                    log.checked_nodes,
                    log.alive_nodes,
                    log.copied_nodes,
                    log.skipped_nodes,
                    log.removed_stale,
                    log.duration_ms,
                    log.error,
                ),
            )
            return int(cur.lastrowid)

    def get_pipeline_logs(self, subscription_id: str = "", limit: int = 20) -> List[PipelineLog]:
        if limit <= 0:
            limit = 20
        with self._db() as conn:
            if subscription_id:
                rows = conn.execute(
                    "SELECT * FROM pipeline_logs WHERE subscription_id=? ORDER BY id DESC LIMIT ?",
                    (subscription_id, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM pipeline_logs ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        cols = PipelineLog.__dataclass_fields__.keys()
        return [PipelineLog(**{c: r[c] for c in cols}) for r in rows]

    # ==================== measurements ====================

    def add_health_measurements(self, items: Sequence[HealthMeasurement]) -> None:
        if not items:
            return
        with self._db() as conn:
            conn.executemany(
                "INSERT INTO health_measurements(node_key, node_tag, timestamp, alive, latency_ms, mode) "
                "VALUES(?,?,?,?,?,?)",
                [
                    (node_key(m.server, m.server_port), m.node_tag, m.timestamp, 1 if m.alive else 0, m.latency_ms, m.mode)
                    for m in items
                ],
            )

    def add_site_measurements(self, items: Sequence[SiteMeasurement]) -> None:
        if not items:
            return
        with self._db() as conn:
            conn.executemany(
                "INSERT INTO site_measurements(node_key, node_tag, timestamp, site, delay_ms, mode) "
                "VALUES(?,?,?,?,?,?)",
                [(node_key(m.server, m.server_port), m.node_tag, m.timestamp, m.site, m.delay_ms, m.mode) for m in items],
            )

    def get_health_measurements(self, server: str, server_port: int, limit: int = 50) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT node_key, node_tag, timestamp, alive, latency_ms, mode FROM health_measurements "
                "WHERE node_key=? ORDER BY id DESC LIMIT ?",
                (node_key(server, server_port), int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    def add_unsupported_node(self, server: str, server_port: int, node_tag: str, error: str) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO unsupported_nodes(node_key, node_tag, error, detected_at) VALUES(?,?,?,?) "
                "ON CONFLICT(node_key) DO UPDATE SET node_tag=excluded.node_tag, error=excluded.error, "
                "detected_at=excluded.detected_at",
                (node_key(server, server_port), node_tag, error, now()),
            )

    def list_unsupported_nodes(self) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM unsupported_nodes ORDER BY detected_at DESC").fetchall()
        return [dict(r) for r in rows]

    # ==================== geo ====================

    def get_geo_data_bulk(self, keys: Sequence[str]) -> Dict[str, GeoData]:
        if not keys:
            return {}
        out: Dict[str, GeoData] = {}
        cols = [c for c in GeoData.__dataclass_fields__.keys()]
        with self._db() as conn:
            for i in range(0, len(keys), 500):
                chunk = list(keys[i:i + 500])
                marks = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT node_key, {', '.join(cols)} FROM geo_data WHERE node_key IN ({marks})", chunk
                ).fetchall()
                for r in rows:
                    out[str(r["node_key"])] = GeoData(**{c: r[c] for c in cols})
        return out

    def upsert_geo_data(self, geo: GeoData) -> None:
        cols = list(GeoData.__dataclass_fields__.keys())
        values = [getattr(geo, c) for c in cols]
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols)
        with self._db() as conn:
            conn.execute(
                f"INSERT INTO geo_data(node_key, {', '.join(cols)}) VALUES(?, {', '.join('?' for _ in cols)}) "
                f"ON CONFLICT(node_key) DO UPDATE SET {updates}",
                [geo.key] + values,
            )

    # ==================== subscriptions ====================

    def upsert_subscription(self, sub: Subscription) -> None:
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions(id, name, url, enabled, auto_pipeline, remove_dead, nodes_json,
                                          updated_at, pipeline_last_run)
                VALUES(?,?,?,?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  url=excluded.url,
                  enabled=excluded.enabled,
                  auto_pipeline=excluded.auto_pipeline,
                  remove_dead=excluded.remove_dead,
                  nodes_json=excluded.nodes_json,
                  updated_at=excluded.updated_at,
                  pipeline_last_run=excluded.pipeline_last_run
                """,
                (
                    sub.id,
                    sub.name,
                    sub.url,
                    1 if sub.enabled else 0,
                    1 if sub.auto_pipeline else 0,
                    1 if sub.remove_dead else 0,
                    json.dumps(sub.nodes, ensure_ascii=False),
                    sub.updated_at,
                    sub.pipeline_last_run,
                ),
            )

    def get_subscriptions(self) -> List[Subscription]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM subscriptions ORDER BY name").fetchall()
        return [_row_to_subscription(r) for r in rows]

    def replace_subscription_nodes(self, sub_id: str, nodes: List[Dict[str, Any]]) -> None:
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE subscriptions SET nodes_json=?, updated_at=? WHERE id=?",
                (json.dumps(nodes, ensure_ascii=False), now(), sub_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"subscription not found: {sub_id}")

    def mark_pipeline_run(self, sub_id: str, ts: float) -> None:
        with self._db() as conn:
            conn.execute("UPDATE subscriptions SET pipeline_last_run=? WHERE id=?", (ts, sub_id))

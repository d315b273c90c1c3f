"""
Probe process manager - 探针进程管理

Runs one throwaway sing-box instance used only for measuring candidate nodes,
fully separate from the production proxy process. At most one probe is alive
at a time; all state sits behind a single lock.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from typing import IO, Any, Dict, List, Optional, Sequence, Tuple

from ..core.settings import (
    DATA_DIR,
    PROBE_READY_POLL,
    PROBE_READY_TIMEOUT,
    PROBE_STOP_GRACE,
    SINGBOX_PATH,
    probe_log_path,
)
from ..core.events import EventBus
from ..core.workers import spawn_worker
from ..models import UnifiedNode
from ..utils.normalize import dedupe_by_key
from .check_errors import KIND_DUPLICATE_TAG, KIND_OUTBOUND_INDEX, CheckErrorParser
from .clash_api import ClashAPI
from .probe_config import PROBE_TAG_PREFIX, SYSTEM_OUTBOUNDS, ProbeTagMap, build_probe_config

logger = logging.getLogger(__name__)

CHECK_TIMEOUT = 30.0
MIN_VALIDATION_ITERATIONS = 50


# ==================== errors ====================

class ProbeError(Exception):
    """Probe lifecycle error base."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProbeBinaryNotFound(ProbeError):
    pass


class ProbePortError(ProbeError):
    pass


class ProbeStartError(ProbeError):
    pass


class ProbeReadinessTimeout(ProbeError):
    pass


class ProbeValidationError(ProbeError):
    def __init__(self, message: str, broken_nodes: Sequence["BrokenNode"] = ()):
        super().__init__(message)
        self.broken_nodes: List[BrokenNode] = list(broken_nodes)


class AllNodesBroken(ProbeValidationError):
    def __init__(self, broken_nodes: Sequence["BrokenNode"]):
        parts = [f"{b.tag or b.key} ({b.error})" for b in broken_nodes[:20]]
        if len(broken_nodes) > 20:
            parts.append(f"... +{len(broken_nodes) - 20} more")
        super().__init__("all nodes are broken: " + "; ".join(parts), broken_nodes)


# ==================== values ====================

@dataclass(frozen=True)
class BrokenNode:
    index: int
    tag: str
    error: str
    key: str = ""


@dataclass
class ProbeStatus:
    running: bool = False
    port: int = 0
    geo_port: int = 0
    pid: int = 0
    node_count: int = 0
    started_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "running": self.running,
            "port": self.port,
            "geo_port": self.geo_port,
            "pid": self.pid,
            "node_count": self.node_count,
        }
        if self.started_at:
            d["started_at"] = self.started_at
        return d


@dataclass(frozen=True)
class ProbeSession:
    """What a caller needs to measure through the running probe."""

    control_port: int
    geo_port: int
    tag_map: ProbeTagMap
    broken_nodes: Tuple[BrokenNode, ...] = ()

    def api(self) -> ClashAPI:
        return ClashAPI(self.control_port)


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def node_set_key(nodes: Sequence[UnifiedNode]) -> Tuple[str, ...]:
    return tuple(sorted({n.key for n in nodes}))


# ==================== process handle ====================

@dataclass
class ProbeProcess:
    """Scoped handle for one engine process.

    ``close()`` terminates the process and removes its temp config; it is safe
    to call any number of times, from any exit path.
    """

    proc: subprocess.Popen
    config_path: str
    control_port: int
    geo_port: int
    tag_map: ProbeTagMap
    node_set: Tuple[str, ...]
    valid_set: Tuple[str, ...] = ()
    broken_nodes: Tuple[BrokenNode, ...] = ()
    log_file: Optional[IO[bytes]] = None
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return int(self.proc.pid or 0)

    def alive(self) -> bool:
        return self.proc.poll() is None

    def session(self) -> ProbeSession:
        return ProbeSession(self.control_port, self.geo_port, self.tag_map, self.broken_nodes)

    def close(self, grace: float = PROBE_STOP_GRACE) -> None:
        try:
            if self.proc.poll() is None:
                self.proc.terminate()
                try:
                    self.proc.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    logger.warning("probe pid=%s ignored SIGTERM, killing", self.pid)
                    self.proc.kill()
                    self.proc.wait()
        finally:
            _remove_quiet(self.config_path)
            if self.log_file is not None:
                try:
                    self.log_file.close()
                except OSError:
                    pass
                self.log_file = None

    def __enter__(self) -> "ProbeProcess":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def _remove_quiet(path: str) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("failed to remove %s: %s", path, exc)


def _write_temp_config(cfg: Dict[str, Any], prefix: str) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cfg, f, ensure_ascii=False, indent=2)
    except BaseException:
        _remove_quiet(path)
        raise
    return path


# ==================== manager ====================

class ProbeManager:
    def __init__(
        self,
        singbox_path: str = SINGBOX_PATH,
        data_dir: str = DATA_DIR,
        parser: Optional[CheckErrorParser] = None,
        ready_timeout: float = PROBE_READY_TIMEOUT,
        ready_poll: float = PROBE_READY_POLL,
        stop_grace: float = PROBE_STOP_GRACE,
        bus: Optional[EventBus] = None,
    ):
        self._singbox_path = singbox_path
        self.data_dir = data_dir
        self._parser = parser or CheckErrorParser()
        self.ready_timeout = ready_timeout
        self.ready_poll = ready_poll
        self.stop_grace = stop_grace
        self.bus = bus
        self._lock = threading.Lock()
        self._current: Optional[ProbeProcess] = None
        self.starts = 0

    # ---------- public lifecycle ----------

    def start(self, nodes: Sequence[UnifiedNode]) -> ProbeSession:
        """Stop any previous probe and start a fresh one for nodes."""
        with self._lock:
            return self._start_locked(dedupe_by_key(nodes)).session()

    def ensure_running(self, nodes: Sequence[UnifiedNode]) -> ProbeSession:
        """Reuse the live probe if it was started for the same identity set.

        Asking for exactly the subset that passed validation also reuses it,
        so dropping the excluded nodes does not force a restart.
        """
        unique = dedupe_by_key(nodes)
        wanted = node_set_key(unique)
        with self._lock:
            cur = self._current
            if cur is not None and cur.alive():
                if cur.node_set == wanted:
                    return cur.session()
                if cur.valid_set == wanted:
                    return replace(cur.session(), broken_nodes=())
            return self._start_locked(unique).session()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    # ---------- accessors ----------

    def is_running(self) -> bool:
        with self._lock:
            return self._current is not None and self._current.alive()

    def port(self) -> int:
        with self._lock:
            return self._current.control_port if self._current is not None else 0

    def status(self) -> ProbeStatus:
        with self._lock:
            cur = self._current
            if cur is None or not cur.alive():
                return ProbeStatus()
            return ProbeStatus(
                running=True,
                port=cur.control_port,
                geo_port=cur.geo_port,
                pid=cur.pid,
                node_count=len(cur.tag_map),
                started_at=cur.started_at,
            )

    # ---------- internals (lock held) ----------

    def _stop_locked(self) -> None:
        cur = self._current
        if cur is None:
            return
        self._current = None
        pid = cur.pid
        cur.close(self.stop_grace)
        logger.info("probe sing-box stopped, pid=%s", pid)
        self._publish("probe:stop", {"pid": pid})

    def _start_locked(self, nodes: List[UnifiedNode]) -> ProbeProcess:
        self._stop_locked()
        if not nodes:
            raise ProbeError("no nodes to probe")
        binary = self._singbox_path
        if not binary or not os.path.isfile(binary):
            raise ProbeBinaryNotFound(f"sing-box binary not found: {binary}")

        try:
            control_port = get_free_port()
            geo_port = get_free_port()
            while geo_port == control_port:
                geo_port = get_free_port()
        except OSError as exc:
            raise ProbePortError(f"failed to find free port: {exc}") from exc

        valid, broken = self.validate_probe_config(nodes, control_port, geo_port)
        cfg, tag_map = build_probe_config(valid, control_port, geo_port)
        config_path = _write_temp_config(cfg, "nodeguard-probe-")

        log_file = self._open_log_sink()
        try:
            proc = subprocess.Popen(
                [binary, "run", "-c", config_path],
                cwd=self.data_dir if os.path.isdir(self.data_dir) else None,
                stdin=subprocess.DEVNULL,
                stdout=log_file if log_file is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            _remove_quiet(config_path)
            if log_file is not None:
                log_file.close()
            raise ProbeStartError(f"failed to start probe sing-box: {exc}") from exc

        handle = ProbeProcess(
            proc=proc,
            config_path=config_path,
            control_port=control_port,
            geo_port=geo_port,
            tag_map=tag_map,
            node_set=node_set_key(nodes),
            valid_set=node_set_key(valid),
            broken_nodes=tuple(broken),
            log_file=log_file,
        )
        self.starts += 1
        logger.info(
            "probe sing-box started, pid=%s port=%s geo=%s nodes=%d broken=%d",
            handle.pid, control_port, geo_port, len(valid), len(broken),
        )
        try:
            self._wait_ready(handle)
        except BaseException:
            handle.close(self.stop_grace)
            raise

        self._current = handle
        spawn_worker(self._monitor, handle, label="probe-monitor")
        self._publish(
            "probe:start",
            {"pid": handle.pid, "port": control_port, "node_count": len(valid), "broken": len(broken)},
        )
        return handle

    def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish_timestamped(event_type, data)

    def _open_log_sink(self) -> Optional[IO[bytes]]:
        path = probe_log_path(self.data_dir)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            return open(path, "ab")
        except OSError as exc:
            logger.warning("probe log sink unavailable (%s): %s", path, exc)
            return None

    def _wait_ready(self, handle: ProbeProcess) -> None:
        api = ClashAPI(handle.control_port)
        started = time.monotonic()
        deadline = started + self.ready_timeout
        while time.monotonic() < deadline:
            time.sleep(self.ready_poll)
            if not handle.alive():
                raise ProbeStartError(f"probe sing-box exited during startup (code {handle.proc.returncode})")
            if api.ping(timeout=1.0):
                logger.info("probe control API ready after %dms", int((time.monotonic() - started) * 1000))
                return
        raise ProbeReadinessTimeout(f"probe sing-box did not become ready within {self.ready_timeout:g}s")

    def _monitor(self, handle: ProbeProcess) -> None:
        handle.proc.wait()
        with self._lock:
            # a newer probe may have replaced this one already
            if self._current is not handle:
                return
            self._current = None
            handle.close(self.stop_grace)
        logger.warning("probe sing-box exited unexpectedly, pid=%s code=%s", handle.pid, handle.proc.returncode)
        self._publish("probe:stop", {"pid": handle.pid, "exit_code": handle.proc.returncode, "unexpected": True})

    # ---------- validation ----------

    def _check_config(self, cfg: Dict[str, Any]) -> Tuple[bool, str]:
        """Dry-run ``sing-box check``; returns (ok, combined output)."""
        path = _write_temp_config(cfg, "nodeguard-probe-validate-")
        try:
            p = subprocess.run(
                [self._singbox_path, "check", "-c", path],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=CHECK_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return False, "sing-box check timed out"
        except OSError as exc:
            raise ProbeBinaryNotFound(f"cannot run sing-box check: {exc}") from exc
        finally:
            _remove_quiet(path)
        return p.returncode == 0, p.stdout or ""

    def validate_probe_config(
        self, nodes: Sequence[UnifiedNode], control_port: int, geo_port: int
    ) -> Tuple[List[UnifiedNode], List[BrokenNode]]:
        """Exclude nodes the engine rejects until the config validates.

        Raises AllNodesBroken when nothing is left, ProbeValidationError when
        the output names no further node or the loop does not converge.
        """
        excluded: Dict[int, BrokenNode] = {}
        broken: List[BrokenNode] = []
        max_iterations = max(len(nodes) + 2, MIN_VALIDATION_ITERATIONS)

        for _ in range(max_iterations):
            valid_idx = [i for i in range(len(nodes)) if i not in excluded]
            if not valid_idx:
                raise AllNodesBroken(broken)
            valid = [nodes[i] for i in valid_idx]
            cfg, _tag_map = build_probe_config(valid, control_port, geo_port)
            ok, output = self._check_config(cfg)
            if ok:
                if broken:
                    logger.info(
                        "excluded %d broken node(s): %s", len(broken), ", ".join(b.tag for b in broken)
                    )
                return valid, broken

            found_new = False
            for ex in self._parser.parse(output):
                if ex.kind == KIND_OUTBOUND_INDEX:
                    pos = ex.index - SYSTEM_OUTBOUNDS
                elif ex.kind == KIND_DUPLICATE_TAG and ex.tag.startswith(PROBE_TAG_PREFIX):
                    try:
                        pos = int(ex.tag[len(PROBE_TAG_PREFIX):])
                    except ValueError:
                        continue
                else:
                    continue
                if pos < 0 or pos >= len(valid):
                    continue
                orig = valid_idx[pos]
                if orig in excluded:
                    continue
                node = nodes[orig]
                bn = BrokenNode(index=orig, tag=node.display_or_tag(), error=ex.message, key=node.key)
                excluded[orig] = bn
                broken.append(bn)
                found_new = True
                logger.warning("broken node detected: %s - %s", bn.tag, bn.error)

            if not found_new:
                raise ProbeValidationError(f"probe config check failed: {output.strip()[:2000]}", broken)

        reason = f"probe config validation exceeded max iterations ({max_iterations})"
        all_broken = list(broken) + [
            BrokenNode(index=i, tag=n.display_or_tag(), error=reason, key=n.key)
            for i, n in enumerate(nodes)
            if i not in excluded
        ]
        raise ProbeValidationError(reason, all_broken)

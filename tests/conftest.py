from __future__ import annotations

import stat
import sys
import textwrap
from typing import Any, Dict, List, Optional, Sequence

import pytest

from nodeguard.app.db import SQLiteStore
from nodeguard.app.models import STATUS_PENDING, UnifiedNode
from nodeguard.app.services.checks import HealthResult, SiteResult
from nodeguard.app.services.probe import BrokenNode, ProbeError, ProbeSession
from nodeguard.app.services.probe_config import build_probe_config

FAKE_ENGINE = textwrap.dedent(
    '''
    import json
    import os
    import signal
    import sys
    import time
    from http.server import BaseHTTPRequestHandler, HTTPServer

    cmd = sys.argv[1]
    path = sys.argv[sys.argv.index("-c") + 1]
    with open(path, encoding="utf-8") as f:
        cfg = json.load(f)

    if cmd == "check":
        for i, ob in enumerate(cfg.get("outbounds", [])):
            if ob.get("type") == "broken":
                sys.stderr.write("FATAL[0000] outbounds[%d].type: unknown outbound type: broken\\n" % i)
                sys.exit(1)
        sys.exit(0)

    if os.environ.get("FAKE_SINGBOX_MODE") == "hang":
        while True:
            time.sleep(1)

    port = int(cfg["experimental"]["clash_api"]["external_controller"].rsplit(":", 1)[1])

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            body = b'{"hello":"clash"}'
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    def _term(*_args):
        sys.exit(0)

    signal.signal(signal.SIGTERM, _term)
    HTTPServer(("127.0.0.1", port), Handler).serve_forever()
    '''
)


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    s = SQLiteStore(str(tmp_path / "nodeguard.db"))
    s.init_db()
    return s


@pytest.fixture
def fake_singbox(tmp_path) -> str:
    script = tmp_path / "fake_singbox.py"
    script.write_text(FAKE_ENGINE, encoding="utf-8")
    wrapper = tmp_path / "sing-box"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(wrapper)


def make_node(i: int, type_: str = "shadowsocks", tag: Optional[str] = None, **kw: Any) -> UnifiedNode:
    return UnifiedNode(
        tag=tag if tag is not None else f"node-{i}",
        type=type_,
        server=f"10.0.0.{i}",
        server_port=8388,
        extra={"method": "aes-128-gcm", "password": "secret"},
        **kw,
    )


def add_nodes(store: SQLiteStore, count: int, status: str = STATUS_PENDING, start: int = 1) -> List[UnifiedNode]:
    out = []
    for i in range(start, start + count):
        n = make_node(i, status=status)
        store.add_node(n)
        out.append(n)
    return out


class FakeProbe:
    """ensure_running() stand-in; records every requested identity set."""

    def __init__(self, broken_keys: Sequence[str] = (), error: Optional[ProbeError] = None):
        self.calls: List[List[str]] = []
        self.broken_keys = set(broken_keys)
        self.error = error

    def ensure_running(self, nodes: Sequence[UnifiedNode]) -> ProbeSession:
        self.calls.append(sorted(n.key for n in nodes))
        if self.error is not None:
            raise self.error
        broken = tuple(
            BrokenNode(index=i, tag=n.tag, error="unknown outbound type: broken", key=n.key)
            for i, n in enumerate(nodes)
            if n.key in self.broken_keys
        )
        valid = [n for n in nodes if n.key not in self.broken_keys]
        _cfg, tag_map = build_probe_config(valid, 1, 0)
        return ProbeSession(control_port=1, geo_port=0, tag_map=tag_map, broken_nodes=broken)


class FakeChecker:
    def __init__(self, alive_keys: Sequence[str] = (), site_fail_keys: Sequence[str] = ()):
        self.alive_keys = set(alive_keys)
        self.site_fail_keys = set(site_fail_keys)
        self.health_calls = 0
        self.site_calls = 0

    def health_check(self, nodes: Sequence[UnifiedNode], session: ProbeSession) -> Dict[str, HealthResult]:
        self.health_calls += 1
        return {
            n.key: HealthResult(alive=n.key in self.alive_keys, latency_ms=120 if n.key in self.alive_keys else 0)
            for n in nodes
        }

    def site_check(
        self, nodes: Sequence[UnifiedNode], session: ProbeSession, targets: Optional[Sequence[str]] = None
    ) -> Dict[str, SiteResult]:
        self.site_calls += 1
        out: Dict[str, SiteResult] = {}
        for n in nodes:
            delay = 0 if n.key in self.site_fail_keys else 200
            out[n.key] = SiteResult(sites={t: delay for t in (targets or ["chatgpt.com"])})
        return out


@pytest.fixture(autouse=True)
def _no_env_proxy(monkeypatch):
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("FAKE_SINGBOX_MODE", raising=False)

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from nodeguard.app.services.clash_api import ClashAPI, ClashAPIConnectionError, ClashAPIResponseError
from nodeguard.app.services.probe import get_free_port


class _Controller(BaseHTTPRequestHandler):
    state = {"mode": "rule", "selected": ""}

    def _send(self, code, body):
        raw = json.dumps(body).encode() if body is not None else b""
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _body(self):
        n = int(self.headers.get("Content-Length") or 0)
        return json.loads(self.rfile.read(n) or b"{}")

    def do_GET(self):
        if self.path == "/":
            self._send(200, {"hello": "clash"})
        elif self.path == "/configs":
            self._send(200, {"mode": self.state["mode"]})
        elif self.path == "/connections":
            self._send(200, {"connections": [{"id": "c1"}], "uploadTotal": 10, "downloadTotal": 20})
        elif self.path.startswith("/proxies/probe_0/delay"):
            self._send(200, {"delay": 42})
        elif self.path.startswith("/proxies/"):
            self._send(504, {"message": "timeout"})
        else:
            self._send(404, {"message": "not found"})

    def do_PATCH(self):
        self.state["mode"] = self._body()["mode"]
        self._send(204, None)

    def do_PUT(self):
        if self.path != "/proxies/GeoSelector":
            self._send(404, {"message": "proxy not found"})
            return
        self.state["selected"] = self._body()["name"]
        self._send(204, None)

    def log_message(self, *args):
        pass


@pytest.fixture
def controller():
    srv = HTTPServer(("127.0.0.1", 0), _Controller)
    th = threading.Thread(target=srv.serve_forever, daemon=True)
    th.start()
    _Controller.state = {"mode": "rule", "selected": ""}
    yield ClashAPI(srv.server_address[1])
    srv.shutdown()
    srv.server_close()


def test_ping_and_delay(controller):
    assert controller.ping()
    assert controller.proxy_delay("probe_0", "https://example.com") == 42
    assert controller.proxy_delay("probe_1", "https://example.com") == 0
    assert controller.proxy_delay("probe_0", "") == 0


def test_mode_round_trip(controller):
    assert controller.get_mode() == "rule"
    controller.set_mode("global")
    assert controller.get_mode() == "global"


def test_connections(controller):
    assert controller.connections() == {"connections": [{"id": "c1"}], "upload_total": 10, "download_total": 20}


def test_switch_selector(controller):
    controller.switch_selector("GeoSelector", "probe_3")
    assert _Controller.state["selected"] == "probe_3"
    with pytest.raises(ClashAPIResponseError) as exc_info:
        controller.switch_selector("Missing", "probe_3")
    assert exc_info.value.status_code == 404


def test_unreachable_controller():
    api = ClashAPI(get_free_port(), timeout=0.5)
    assert api.ping(timeout=0.5) is False
    assert api.proxy_delay("probe_0", "https://example.com", 500) == 0
    with pytest.raises(ClashAPIConnectionError):
        api.get_mode()

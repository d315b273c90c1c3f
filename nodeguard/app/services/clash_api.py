"""
Probe control API client - 探针 Clash API 客户端

The probe engine exposes a Clash-compatible controller on 127.0.0.1. Only the
endpoints the verification pipeline needs are wrapped here.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..core.settings import DELAY_TIMEOUT_MS, HEALTH_CHECK_URL

DEFAULT_TIMEOUT = 5.0


class ClashAPIError(Exception):
    """Control API error base."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ClashAPIConnectionError(ClashAPIError):
    pass


class ClashAPIResponseError(ClashAPIError):
    pass


class ClashAPI:
    def __init__(self, port: int, secret: str = "", timeout: float = DEFAULT_TIMEOUT):
        self.port = int(port)
        self.secret = secret
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def _headers(self) -> Dict[str, str]:
        if self.secret:
            return {"Authorization": f"Bearer {self.secret}"}
        return {}

    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs: Any) -> httpx.Response:
        try:
            # trust_env=False: never route controller calls through an environment proxy
            with httpx.Client(timeout=timeout or self.timeout, trust_env=False) as client:
                r = client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise ClashAPIConnectionError(f"clash API request failed: {exc}") from exc
        if r.status_code >= 400:
            raise ClashAPIResponseError(
                f"clash API error {r.status_code}: {r.text.strip()[:240]}", status_code=r.status_code
            )
        return r

    def ping(self, timeout: float = 1.0) -> bool:
        """Root readiness endpoint."""
        try:
            self._request("GET", "/", timeout=timeout)
            return True
        except ClashAPIError:
            return False

    def proxy_delay(self, proxy_tag: str, url: str = HEALTH_CHECK_URL, timeout_ms: int = DELAY_TIMEOUT_MS) -> int:
        """Delay in ms through proxy_tag; 0 means timeout or failure."""
        if not (url or "").strip():
            return 0
        if timeout_ms <= 0:
            timeout_ms = DELAY_TIMEOUT_MS
        try:
            r = self._request(
                "GET",
                f"/proxies/{quote(proxy_tag, safe='')}/delay",
                timeout=(timeout_ms + 2000) / 1000.0,
                params={"url": url, "timeout": int(timeout_ms)},
            )
            data = r.json()
        except (ClashAPIError, ValueError):
            return 0
        try:
            return max(0, int((data or {}).get("delay") or 0))
        except (TypeError, ValueError, AttributeError):
            return 0

    def switch_selector(self, selector_tag: str, proxy_tag: str) -> None:
        self._request("PUT", f"/proxies/{quote(selector_tag, safe='')}", json={"name": proxy_tag})

    def _json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        r = self._request(method, path, **kwargs)
        try:
            data = r.json()
        except ValueError as exc:
            raise ClashAPIResponseError(f"clash API returned non-JSON for {path}") from exc
        if not isinstance(data, dict):
            raise ClashAPIResponseError(f"clash API returned unexpected shape for {path}")
        return data

    def get_mode(self) -> str:
        return str(self._json("GET", "/configs").get("mode") or "")

    def set_mode(self, mode: str) -> None:
        self._request("PATCH", "/configs", json={"mode": mode})

    def connections(self) -> Dict[str, Any]:
        """Open connections plus upload/download totals."""
        data = self._json("GET", "/connections")
        conns = data.get("connections")
        return {
            "connections": conns if isinstance(conns, list) else [],
            "upload_total": int(data.get("uploadTotal") or 0),
            "download_total": int(data.get("downloadTotal") or 0),
        }

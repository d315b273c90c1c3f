from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List

import httpx

from ..db import SQLiteStore, StoreError
from ..models import Subscription

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30.0
USER_AGENT = "nodeguard/1.0 (sing-box)"

# selector/urltest/direct/... carry no endpoint
_NON_NODE_TYPES = {"direct", "block", "dns", "selector", "urltest"}


class SubscriptionError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def parse_outbounds(payload: Any) -> List[Dict[str, Any]]:
    """Endpoint outbounds from a sing-box config or a bare outbound list."""
    if isinstance(payload, dict):
        payload = payload.get("outbounds")
    if not isinstance(payload, list):
        raise SubscriptionError("expected sing-box JSON with an outbounds list")
    out: List[Dict[str, Any]] = []
    for ob in payload:
        if not isinstance(ob, dict):
            continue
        if str(ob.get("type") or "").strip().lower() in _NON_NODE_TYPES:
            continue
        if not ob.get("server") or not ob.get("server_port"):
            continue
        out.append(ob)
    return out


class SubscriptionRefresher:
    def __init__(self, store: SQLiteStore, timeout: float = FETCH_TIMEOUT):
        self.store = store
        self.timeout = timeout

    def fetch(self, url: str) -> List[Dict[str, Any]]:
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                r = client.get(url, headers={"User-Agent": USER_AGENT})
                r.raise_for_status()
                payload = r.json()
        except httpx.HTTPStatusError as exc:
            raise SubscriptionError(f"subscription HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SubscriptionError(f"subscription request failed: {exc}") from exc
        except ValueError as exc:
            raise SubscriptionError("subscription is not JSON") from exc
        return parse_outbounds(payload)

    def refresh(self, sub: Subscription) -> int:
        nodes = self.fetch(sub.url)
        self.store.replace_subscription_nodes(sub.id, nodes)
        logger.info("subscription %s refreshed: %d nodes", sub.name, len(nodes))
        return len(nodes)

    def refresh_all(self) -> int:
        """Refresh every enabled subscription; one failing source does not stop the rest."""
        total = 0
        for sub in self.store.get_subscriptions():
            if not sub.enabled or not sub.url:
                continue
            try:
                total += self.refresh(sub)
            except (SubscriptionError, StoreError, sqlite3.Error) as exc:
                logger.warning("subscription %s refresh failed: %s", sub.name, exc)
        return total

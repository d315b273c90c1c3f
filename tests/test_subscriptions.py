from __future__ import annotations

import pytest

from nodeguard.app.models import Subscription
from nodeguard.app.services.subscriptions import SubscriptionError, SubscriptionRefresher, parse_outbounds


def test_parse_full_config_keeps_endpoints_only():
    payload = {
        "outbounds": [
            {"type": "selector", "tag": "select", "outbounds": ["a"]},
            {"type": "direct", "tag": "direct"},
            {"type": "vless", "tag": "a", "server": "1.2.3.4", "server_port": 443, "uuid": "x"},
            {"type": "trojan", "tag": "no-port", "server": "5.6.7.8"},
            "garbage",
        ]
    }
    assert [ob["tag"] for ob in parse_outbounds(payload)] == ["a"]


def test_parse_bare_list():
    assert len(parse_outbounds([{"type": "shadowsocks", "server": "h", "server_port": 1}])) == 1


@pytest.mark.parametrize("payload", [{"nodes": []}, "text", None])
def test_parse_rejects_other_shapes(payload):
    with pytest.raises(SubscriptionError):
        parse_outbounds(payload)


def test_refresh_all_continues_past_failures(store, monkeypatch):
    store.upsert_subscription(Subscription(id="bad", name="a-bad", url="http://bad.invalid/sub"))
    store.upsert_subscription(Subscription(id="good", name="b-good", url="http://good.invalid/sub"))
    store.upsert_subscription(Subscription(id="off", name="c-off", url="http://off.invalid/sub", enabled=False))
    refresher = SubscriptionRefresher(store)
    fetched = []

    def fake_fetch(url):
        fetched.append(url)
        if "bad" in url:
            raise SubscriptionError("subscription HTTP 500")
        return [{"type": "vmess", "tag": "n", "server": "9.9.9.9", "server_port": 443}]

    monkeypatch.setattr(refresher, "fetch", fake_fetch)

    assert refresher.refresh_all() == 1
    assert fetched == ["http://bad.invalid/sub", "http://good.invalid/sub"]
    subs = {s.id: s for s in store.get_subscriptions()}
    assert subs["good"].nodes[0]["server"] == "9.9.9.9"
    assert subs["good"].updated_at is not None
    assert subs["bad"].nodes == []

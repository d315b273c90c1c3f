from __future__ import annotations

import threading
import time

from nodeguard.app.core.events import EventBus


def test_publish_fans_out_to_every_subscriber():
    bus = EventBus()
    a = bus.subscribe("a")
    b = bus.subscribe("b")

    assert bus.publish("verify:start", {"pending_count": 1}) == 2

    for sub in (a, b):
        ev = sub.get(timeout=1)
        assert ev is not None
        assert ev.type == "verify:start"
        assert ev.data == {"pending_count": 1}
    assert bus.published == 1


def test_full_subscriber_drops_without_blocking_others():
    bus = EventBus(buffer_size=2)
    slow = bus.subscribe("slow")
    fast = bus.subscribe("fast")

    received = []
    done = threading.Event()

    def _drain():
        while len(received) < 5:
            ev = fast.get(timeout=1)
            if ev is None:
                break
            received.append(ev.data)
        done.set()

    th = threading.Thread(target=_drain)
    th.start()

    started = time.monotonic()
    for i in range(5):
        bus.publish("tick", i)
        # let the fast reader keep up
        time.sleep(0.02)
    assert time.monotonic() - started < 2

    assert done.wait(2)
    th.join()
    assert received == [0, 1, 2, 3, 4]
    assert slow.delivered == 2
    assert slow.dropped == 3
    assert slow.pending() == 2


def test_unsubscribe_closes_and_drains():
    bus = EventBus()
    sub = bus.subscribe("x")
    bus.publish("a", 1)
    bus.unsubscribe("x")

    assert sub.closed
    assert bus.subscriber_count() == 0
    ev = sub.get(timeout=0.1)
    assert ev is not None and ev.type == "a"
    assert sub.get(timeout=0.1) is None
    # publishing after close reaches nobody
    assert bus.publish("b", 2) == 0


def test_subscribe_same_id_replaces_previous():
    bus = EventBus()
    old = bus.subscribe("dup")
    new = bus.subscribe("dup")

    assert old.closed
    assert not new.closed
    assert bus.subscriber_count() == 1


def test_publish_timestamped_stamps_payload():
    bus = EventBus()
    sub = bus.subscribe("t")
    bus.publish_timestamped("pipeline:start", {"x": 1})
    ev = sub.get(timeout=1)
    assert ev is not None
    assert ev.data["x"] == 1
    assert "T" in ev.data["timestamp"]

    bus.publish_timestamped("pipeline:stop", None)
    ev = sub.get(timeout=1)
    assert set(ev.data) == {"timestamp"}


def test_every_event_carries_publish_time():
    bus = EventBus()
    sub = bus.subscribe("t")

    bus.publish("verify:health_progress", {"current": 1, "total": 2})
    bus.publish("verify:health_start")
    bus.publish_timestamped("probe:start", {"pid": 7})

    plain, empty, stamped = (sub.get(timeout=1) for _ in range(3))
    assert plain.timestamp
    assert plain.payload() == {"current": 1, "total": 2, "timestamp": plain.timestamp}
    assert plain.data == {"current": 1, "total": 2}
    assert empty.payload() == {"timestamp": empty.timestamp}
    assert stamped.payload()["timestamp"] == stamped.data["timestamp"]
    assert '"timestamp"' in plain.to_json()

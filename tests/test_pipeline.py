from __future__ import annotations

import threading

from conftest import FakeChecker, FakeProbe, make_node
from nodeguard.app.models import STATUS_ARCHIVED, STATUS_PENDING, STATUS_VERIFIED, Subscription
from nodeguard.app.services.pipeline import PipelineRunner, subscription_nodes
from nodeguard.app.services.probe import ProbeStartError


def _sub(nodes, **kw) -> Subscription:
    kw.setdefault("auto_pipeline", True)
    return Subscription(id="sub-1", name="main", nodes=[n.to_outbound() for n in nodes], **kw)


def test_subscription_nodes_skips_incomplete_entries():
    sub = _sub([make_node(1)])
    sub.nodes.append({"tag": "no-server", "type": "vmess", "server_port": 443})
    sub.nodes.append({"tag": "no-type", "server": "10.9.9.9", "server_port": 443})

    nodes = subscription_nodes(sub)

    assert [n.tag for n in nodes] == ["node-1"]
    assert nodes[0].source == "sub-1"


def test_alive_new_nodes_are_copied_as_pending(store):
    a, b, c = make_node(1), make_node(2), make_node(3)
    known = make_node(3, status=STATUS_VERIFIED)
    store.add_node(known)
    sub = _sub([a, b, c])
    store.upsert_subscription(sub)

    changes = []
    runner = PipelineRunner(
        store, FakeProbe(), FakeChecker(alive_keys=[a.key, c.key]), on_change=lambda: changes.append(1)
    )
    log = runner.run(sub)

    assert log.error == ""
    assert (log.total_nodes, log.checked_nodes, log.alive_nodes) == (3, 3, 2)
    assert (log.copied_nodes, log.skipped_nodes) == (1, 1)
    copied = store.find_node(a.server, a.server_port)
    assert copied.status == STATUS_PENDING
    assert copied.source == "sub-1"
    assert store.find_node(b.server, b.server_port) is None
    assert store.find_node(c.server, c.server_port).status == STATUS_VERIFIED
    assert changes == [1]

    saved = store.get_pipeline_logs("sub-1")
    assert [x.copied_nodes for x in saved] == [1]
    assert store.get_subscriptions()[0].pipeline_last_run == log.timestamp


def test_remove_dead_drops_departed_and_failing_nodes(store):
    keep, gone, failing = make_node(1), make_node(2), make_node(3)
    for n in (keep, gone):
        n.source = "sub-1"
        store.add_node(n)
    failing.source = "sub-1"
    failing.status = STATUS_ARCHIVED
    failing.consecutive_failures = 5
    store.add_node(failing)
    other = make_node(4, source="sub-2")
    store.add_node(other)

    sub = _sub([keep, failing], remove_dead=True)
    runner = PipelineRunner(store, FakeProbe(), FakeChecker(alive_keys=[keep.key]))
    log = runner.run(sub)

    assert log.removed_stale == 2
    assert store.find_node(keep.server, keep.server_port) is not None
    assert store.find_node(gone.server, gone.server_port) is None
    assert store.find_node(failing.server, failing.server_port) is None
    assert store.find_node(other.server, other.server_port) is not None


def test_stale_nodes_kept_without_remove_dead(store):
    gone = make_node(2, source="sub-1")
    store.add_node(gone)

    log = PipelineRunner(store, FakeProbe(), FakeChecker()).run(_sub([make_node(1)]))

    assert log.removed_stale == 0
    assert store.find_node(gone.server, gone.server_port) is not None


def test_probe_failure_is_logged(store):
    sub = _sub([make_node(1)])
    store.upsert_subscription(sub)
    runner = PipelineRunner(store, FakeProbe(error=ProbeStartError("sing-box exited: 1")), FakeChecker())

    log = runner.run(sub)

    assert log.error == "health check failed: sing-box exited: 1"
    assert log.copied_nodes == 0
    assert store.get_pipeline_logs("sub-1")[0].error == log.error


def test_run_all_only_touches_auto_pipeline_subscriptions(store):
    a, b = make_node(1), make_node(2)
    store.upsert_subscription(Subscription(id="on", name="on", auto_pipeline=True, nodes=[a.to_outbound()]))
    store.upsert_subscription(Subscription(id="off", name="off", auto_pipeline=False, nodes=[b.to_outbound()]))
    store.upsert_subscription(
        Subscription(id="disabled", name="disabled", enabled=False, auto_pipeline=True, nodes=[b.to_outbound()])
    )
    probe = FakeProbe()

    changed = PipelineRunner(store, probe, FakeChecker(alive_keys=[a.key, b.key])).run_all()

    assert changed is True
    assert probe.calls == [[a.key]]
    assert store.find_node(b.server, b.server_port) is None


def test_empty_subscription_skips_probe(store):
    probe = FakeProbe()
    log = PipelineRunner(store, probe, FakeChecker()).run(_sub([]))
    assert log.total_nodes == 0
    assert probe.calls == []


def test_shares_lock_with_verification(store):
    lock = threading.Lock()
    probe = FakeProbe()
    runner = PipelineRunner(store, probe, FakeChecker(), lock=lock)
    done = threading.Event()

    with lock:
        th = threading.Thread(target=lambda: (runner.run(_sub([make_node(1)])), done.set()))
        th.start()
        assert not done.wait(0.2)
        assert probe.calls == []
    th.join(5)
    assert done.is_set()
    assert len(probe.calls) == 1

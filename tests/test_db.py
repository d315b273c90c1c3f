from __future__ import annotations

import pytest

from conftest import add_nodes, make_node
from nodeguard.app.db import StoreError
from nodeguard.app.models import (
    STATUS_ARCHIVED,
    STATUS_PENDING,
    STATUS_VERIFIED,
    GeoData,
    Settings,
    VerificationLog,
)


def test_init_db_is_repeatable(store):
    store.init_db()
    assert store.get_node_counts() == {STATUS_PENDING: 0, STATUS_VERIFIED: 0, STATUS_ARCHIVED: 0}


def test_node_round_trip(store):
    n = make_node(1, display_name="Tokyo 1", source="sub-a")
    store.add_node(n)

    got = store.get_node(n.id)
    assert got.key == "10.0.0.1:8388"
    assert got.display_or_tag() == "Tokyo 1"
    assert got.extra == {"method": "aes-128-gcm", "password": "secret"}
    assert got.to_outbound()["password"] == "secret"
    assert store.find_node("10.0.0.1", 8388).id == n.id


def test_duplicate_identity_is_rejected(store):
    store.add_node(make_node(1))
    with pytest.raises(StoreError):
        store.add_node(make_node(1, tag="renamed"))


def test_failure_counter_and_transitions(store):
    (n,) = add_nodes(store, 1)

    assert store.increment_consecutive_failures(n.id) == 1
    assert store.increment_consecutive_failures(n.id) == 2
    assert store.get_consecutive_failures(n.server, n.server_port) == 2

    store.promote_node(n.id)
    got = store.get_node(n.id)
    assert got.status == STATUS_VERIFIED
    assert got.consecutive_failures == 0
    assert got.promoted_at is not None

    store.increment_consecutive_failures(n.id)
    store.demote_node(n.id)
    got = store.get_node(n.id)
    assert got.status == STATUS_PENDING
    assert got.consecutive_failures == 1
    assert got.promoted_at is None

    store.archive_node(n.id)
    assert store.get_node(n.id).archived_at is not None
    store.unarchive_node(n.id)
    assert store.get_node(n.id).status == STATUS_PENDING


def test_missing_node_raises(store):
    for op in (store.promote_node, store.demote_node, store.archive_node, store.increment_consecutive_failures):
        with pytest.raises(StoreError, match="node not found"):
            op(404)
    assert store.get_consecutive_failures("10.9.9.9", 1) == 0


def test_counts_and_status_filter(store):
    add_nodes(store, 2, STATUS_PENDING)
    add_nodes(store, 1, STATUS_VERIFIED, start=3)
    add_nodes(store, 3, STATUS_ARCHIVED, start=4)

    assert store.get_node_counts() == {STATUS_PENDING: 2, STATUS_VERIFIED: 1, STATUS_ARCHIVED: 3}
    assert len(store.get_nodes(STATUS_ARCHIVED)) == 3
    assert len(store.get_nodes()) == 6


def test_settings_defaults_and_update(store):
    assert store.get_settings() == Settings()

    s = store.update_settings(verification_interval=5, archive_threshold=0, site_check_targets=["a.com", " "])

    assert s.verification_interval == 5
    assert s.effective_archive_threshold() == Settings().archive_threshold
    assert s.site_check_targets == ["a.com"]

    with pytest.raises(StoreError, match="unknown setting"):
        store.update_settings(bogus=1)


def test_verification_logs_newest_first(store):
    store.add_verification_log(VerificationLog(timestamp=1.0, pending_checked=1))
    store.add_verification_log(VerificationLog(timestamp=2.0, pending_checked=2, error="boom"))

    logs = store.get_verification_logs(10)

    assert [x.pending_checked for x in logs] == [2, 1]
    assert logs[0].error == "boom"
    assert logs[0].id > logs[1].id


def test_unsupported_nodes_upsert_by_identity(store):
    store.add_unsupported_node("10.0.0.1", 8388, "a", "first")
    store.add_unsupported_node("10.0.0.1", 8388, "a", "second")

    rows = store.list_unsupported_nodes()
    assert len(rows) == 1
    assert rows[0]["error"] == "second"


def test_geo_data_updates_node_country(store):
    (n,) = add_nodes(store, 1)
    store.upsert_geo_data(
        GeoData(server=n.server, server_port=n.server_port, status="success", country_code="JP", country="Japan")
    )
    store.update_node_country(n.server, n.server_port, "JP", "🇯🇵")

    geo = store.get_geo_data_bulk([n.key])
    assert geo[n.key].country_code == "JP"
    assert store.get_node(n.id).country == "JP"

# SPDX-License-Identifier: Apache-2.0
"""
Mutation Conformance — Model snapshot cache.

Asserts:
  • capture() indexes every entity category (including diagram objects)
  • External store changes mark the snapshot stale; muted ones do not
  • refresh() rebuilds after the quiescence delay
  • Edge identity includes the access qualifier only on qualified kinds
  • Diagnostics report orphans and empty diagrams
"""
from mutation_sdk.batch.snapshot import ModelSnapshot
from mutation_sdk.mock_model_store import ROOT_FOLDER_ID


def _seed(store):
    a = store.create_node(kind="actor", name="Alice")
    b = store.create_node(kind="service", name="Billing")
    e = store.create_edge(kind="serving", source_id=b, target_id=a)
    d = store.create_diagram(name="Main")
    p = store.add_node_to_diagram(d, a, x=0, y=0, width=120, height=55)
    return a, b, e, d, p


def test_snapshot_capture_indexes_categories(store):
    a, b, e, d, p = _seed(store)
    snap = ModelSnapshot(store).capture()

    assert not snap.is_stale
    assert snap.category_of(a) == "nodes"
    assert snap.category_of(e) == "edges"
    assert snap.category_of(d) == "diagrams"
    assert snap.category_of(p) == "placements"
    assert snap.category_of(ROOT_FOLDER_ID) == "folders"
    assert snap.has_entity(a, "nodes")
    assert not snap.has_entity(a, "edges")
    assert snap.find_node("actor", "Alice") == a
    assert snap.find_node("actor", "Bob") is None
    assert snap.find_edge(snap.edge_key("serving", b, a)) == e


def test_snapshot_external_change_marks_stale(store):
    snap = ModelSnapshot(store).capture()
    store.create_node(kind="actor", name="Alice")
    assert snap.is_stale
    assert snap.find_node("actor", "Alice") is None

    snap.ensure_fresh()
    assert not snap.is_stale
    assert snap.find_node("actor", "Alice") is not None


def test_snapshot_undo_redo_mark_stale(store):
    store.create_node(kind="actor", name="Alice")
    snap = ModelSnapshot(store).capture()
    assert store.undo()
    assert snap.is_stale
    snap.capture()
    assert store.redo()
    assert snap.is_stale


def test_snapshot_ignore_changes_mutes_listener(store):
    snap = ModelSnapshot(store).capture()
    with snap.ignore_changes():
        store.create_node(kind="actor", name="Alice")
    assert not snap.is_stale


def test_snapshot_detach_stops_listening(store):
    snap = ModelSnapshot(store).capture()
    snap.detach()
    store.create_node(kind="actor", name="Alice")
    assert not snap.is_stale


async def test_snapshot_refresh_rebuilds(store):
    snap = ModelSnapshot(store, refresh_delay_ms=1).capture()
    count = snap.refresh_count
    with snap.ignore_changes():
        store.create_node(kind="actor", name="Alice")
    await snap.refresh()
    assert snap.refresh_count == count + 1
    assert snap.summary()["nodes"] == 1


def test_snapshot_access_qualifier_in_edge_key(store):
    snap = ModelSnapshot(store)
    assert snap.edge_key("access", "a", "b") == ("access", "a", "b", "write")
    assert snap.edge_key("access", "a", "b", "read") == ("access", "a", "b", "read")
    assert snap.edge_key("serving", "a", "b", "read") == ("serving", "a", "b", None)


def test_snapshot_summary_sample_and_diagnostics(store):
    a, b, e, d, p = _seed(store)
    empty = store.create_diagram(name="Empty")
    snap = ModelSnapshot(store).capture()

    summary = snap.summary()
    assert summary["nodes"] == 2
    assert summary["edges"] == 1
    assert summary["diagrams"] == 2
    assert summary["placements"] == 1
    assert summary["stale"] is False

    sample = snap.sample(1)
    assert len(sample["nodes"]) == 1
    assert sample["summary"]["nodes"] == 2

    diag = snap.diagnostics()
    assert [n["id"] for n in diag["orphan_nodes"]] == [b]
    assert [x["id"] for x in diag["empty_diagrams"]] == [empty]
    assert diag["counts"]["dangling_edges"] == 0
    assert diag["counts"]["broken_connections"] == 0

# SPDX-License-Identifier: Apache-2.0
"""
Mutation Conformance — Transactional executor.

Asserts:
  • A chunk runs as one store transaction (one undo unit)
  • Any failure rolls back every mutation of the chunk and carries the
    failing op index in its error context
  • Temp ids resolve as soon as their declaring op has run
  • Results come back in submission order, with default geometry filled in
  • Duplicate strategies are re-applied against the live store
"""
import pytest

from mutation_sdk.batch.batch_base import BadRequest, DuplicateConflict, StoreError
from mutation_sdk.batch.executor import DEFAULT_GROUP, DEFAULT_NOTE, DEFAULT_PLACEMENT, BatchExecutor
from mutation_sdk.batch.operations import parse_changes
from mutation_sdk.core.error_context import get_context


@pytest.fixture
def executor(store):
    return BatchExecutor(store)


def _diagram_batch():
    return parse_changes([
        {"op": "create_diagram", "name": "Main", "temp_id": "d1"},
        {"op": "create_edge", "kind": "serving", "source_id": "s", "target_id": "a", "temp_id": "e1"},
        {"op": "add_node_to_diagram", "diagram_id": "d1", "node_id": "a", "temp_id": "pa"},
        {"op": "add_node_to_diagram", "diagram_id": "d1", "node_id": "s", "temp_id": "ps", "x": 300},
        {"op": "add_edge_to_diagram", "diagram_id": "d1", "edge_id": "e1",
         "source_placement_id": "ps", "target_placement_id": "pa", "temp_id": "c1"},
        {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "a"},
        {"op": "create_node", "kind": "service", "name": "Billing", "temp_id": "s"},
    ])


def test_executor_applies_batch_in_phase_order(store, executor):
    results = executor.execute(_diagram_batch())

    assert [r["index"] for r in results] == list(range(7))
    assert [r["op"] for r in results][:2] == ["create_diagram", "create_edge"]
    alice, billing = results[5]["id"], results[6]["id"]
    assert results[1]["source_id"] == billing
    assert results[1]["target_id"] == alice
    assert results[2]["node_id"] == alice

    connection = store.get_connection(results[4]["connection_id"])
    assert connection["source_placement_id"] == results[3]["placement_id"]
    assert connection["target_placement_id"] == results[2]["placement_id"]
    assert results[4]["temp_id"] == "c1"


def test_executor_fills_default_geometry(store, executor):
    results = executor.execute(_diagram_batch())
    placed = results[2]
    for key, value in DEFAULT_PLACEMENT.items():
        assert placed[key] == value
    assert results[3]["x"] == 300
    assert results[3]["y"] == DEFAULT_PLACEMENT["y"]

    diagram_id = results[0]["id"]
    extras = executor.execute(parse_changes([
        {"op": "create_note", "diagram_id": diagram_id, "content": "todo"},
        {"op": "create_group", "diagram_id": diagram_id, "name": "Edge", "width": 500},
    ]))
    assert extras[0]["width"] == DEFAULT_NOTE["width"]
    assert extras[1]["width"] == 500
    assert extras[1]["height"] == DEFAULT_GROUP["height"]


def test_executor_chunk_is_one_undo_unit(store, executor):
    executor.execute(_diagram_batch(), label="Import")
    assert store.undo_labels == ["Import"]
    assert len(store.export()["nodes"]) == 2

    assert store.undo()
    exported = store.export()
    assert exported["nodes"] == [] and exported["diagrams"] == []


def test_executor_failure_rolls_back_everything(store, executor):
    store.fail_on("add_edge_to_diagram", "disk full")
    with pytest.raises(StoreError) as ei:
        executor.execute(_diagram_batch())

    ctx = get_context(ei.value)
    assert ctx["op_index"] == 4
    assert ctx["op"] == "add_edge_to_diagram"
    exported = store.export()
    assert exported["nodes"] == []
    assert exported["edges"] == []
    assert exported["diagrams"] == []
    assert store.undo_labels == []


def test_executor_duplicate_error_strategy(store, executor):
    existing = store.create_node(kind="actor", name="Alice")
    with pytest.raises(DuplicateConflict) as ei:
        executor.execute(parse_changes([{"op": "create_node", "kind": "actor", "name": "Alice"}]))
    assert ei.value.details["existing_id"] == existing


def test_executor_duplicate_reuse_binds_existing(store, executor):
    existing = store.create_node(kind="actor", name="Alice")
    results = executor.execute(
        parse_changes([
            {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "a"},
            {"op": "set_property", "id": "a", "key": "team", "value": "core"},
        ]),
        duplicate_strategy="reuse",
    )
    assert results[0]["id"] == existing
    assert results[0]["reused"] is True
    assert results[0]["created"] is False
    assert store.get_node(existing)["properties"] == {"team": "core"}


def test_executor_duplicate_rename_suffixes(store, executor):
    store.create_node(kind="actor", name="Alice")
    store.create_node(kind="actor", name="Alice (2)")
    results = executor.execute(
        parse_changes([{"op": "create_node", "kind": "actor", "name": "Alice", "on_duplicate": "rename"}])
    )
    assert results[0]["name"] == "Alice (3)"
    assert results[0]["renamed_from"] == "Alice"
    assert store.get_node(results[0]["id"])["name"] == "Alice (3)"


def test_executor_in_batch_duplicate_uses_chunk_state(store, executor):
    results = executor.execute(
        parse_changes([
            {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "a1"},
            {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "a2"},
        ]),
        duplicate_strategy="reuse",
    )
    assert results[0]["id"] == results[1]["id"]
    assert len(store.export()["nodes"]) == 1


def test_executor_edge_rename_rejected(store, executor):
    a = store.create_node(kind="actor", name="A")
    s = store.create_node(kind="service", name="S")
    with pytest.raises(BadRequest) as ei:
        executor.execute(
            parse_changes([{"op": "create_edge", "kind": "serving", "source_id": s, "target_id": a}]),
            duplicate_strategy="rename",
        )
    assert ei.value.code == "UNSUPPORTED_DUPLICATE_STRATEGY"


def test_executor_create_or_get_edge(store, executor):
    a = store.create_node(kind="application-component", name="App")
    d = store.create_node(kind="data-object", name="Order")
    existing = store.create_edge(kind="access", source_id=a, target_id=d, access_type="write")
    results = executor.execute(parse_changes([
        {"op": "create_or_get_edge", "kind": "access", "source_id": a, "target_id": d},
        {"op": "create_or_get_edge", "kind": "access", "source_id": a, "target_id": d, "access_type": "read"},
    ]))
    assert results[0]["id"] == existing and results[0]["created"] is False
    assert results[1]["created"] is True
    assert results[1]["access_type"] == "read"


def test_executor_deletes_run_last(store, executor):
    node = store.create_node(kind="actor", name="Alice")
    results = executor.execute(parse_changes([
        {"op": "delete_node", "id": node},
        {"op": "update_node", "id": node, "documentation": "about to go"},
    ]))
    assert results[0] == {"op": "delete_node", "index": 0, "node_id": node, "cascade": True}
    assert results[1]["node_id"] == node
    assert store.get_node(node) is None

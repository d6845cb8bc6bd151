# SPDX-License-Identifier: Apache-2.0
"""
Mutation Conformance — Connection cross-validation.

Asserts:
  • A connection whose placements match its edge passes
  • Reversed placements are swapped in place and reported
  • Any other mismatch fails with both sides named
  • Undeterminable connections are skipped, never blocking
  • Missing placement ids are auto-resolved from the batch or the diagram
"""
import pytest

from mutation_sdk.batch.batch_base import DirectionMismatch
from mutation_sdk.batch.cross_validation import CrossValidator, mismatch_error


@pytest.fixture
def model(store):
    alice = store.create_node(kind="actor", name="Alice")
    billing = store.create_node(kind="service", name="Billing")
    carol = store.create_node(kind="actor", name="Carol")
    edge = store.create_edge(kind="serving", source_id=billing, target_id=alice, name="serves")
    diagram = store.create_diagram(name="Main")
    pa = store.add_node_to_diagram(diagram, alice, x=0, y=0, width=120, height=55)
    pb = store.add_node_to_diagram(diagram, billing, x=200, y=0, width=120, height=55)
    pc = store.add_node_to_diagram(diagram, carol, x=400, y=0, width=120, height=55)
    return {
        "alice": alice, "billing": billing, "carol": carol, "edge": edge,
        "diagram": diagram, "pa": pa, "pb": pb, "pc": pc,
    }


def _connection(model, source, target):
    return {
        "op": "add_edge_to_diagram",
        "diagram_id": model["diagram"],
        "edge_id": model["edge"],
        "source_placement_id": source,
        "target_placement_id": target,
    }


async def test_cross_validation_passes_matching_direction(service, model):
    chunk = [_connection(model, model["pb"], model["pa"])]
    summary = await CrossValidator(service).validate(chunk, [dict(c) for c in chunk], {})
    assert (summary.checked, summary.passed) == (1, 1)
    assert summary.details == []


async def test_cross_validation_swaps_reversed_placements(service, model):
    chunk = [_connection(model, model["pa"], model["pb"])]
    summary = await CrossValidator(service).validate(chunk, [dict(c) for c in chunk], {})
    assert summary.swapped == 1
    assert chunk[0]["source_placement_id"] == model["pb"]
    assert chunk[0]["target_placement_id"] == model["pa"]
    check = summary.details[0]
    assert check.status == "swapped"
    assert check.placements == {"source_node_id": model["alice"], "target_node_id": model["billing"]}


async def test_cross_validation_mismatch_fails_with_names(service, model):
    chunk = [{"op": "create_note", "diagram_id": model["diagram"], "content": "x"},
             _connection(model, model["pb"], model["pc"])]
    summary = await CrossValidator(service).validate(chunk, [dict(c) for c in chunk], {})
    assert summary.failed == 1
    failed = summary.first_failure()
    assert failed.index == 1
    assert failed.reason.startswith("Connection direction mismatch")
    assert '"Billing"' in failed.reason
    assert '"Carol"' in failed.reason
    assert "serves (serving)" in failed.reason

    err = mismatch_error(failed, offset=8)
    assert isinstance(err, DirectionMismatch)
    assert err.code == "DIRECTION_MISMATCH"
    assert err.details["op_index"] == 9
    assert err.details["reference"] == model["edge"]


async def test_cross_validation_skips_unknown_edge(service, model):
    chunk = [dict(_connection(model, model["pa"], model["pb"]), edge_id="ghost")]
    summary = await CrossValidator(service).validate(chunk, [dict(c) for c in chunk], {})
    assert summary.skipped == 1
    assert summary.failed == 0
    assert chunk[0]["source_placement_id"] == model["pa"]


async def test_cross_validation_batch_declared_symbols(service):
    chunk = [
        {"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"},
        {"op": "create_node", "kind": "service", "name": "S", "temp_id": "s"},
        {"op": "create_edge", "kind": "serving", "source_id": "s", "target_id": "a", "temp_id": "e"},
        {"op": "create_diagram", "name": "D", "temp_id": "d"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "a", "temp_id": "pa"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "s", "temp_id": "ps"},
        {"op": "add_edge_to_diagram", "diagram_id": "d", "edge_id": "e",
         "source_placement_id": "pa", "target_placement_id": "ps"},
    ]
    validator = CrossValidator(service)
    validator.observe(chunk)
    summary = await validator.validate(chunk, [dict(c) for c in chunk], {})
    assert summary.swapped == 1
    assert chunk[6]["source_placement_id"] == "ps"
    assert chunk[6]["target_placement_id"] == "pa"


async def test_cross_validation_auto_resolve_from_batch(service):
    chunk = [
        {"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"},
        {"op": "create_node", "kind": "service", "name": "S", "temp_id": "s"},
        {"op": "create_edge", "kind": "serving", "source_id": "s", "target_id": "a", "temp_id": "e"},
        {"op": "create_diagram", "name": "D", "temp_id": "d"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "a", "temp_id": "pa"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "s", "temp_id": "ps"},
        {"op": "add_edge_to_diagram", "diagram_id": "d", "edge_id": "e"},
    ]
    validator = CrossValidator(service)
    validator.observe(chunk)
    resolved = await validator.auto_resolve(chunk, {})
    assert resolved["attempted"] == 1
    assert resolved["resolved"] == 1
    assert chunk[6]["source_placement_id"] == "ps"
    assert chunk[6]["target_placement_id"] == "pa"


async def test_cross_validation_auto_resolve_from_diagram(service, model):
    chunk = [{"op": "add_edge_to_diagram", "diagram_id": model["diagram"], "edge_id": model["edge"]}]
    resolved = await CrossValidator(service).auto_resolve(chunk, {})
    assert resolved["resolved"] == 1
    assert chunk[0]["source_placement_id"] == model["pb"]
    assert chunk[0]["target_placement_id"] == model["pa"]


async def test_cross_validation_auto_resolve_ambiguous_skipped(service, store, model):
    store.add_node_to_diagram(model["diagram"], model["alice"], x=0, y=300, width=120, height=55)
    chunk = [{"op": "add_edge_to_diagram", "diagram_id": model["diagram"], "edge_id": model["edge"]}]
    resolved = await CrossValidator(service).auto_resolve(chunk, {})
    assert resolved["skipped"] == 1
    assert "target_placement_id" not in chunk[0]

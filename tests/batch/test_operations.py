# SPDX-License-Identifier: Apache-2.0
"""
Mutation Conformance — Change operation model.

Asserts:
  • Every change record parses into exactly one typed operation
  • Unknown ops, missing fields and unknown fields are SchemaViolations
    that point at the offending record and field
  • "at least one of" update fields are enforced
  • Client-side key normalization folds camelCase and aliases
  • Reference fields drive substitution and wire encoding
"""
import pytest

from mutation_sdk.batch.batch_base import SchemaViolation
from mutation_sdk.batch.operations import (
    DELETE_OPS,
    OP_TYPES,
    REFERENCE_FIELDS,
    AddEdgeToDiagram,
    CreateNode,
    CreateOrGetNode,
    normalize_change,
    parse_change,
    parse_changes,
)


def test_operations_registry_is_closed_and_phased():
    assert len(OP_TYPES) == 22
    assert OP_TYPES["create_node"].PHASE == 1
    assert OP_TYPES["create_or_get_node"].PHASE == 1
    assert OP_TYPES["create_edge"].PHASE == 2
    assert DELETE_OPS == {
        "delete_node",
        "delete_edge",
        "delete_diagram",
        "delete_connection_from_diagram",
    }
    for name in ("source_id", "target_id", "diagram_id", "placement_id", "id"):
        assert name in REFERENCE_FIELDS


def test_operations_parse_create_node():
    op = parse_change(
        {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "t1"}, 0
    )
    assert isinstance(op, CreateNode)
    assert op.kind == "actor"
    assert op.name == "Alice"
    assert op.temp_id == "t1"
    assert op.on_duplicate is None


def test_operations_unknown_op_points_at_record():
    with pytest.raises(SchemaViolation) as ei:
        parse_changes([
            {"op": "create_node", "kind": "actor", "name": "A"},
            {"op": "teleport_node", "id": "x"},
        ])
    details = ei.value.details
    assert details["op_index"] == 1
    assert details["op_number"] == 2
    assert details["path"] == "/changes/1"
    assert details["field"] == "op"
    assert "create_node" in details["hint"]


def test_operations_missing_required_field_named():
    with pytest.raises(SchemaViolation) as ei:
        parse_change({"op": "create_node", "kind": "actor"}, 3)
    assert ei.value.code == "SCHEMA_VIOLATION"
    assert ei.value.details["field"] == "name"
    assert ei.value.details["op_index"] == 3
    assert "/changes/3" in ei.value.message


def test_operations_unknown_field_rejected():
    with pytest.raises(SchemaViolation) as ei:
        parse_change({"op": "create_node", "kind": "actor", "name": "A", "colour": "red"}, 0)
    assert ei.value.details["field"] == "colour"


def test_operations_non_object_and_missing_op():
    with pytest.raises(SchemaViolation) as ei:
        parse_change("create_node", 0)
    assert ei.value.details["hint"] == "got str"

    with pytest.raises(SchemaViolation) as ei:
        parse_change({"kind": "actor"}, 2)
    assert ei.value.details["field"] == "op"


def test_operations_bad_value_types_rejected():
    with pytest.raises(SchemaViolation) as ei:
        parse_change(
            {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "n", "width": 0}, 0
        )
    assert ei.value.details["field"] == "width"

    with pytest.raises(SchemaViolation):
        parse_change({"op": "create_node", "kind": "actor", "name": "A", "on_duplicate": "merge"}, 0)

    with pytest.raises(SchemaViolation):
        parse_change({"op": "style_diagram_object", "placement_id": "p", "fill_color": "red"}, 0)


def test_operations_update_requires_some_field():
    with pytest.raises(SchemaViolation) as ei:
        parse_change({"op": "update_node", "id": "n1"}, 0)
    assert "at least one of" in ei.value.message

    op = parse_change({"op": "update_node", "id": "n1", "documentation": ""}, 0)
    assert op.documentation == ""


def test_operations_connection_requires_both_placements():
    with pytest.raises(SchemaViolation) as ei:
        parse_change(
            {"op": "add_edge_to_diagram", "diagram_id": "d", "edge_id": "e", "source_placement_id": "p"},
            0,
        )
    assert ei.value.details["field"] == "target_placement_id"


def test_operations_references_and_substitution():
    op = parse_change(
        {
            "op": "add_edge_to_diagram",
            "diagram_id": "d1",
            "edge_id": "e1",
            "source_placement_id": "p1",
            "target_placement_id": "id-known",
            "temp_id": "c1",
        },
        0,
    )
    assert isinstance(op, AddEdgeToDiagram)
    assert dict(op.references()) == {
        "diagram_id": "d1",
        "edge_id": "e1",
        "source_placement_id": "p1",
        "target_placement_id": "id-known",
    }
    bound = op.with_references({"d1": "id-d", "p1": "id-p"})
    assert bound.diagram_id == "id-d"
    assert bound.source_placement_id == "id-p"
    assert bound.edge_id == "e1"
    # the declared temp id itself is never a reference
    assert bound.temp_id == "c1"


def test_operations_create_or_get_nested_folder_reference():
    op = parse_change(
        {
            "op": "create_or_get_node",
            "kind": "actor",
            "name": "A",
            "create": {"folder_id": "f1", "documentation": "doc"},
        },
        0,
    )
    assert isinstance(op, CreateOrGetNode)
    assert list(op.references()) == [("create.folder_id", "f1")]
    bound = op.with_references({"f1": "id-f"})
    assert bound.create == {"folder_id": "id-f", "documentation": "doc"}


def test_operations_to_wire_drops_unset_fields():
    op = parse_change({"op": "create_node", "kind": "actor", "name": "A"}, 0)
    assert op.to_wire() == {"op": "create_node", "kind": "actor", "name": "A"}


def test_operations_json_schema_shape():
    schema = CreateNode.json_schema()
    assert schema["$schema"] == "https://json-schema.org/draft/2020-12/schema"
    assert schema["required"] == ["op", "kind", "name"]
    assert schema["additionalProperties"] is False


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_operations_normalize_camel_case_and_aliases():
    out = normalize_change(
        {"op": "createNode", "type": "BusinessActor", "name": "A", "tempId": "t1"}
    )
    assert out == {"op": "create_node", "kind": "BusinessActor", "name": "A", "temp_id": "t1"}


def test_operations_normalize_id_subject_aliases():
    out = normalize_change({"op": "updateNode", "elementId": "n1", "name": "B"})
    assert out == {"op": "update_node", "id": "n1", "name": "B"}


def test_operations_normalize_diagram_aliases():
    out = normalize_change(
        {
            "op": "addEdgeToDiagram",
            "viewId": "v1",
            "relationshipId": "r1",
            "sourceVisualId": "s1",
            "targetVisualId": "t1",
        }
    )
    assert out == {
        "op": "add_edge_to_diagram",
        "diagram_id": "v1",
        "edge_id": "r1",
        "source_placement_id": "s1",
        "target_placement_id": "t1",
    }


def test_operations_normalize_never_overwrites_canonical_key():
    out = normalize_change({"op": "create_node", "type": "x", "kind": "actor", "name": "A"})
    assert out["kind"] == "actor"
    assert out["type"] == "x"


def test_operations_normalize_numeric_access_type():
    out = normalize_change({"op": "createEdge", "accessType": 1})
    assert out["access_type"] == "read"
    out = normalize_change({"op": "createEdge", "accessType": 9})
    assert out["access_type"] == 9


def test_operations_normalize_leaves_non_mappings():
    assert normalize_change("nope") == "nope"

# mutation_sdk/batch/executor.py
# SPDX-License-Identifier: Apache-2.0
"""
Transactional batch executor.

Applies one validated chunk to the model store inside a single store
transaction, so the chunk is one undoable unit and any failure rolls back
every mutation of the chunk. Operations run in phase order (node creation,
other operations, deletions) and each one's temp id becomes resolvable as
soon as it has run.

Duplicate handling is re-checked here against the live store, since the
snapshot the validator used may lag behind it.

Results come back in submission order, one per operation:

    {"op": "create_node", "index": 0, "temp_id": "t1", "id": "id-…",
     "kind": "actor", "name": "Alice", "created": true}
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from mutation_sdk.batch.batch_base import (
    BadRequest,
    DuplicateConflict,
    ModelStore,
    op_error_details,
)
from mutation_sdk.batch.operations import (
    OP_TYPES,
    AddEdgeToDiagram,
    AddNodeToDiagram,
    ChangeOperation,
    CreateDiagram,
    CreateEdge,
    CreateFolder,
    CreateGroup,
    CreateNode,
    CreateNote,
    CreateOrGetEdge,
    CreateOrGetNode,
    DeleteConnectionFromDiagram,
    DeleteDiagram,
    DeleteEdge,
    DeleteNode,
    MoveDiagramObject,
    MoveToFolder,
    NestInDiagram,
    SetProperty,
    StyleConnection,
    StyleDiagramObject,
    UpdateEdge,
    UpdateNode,
)
from mutation_sdk.batch.tempids import execution_order, result_durable_id
from mutation_sdk.batch.validation import effective_strategy
from mutation_sdk.batch.vocabulary import DEFAULT_VOCABULARY, Vocabulary
from mutation_sdk.core.error_context import attach_context

LOG = logging.getLogger(__name__)

DEFAULT_PLACEMENT = {"x": 100, "y": 100, "width": 120, "height": 55}
DEFAULT_NOTE = {"x": 100, "y": 100, "width": 185, "height": 80}
DEFAULT_GROUP = {"x": 100, "y": 100, "width": 400, "height": 300}


def _bounds(op: Any, defaults: Mapping[str, float]) -> Dict[str, float]:
    return {k: (getattr(op, k) if getattr(op, k) is not None else v) for k, v in defaults.items()}


class _Run:
    """Per-chunk execution state."""

    def __init__(self, duplicate_strategy: Optional[str]) -> None:
        self.duplicate_strategy = duplicate_strategy
        self.id_map: Dict[str, str] = {}
        self.nodes_by_key: Dict[Tuple[str, str], str] = {}
        self.edges_by_key: Dict[Tuple[str, str, str, Optional[str]], str] = {}

    def r(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self.id_map.get(value, value)


class BatchExecutor:
    """
    Maps typed operations onto ModelStore primitives.

    Every registered operation kind must have a ``_do_<op>`` handler; a
    missing one fails at construction time.
    """

    def __init__(self, store: ModelStore, *, vocabulary: Vocabulary = DEFAULT_VOCABULARY) -> None:
        self._store = store
        self._vocabulary = vocabulary
        self._handlers: Dict[str, Callable[[_Run, int, Any], Dict[str, Any]]] = {
            name: getattr(self, f"_do_{name}") for name in OP_TYPES
        }

    def execute(
        self,
        ops: Sequence[ChangeOperation],
        *,
        duplicate_strategy: Optional[str] = None,
        label: str = "Apply changes",
    ) -> List[Dict[str, Any]]:
        """
        Run ``ops`` as one store transaction and return per-op results.

        Any exception propagates after the store rolls back; it carries the
        failing op index and kind in its error context.
        """
        run = _Run(duplicate_strategy)
        results: List[Optional[Dict[str, Any]]] = [None] * len(ops)
        with self._store.transaction(label):
            for i in execution_order(ops):
                op = ops[i]
                try:
                    result = self._handlers[op.OP](run, i, op)
                except Exception as exc:
                    attach_context(exc, "executor", op_index=i, op=op.OP)
                    raise
                if op.temp_id:
                    durable = result_durable_id(result)
                    if durable:
                        run.id_map[op.temp_id] = durable
                    result = {"temp_id": op.temp_id, **result}
                results[i] = {"op": op.OP, "index": i, **result}
        LOG.debug("executed %d operation(s) as '%s'", len(ops), label)
        return results  # type: ignore[return-value]

    # ---- duplicate helpers --------------------------------------------------

    def _existing_node(self, run: _Run, kind: str, name: str) -> Optional[str]:
        found = run.nodes_by_key.get((kind, name))
        if found:
            return found
        matches = self._store.find_nodes(kind=kind, name=name)
        return matches[0]["id"] if matches else None

    def _existing_edge(self, run: _Run, key: Tuple[str, str, str, Optional[str]]) -> Optional[str]:
        found = run.edges_by_key.get(key)
        if found:
            return found
        kind, source_id, target_id, qualifier = key
        matches = self._store.find_edges(
            kind=kind, source_id=source_id, target_id=target_id, access_type=qualifier
        )
        return matches[0]["id"] if matches else None

    def _unique_name(self, run: _Run, kind: str, name: str) -> str:
        n = 2
        while True:
            candidate = f"{name} ({n})"
            if self._existing_node(run, kind, candidate) is None:
                return candidate
            n += 1

    @staticmethod
    def _duplicate(index: int, op: ChangeOperation, existing: str, identity: Mapping[str, Any]) -> DuplicateConflict:
        return DuplicateConflict(
            f"{op.OP} at /changes/{index}: {dict(identity)} already exists as '{existing}'",
            details=op_error_details(
                index,
                op.OP,
                field="name" if "name" in identity else "kind",
                reference=existing,
                hint="set on_duplicate to 'reuse' to bind the existing entity",
                existing_id=existing,
                identity=dict(identity),
            ),
        )

    # ---- nodes --------------------------------------------------------------

    def _create_node(self, run: _Run, kind: str, name: str, **fields: Any) -> str:
        node_id = self._store.create_node(kind=kind, name=name, **fields)
        run.nodes_by_key.setdefault((kind, name), node_id)
        return node_id

    def _do_create_node(self, run: _Run, index: int, op: CreateNode) -> Dict[str, Any]:
        strategy = effective_strategy(op, run.duplicate_strategy)
        name = op.name
        existing = self._existing_node(run, op.kind, name)
        result: Dict[str, Any] = {}
        if existing:
            if strategy == "reuse":
                return {"id": existing, "kind": op.kind, "name": name, "created": False, "reused": True}
            if strategy != "rename":
                raise self._duplicate(index, op, existing, {"kind": op.kind, "name": name})
            name = self._unique_name(run, op.kind, name)
            result["renamed_from"] = op.name
        node_id = self._create_node(
            run,
            op.kind,
            name,
            documentation=op.documentation,
            properties=op.properties,
            folder_id=run.r(op.folder_id),
        )
        return {"id": node_id, "kind": op.kind, "name": name, "created": True, **result}

    def _do_create_or_get_node(self, run: _Run, index: int, op: CreateOrGetNode) -> Dict[str, Any]:
        existing = self._existing_node(run, op.kind, op.name)
        if existing:
            return {"id": existing, "kind": op.kind, "name": op.name, "created": False}
        create = dict(op.create or {})
        node_id = self._create_node(
            run,
            op.kind,
            op.name,
            documentation=create.get("documentation"),
            properties=create.get("properties"),
            folder_id=run.r(create.get("folder_id")),
        )
        return {"id": node_id, "kind": op.kind, "name": op.name, "created": True}

    def _do_update_node(self, run: _Run, index: int, op: UpdateNode) -> Dict[str, Any]:
        node_id = run.r(op.id)
        self._store.update_node(
            node_id, name=op.name, documentation=op.documentation, properties=op.properties
        )
        return {"node_id": node_id}

    def _do_delete_node(self, run: _Run, index: int, op: DeleteNode) -> Dict[str, Any]:
        node_id = run.r(op.id)
        cascade = True if op.cascade is None else op.cascade
        self._store.delete_node(node_id, cascade=cascade)
        return {"node_id": node_id, "cascade": cascade}

    # ---- edges --------------------------------------------------------------

    def _edge_key(self, run: _Run, op: Any) -> Tuple[str, str, str, Optional[str]]:
        return (
            op.kind,
            run.r(op.source_id),
            run.r(op.target_id),
            self._vocabulary.access_qualifier(op.kind, op.access_type),
        )

    def _create_edge(self, run: _Run, key: Tuple[str, str, str, Optional[str]], **fields: Any) -> str:
        kind, source_id, target_id, qualifier = key
        edge_id = self._store.create_edge(
            kind=kind, source_id=source_id, target_id=target_id, access_type=qualifier, **fields
        )
        run.edges_by_key.setdefault(key, edge_id)
        return edge_id

    @staticmethod
    def _edge_result(edge_id: str, key: Tuple[str, str, str, Optional[str]], created: bool) -> Dict[str, Any]:
        return {
            "id": edge_id,
            "kind": key[0],
            "source_id": key[1],
            "target_id": key[2],
            "access_type": key[3],
            "created": created,
        }

    def _do_create_edge(self, run: _Run, index: int, op: CreateEdge) -> Dict[str, Any]:
        strategy = effective_strategy(op, run.duplicate_strategy)
        if strategy == "rename":
            raise BadRequest(
                f"{op.OP} at /changes/{index}: duplicate strategy 'rename' is not supported for edges",
                code="UNSUPPORTED_DUPLICATE_STRATEGY",
                details=op_error_details(index, op.OP, field="on_duplicate"),
            )
        key = self._edge_key(run, op)
        existing = self._existing_edge(run, key)
        if existing:
            if strategy == "reuse":
                return {**self._edge_result(existing, key, False), "reused": True}
            raise self._duplicate(
                index,
                op,
                existing,
                {"kind": key[0], "source_id": key[1], "target_id": key[2], "access_type": key[3]},
            )
        edge_id = self._create_edge(
            run, key, name=op.name, documentation=op.documentation, properties=op.properties
        )
        return self._edge_result(edge_id, key, True)

    def _do_create_or_get_edge(self, run: _Run, index: int, op: CreateOrGetEdge) -> Dict[str, Any]:
        key = self._edge_key(run, op)
        existing = self._existing_edge(run, key)
        if existing:
            return self._edge_result(existing, key, False)
        create = dict(op.create or {})
        edge_id = self._create_edge(
            run,
            key,
            name=create.get("name"),
            documentation=create.get("documentation"),
            properties=create.get("properties"),
        )
        return self._edge_result(edge_id, key, True)

    def _do_update_edge(self, run: _Run, index: int, op: UpdateEdge) -> Dict[str, Any]:
        edge_id = run.r(op.id)
        self._store.update_edge(
            edge_id, name=op.name, documentation=op.documentation, properties=op.properties
        )
        return {"edge_id": edge_id}

    def _do_delete_edge(self, run: _Run, index: int, op: DeleteEdge) -> Dict[str, Any]:
        edge_id = run.r(op.id)
        self._store.delete_edge(edge_id)
        return {"edge_id": edge_id}

    # ---- properties + folders -----------------------------------------------

    def _do_set_property(self, run: _Run, index: int, op: SetProperty) -> Dict[str, Any]:
        entity_id = run.r(op.id)
        self._store.set_property(entity_id, op.key, op.value)
        return {"entity_id": entity_id, "key": op.key, "value": op.value}

    def _do_move_to_folder(self, run: _Run, index: int, op: MoveToFolder) -> Dict[str, Any]:
        entity_id, folder_id = run.r(op.id), run.r(op.folder_id)
        self._store.move_to_folder(entity_id, folder_id)
        return {"entity_id": entity_id, "folder_id": folder_id}

    def _do_create_folder(self, run: _Run, index: int, op: CreateFolder) -> Dict[str, Any]:
        parent_id = run.r(op.parent_id)
        folder_id = self._store.create_folder(name=op.name, parent_id=parent_id)
        return {"id": folder_id, "name": op.name, "parent_id": parent_id}

    # ---- diagrams -----------------------------------------------------------

    def _do_create_diagram(self, run: _Run, index: int, op: CreateDiagram) -> Dict[str, Any]:
        diagram_id = self._store.create_diagram(
            name=op.name, folder_id=run.r(op.folder_id), documentation=op.documentation
        )
        return {"id": diagram_id, "name": op.name}

    def _do_delete_diagram(self, run: _Run, index: int, op: DeleteDiagram) -> Dict[str, Any]:
        diagram_id = run.r(op.diagram_id)
        self._store.delete_diagram(diagram_id)
        return {"diagram_id": diagram_id}

    def _do_add_node_to_diagram(self, run: _Run, index: int, op: AddNodeToDiagram) -> Dict[str, Any]:
        diagram_id, node_id = run.r(op.diagram_id), run.r(op.node_id)
        bounds = _bounds(op, DEFAULT_PLACEMENT)
        placement_id = self._store.add_node_to_diagram(
            diagram_id, node_id, parent_placement_id=run.r(op.parent_placement_id), **bounds
        )
        return {"placement_id": placement_id, "diagram_id": diagram_id, "node_id": node_id, **bounds}

    def _do_add_edge_to_diagram(self, run: _Run, index: int, op: AddEdgeToDiagram) -> Dict[str, Any]:
        diagram_id, edge_id = run.r(op.diagram_id), run.r(op.edge_id)
        source, target = run.r(op.source_placement_id), run.r(op.target_placement_id)
        connection_id = self._store.add_edge_to_diagram(
            diagram_id, edge_id, source_placement_id=source, target_placement_id=target
        )
        return {
            "connection_id": connection_id,
            "diagram_id": diagram_id,
            "edge_id": edge_id,
            "source_placement_id": source,
            "target_placement_id": target,
        }

    def _do_nest_in_diagram(self, run: _Run, index: int, op: NestInDiagram) -> Dict[str, Any]:
        diagram_id = run.r(op.diagram_id)
        child, parent = run.r(op.placement_id), run.r(op.parent_placement_id)
        self._store.nest_in_diagram(diagram_id, child, parent, x=op.x, y=op.y)
        return {"diagram_id": diagram_id, "nested_id": child, "parent_placement_id": parent}

    def _do_move_diagram_object(self, run: _Run, index: int, op: MoveDiagramObject) -> Dict[str, Any]:
        placement_id = run.r(op.placement_id)
        bounds = {k: getattr(op, k) for k in ("x", "y", "width", "height") if getattr(op, k) is not None}
        self._store.move_diagram_object(placement_id, **bounds)
        return {"moved_id": placement_id, **bounds}

    def _do_style_diagram_object(self, run: _Run, index: int, op: StyleDiagramObject) -> Dict[str, Any]:
        placement_id = run.r(op.placement_id)
        style = {
            k: getattr(op, k)
            for k in ("fill_color", "line_color", "font_color", "font_size", "opacity")
            if getattr(op, k) is not None
        }
        self._store.style_diagram_object(placement_id, **style)
        return {"styled_id": placement_id, "style": style}

    def _do_style_connection(self, run: _Run, index: int, op: StyleConnection) -> Dict[str, Any]:
        connection_id = run.r(op.connection_id)
        style = {
            k: getattr(op, k)
            for k in ("line_color", "line_width", "font_color")
            if getattr(op, k) is not None
        }
        self._store.style_connection(connection_id, **style)
        return {"styled_id": connection_id, "style": style}

    def _do_delete_connection_from_diagram(
        self, run: _Run, index: int, op: DeleteConnectionFromDiagram
    ) -> Dict[str, Any]:
        diagram_id, connection_id = run.r(op.diagram_id), run.r(op.connection_id)
        self._store.delete_connection(diagram_id, connection_id)
        return {"diagram_id": diagram_id, "deleted_connection_id": connection_id}

    def _do_create_note(self, run: _Run, index: int, op: CreateNote) -> Dict[str, Any]:
        diagram_id = run.r(op.diagram_id)
        bounds = _bounds(op, DEFAULT_NOTE)
        note_id = self._store.create_note(diagram_id, content=op.content, **bounds)
        return {"note_id": note_id, "diagram_id": diagram_id, **bounds}

    def _do_create_group(self, run: _Run, index: int, op: CreateGroup) -> Dict[str, Any]:
        diagram_id = run.r(op.diagram_id)
        bounds = _bounds(op, DEFAULT_GROUP)
        group_id = self._store.create_group(diagram_id, name=op.name, **bounds)
        return {"group_id": group_id, "diagram_id": diagram_id, "name": op.name, **bounds}


__all__ = [
    "DEFAULT_PLACEMENT",
    "DEFAULT_NOTE",
    "DEFAULT_GROUP",
    "BatchExecutor",
]

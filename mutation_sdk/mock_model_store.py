# mutation_sdk/mock_model_store.py
# SPDX-License-Identifier: Apache-2.0
"""
In-memory model store used by the mutation SDK examples and tests.

Implements the ModelStore protocol with deterministic behavior:
- Nodes, edges, folders and diagrams (placements, connections, notes, groups)
- Transactions as single undoable units on a command stack (undo/redo)
- Rollback of every primitive in a transaction when any of them fails
- Change listeners fired after commit, undo and redo
- Store-style error messages ("cannot find node: <id>")
- Optional failure injection per primitive via fail_on(...)

Primitives called outside an explicit transaction run in an implicit
one-primitive transaction, the way a user edit in a modelling tool would.
"""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

from mutation_sdk.batch.batch_base import EntityNotFound, StoreError, StoreListener

LOG = logging.getLogger(__name__)

ROOT_FOLDER_ID = "folder-root"


def _new_id() -> str:
    return f"id-{uuid.uuid4().hex}"


def _empty_state() -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {
        "folders": {ROOT_FOLDER_ID: {"id": ROOT_FOLDER_ID, "name": "Model", "parent_id": None}},
        "nodes": {},
        "edges": {},
        "diagrams": {},
        "placements": {},
        "connections": {},
    }


@dataclass
class _Command:
    label: str
    before: Dict[str, Any]
    after: Dict[str, Any]


@dataclass
class InMemoryModelStore:
    """A single-writer in-memory model store with an undo/redo command stack."""

    name: str = "memory-model"
    max_undo: int = 100

    def __post_init__(self) -> None:
        if self.max_undo < 1:
            raise ValueError("max_undo must be >= 1")
        self._state = _empty_state()
        self._undo: List[_Command] = []
        self._redo: List[_Command] = []
        self._listeners: List[StoreListener] = []
        self._tx_label: Optional[str] = None
        self._failures: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Transactions, command stack, listeners
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, label: str) -> Iterator[None]:
        if self._tx_label is not None:
            raise StoreError(f"transaction '{label}' cannot nest inside '{self._tx_label}'")
        before = copy.deepcopy(self._state)
        self._tx_label = label
        try:
            yield
        except BaseException:
            self._state = before
            raise
        finally:
            self._tx_label = None
        self._undo.append(_Command(label=label, before=before, after=copy.deepcopy(self._state)))
        del self._undo[: -self.max_undo]
        self._redo.clear()
        self._notify("commit")

    def _mutation(self, label: str):
        return nullcontext() if self._tx_label is not None else self.transaction(label)

    @property
    def in_transaction(self) -> bool:
        return self._tx_label is not None

    @property
    def undo_labels(self) -> List[str]:
        return [c.label for c in self._undo]

    def undo(self) -> bool:
        if not self._undo or self._tx_label is not None:
            return False
        command = self._undo.pop()
        self._state = copy.deepcopy(command.before)
        self._redo.append(command)
        self._notify("undo")
        return True

    def redo(self) -> bool:
        if not self._redo or self._tx_label is not None:
            return False
        command = self._redo.pop()
        self._state = copy.deepcopy(command.after)
        self._undo.append(command)
        self._notify("redo")
        return True

    def add_listener(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:  # noqa: BLE001
                LOG.warning("model store listener failed on %s: %s", reason, e)

    def fail_on(self, primitive: str, message: Optional[str] = None) -> None:
        """Make the next call to ``primitive`` raise StoreError."""
        self._failures[primitive] = message or f"injected failure in {primitive}"

    def _maybe_fail(self, primitive: str) -> None:
        message = self._failures.pop(primitive, None)
        if message is not None:
            raise StoreError(message)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _require(self, table: str, entity_id: str, what: str, *, verb: str = "") -> Dict[str, Any]:
        row = self._state[table].get(entity_id)
        if row is None:
            suffix = f" to {verb}" if verb else ""
            raise EntityNotFound(f"cannot find {what}{suffix}: {entity_id}")
        return row

    def get_node(self, node_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["nodes"].get(node_id)
        return copy.deepcopy(row) if row else None

    def get_edge(self, edge_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["edges"].get(edge_id)
        return copy.deepcopy(row) if row else None

    def get_folder(self, folder_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["folders"].get(folder_id)
        return copy.deepcopy(row) if row else None

    def get_diagram(self, diagram_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["diagrams"].get(diagram_id)
        if not row:
            return None
        return self._diagram_view(row)

    def get_placement(self, placement_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["placements"].get(placement_id)
        return copy.deepcopy(row) if row else None

    def get_connection(self, connection_id: str) -> Optional[Mapping[str, Any]]:
        row = self._state["connections"].get(connection_id)
        return copy.deepcopy(row) if row else None

    def _diagram_view(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        view = copy.deepcopy(dict(row))
        view["placements"] = [
            copy.deepcopy(p) for p in self._state["placements"].values() if p["diagram_id"] == row["id"]
        ]
        view["connections"] = [
            copy.deepcopy(c) for c in self._state["connections"].values() if c["diagram_id"] == row["id"]
        ]
        return view

    def find_nodes(self, *, kind: str, name: str) -> List[Mapping[str, Any]]:
        return [
            copy.deepcopy(n)
            for n in self._state["nodes"].values()
            if n["kind"] == kind and n["name"] == name
        ]

    def find_edges(
        self,
        *,
        kind: str,
        source_id: str,
        target_id: str,
        access_type: Optional[str] = None,
    ) -> List[Mapping[str, Any]]:
        out = []
        for e in self._state["edges"].values():
            if e["kind"] != kind or e["source_id"] != source_id or e["target_id"] != target_id:
                continue
            if access_type is not None and e.get("access_type") != access_type:
                continue
            out.append(copy.deepcopy(e))
        return out

    def export(self) -> Mapping[str, Any]:
        return {
            "folders": [copy.deepcopy(f) for f in self._state["folders"].values()],
            "nodes": [copy.deepcopy(n) for n in self._state["nodes"].values()],
            "edges": [copy.deepcopy(e) for e in self._state["edges"].values()],
            "diagrams": [self._diagram_view(d) for d in self._state["diagrams"].values()],
        }

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def create_node(
        self,
        *,
        kind: str,
        name: str,
        documentation: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
        folder_id: Optional[str] = None,
    ) -> str:
        with self._mutation(f"Create {name}"):
            self._maybe_fail("create_node")
            folder = folder_id or ROOT_FOLDER_ID
            self._require("folders", folder, "folder")
            node_id = _new_id()
            self._state["nodes"][node_id] = {
                "id": node_id,
                "kind": kind,
                "name": name,
                "documentation": documentation or "",
                "properties": dict(properties or {}),
                "folder_id": folder,
            }
            return node_id

    def update_node(self, node_id: str, **changes: Any) -> None:
        with self._mutation("Update node"):
            self._maybe_fail("update_node")
            self._update(self._require("nodes", node_id, "node"), changes)

    @staticmethod
    def _update(row: Dict[str, Any], changes: Mapping[str, Any]) -> None:
        for key in ("name", "documentation"):
            if changes.get(key) is not None:
                row[key] = changes[key]
        if changes.get("properties"):
            row["properties"].update(changes["properties"])

    def delete_node(self, node_id: str, *, cascade: bool = True) -> None:
        with self._mutation("Delete node"):
            self._maybe_fail("delete_node")
            self._require("nodes", node_id, "node", verb="delete")
            attached = [
                e["id"]
                for e in self._state["edges"].values()
                if node_id in (e["source_id"], e["target_id"])
            ]
            if attached and not cascade:
                raise StoreError(
                    f"node {node_id} still has {len(attached)} edge(s); delete them or enable cascade"
                )
            for edge_id in attached:
                self._drop_edge(edge_id)
            for pid in [p["id"] for p in self._state["placements"].values() if p.get("node_id") == node_id]:
                self._drop_placement(pid)
            del self._state["nodes"][node_id]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def create_edge(
        self,
        *,
        kind: str,
        source_id: str,
        target_id: str,
        name: Optional[str] = None,
        documentation: Optional[str] = None,
        access_type: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> str:
        with self._mutation(f"Create {kind}"):
            self._maybe_fail("create_edge")
            self._require("nodes", source_id, "node")
            self._require("nodes", target_id, "node")
            edge_id = _new_id()
            self._state["edges"][edge_id] = {
                "id": edge_id,
                "kind": kind,
                "source_id": source_id,
                "target_id": target_id,
                "name": name or "",
                "documentation": documentation or "",
                "access_type": access_type,
                "properties": dict(properties or {}),
                "folder_id": ROOT_FOLDER_ID,
            }
            return edge_id

    def update_edge(self, edge_id: str, **changes: Any) -> None:
        with self._mutation("Update edge"):
            self._maybe_fail("update_edge")
            self._update(self._require("edges", edge_id, "edge"), changes)

    def delete_edge(self, edge_id: str) -> None:
        with self._mutation("Delete edge"):
            self._maybe_fail("delete_edge")
            self._require("edges", edge_id, "edge", verb="delete")
            self._drop_edge(edge_id)

    def _drop_edge(self, edge_id: str) -> None:
        for cid in [c["id"] for c in self._state["connections"].values() if c["edge_id"] == edge_id]:
            del self._state["connections"][cid]
        del self._state["edges"][edge_id]

    # ------------------------------------------------------------------
    # Properties + folders
    # ------------------------------------------------------------------

    def _any_entity(self, entity_id: str, *tables: str) -> Dict[str, Any]:
        for table in tables:
            row = self._state[table].get(entity_id)
            if row is not None:
                return row
        raise EntityNotFound(f"cannot find entity: {entity_id}")

    def set_property(self, entity_id: str, key: str, value: str) -> None:
        with self._mutation("Set property"):
            self._maybe_fail("set_property")
            row = self._any_entity(entity_id, "nodes", "edges", "diagrams")
            row.setdefault("properties", {})[key] = value

    def move_to_folder(self, entity_id: str, folder_id: str) -> None:
        with self._mutation("Move to folder"):
            self._maybe_fail("move_to_folder")
            self._require("folders", folder_id, "folder")
            row = self._any_entity(entity_id, "nodes", "edges", "diagrams", "folders")
            if row["id"] in self._state["folders"]:
                cursor: Optional[str] = folder_id
                while cursor is not None:
                    if cursor == entity_id:
                        raise StoreError(f"folder {entity_id} cannot move into its own subtree")
                    cursor = self._state["folders"][cursor]["parent_id"]
                row["parent_id"] = folder_id
            else:
                row["folder_id"] = folder_id

    def create_folder(self, *, name: str, parent_id: str) -> str:
        with self._mutation(f"Create folder {name}"):
            self._maybe_fail("create_folder")
            self._require("folders", parent_id, "folder")
            folder_id = _new_id()
            self._state["folders"][folder_id] = {"id": folder_id, "name": name, "parent_id": parent_id}
            return folder_id

    # ------------------------------------------------------------------
    # Diagrams
    # ------------------------------------------------------------------

    def create_diagram(
        self,
        *,
        name: str,
        folder_id: Optional[str] = None,
        documentation: Optional[str] = None,
    ) -> str:
        with self._mutation(f"Create diagram {name}"):
            self._maybe_fail("create_diagram")
            folder = folder_id or ROOT_FOLDER_ID
            self._require("folders", folder, "folder")
            diagram_id = _new_id()
            self._state["diagrams"][diagram_id] = {
                "id": diagram_id,
                "name": name,
                "documentation": documentation or "",
                "folder_id": folder,
                "properties": {},
            }
            return diagram_id

    def delete_diagram(self, diagram_id: str) -> None:
        with self._mutation("Delete diagram"):
            self._maybe_fail("delete_diagram")
            self._require("diagrams", diagram_id, "diagram", verb="delete")
            for pid in [p["id"] for p in self._state["placements"].values() if p["diagram_id"] == diagram_id]:
                self._drop_placement(pid)
            del self._state["diagrams"][diagram_id]

    def _placement_in(self, diagram_id: str, placement_id: str) -> Dict[str, Any]:
        row = self._require("placements", placement_id, "placement")
        if row["diagram_id"] != diagram_id:
            raise StoreError(f"placement {placement_id} is not on diagram {diagram_id}")
        return row

    def _add_placement(self, diagram_id: str, kind: str, **fields: Any) -> str:
        placement_id = _new_id()
        self._state["placements"][placement_id] = {
            "id": placement_id,
            "diagram_id": diagram_id,
            "type": kind,
            "node_id": None,
            "parent_placement_id": None,
            "style": {},
            **fields,
        }
        return placement_id

    def _drop_placement(self, placement_id: str) -> None:
        if placement_id not in self._state["placements"]:
            return
        for cid in [
            c["id"]
            for c in self._state["connections"].values()
            if placement_id in (c["source_placement_id"], c["target_placement_id"])
        ]:
            del self._state["connections"][cid]
        for child in [
            p["id"] for p in self._state["placements"].values() if p.get("parent_placement_id") == placement_id
        ]:
            self._drop_placement(child)
        del self._state["placements"][placement_id]

    def add_node_to_diagram(
        self,
        diagram_id: str,
        node_id: str,
        *,
        x: float,
        y: float,
        width: float,
        height: float,
        parent_placement_id: Optional[str] = None,
    ) -> str:
        with self._mutation("Add to diagram"):
            self._maybe_fail("add_node_to_diagram")
            self._require("diagrams", diagram_id, "diagram")
            self._require("nodes", node_id, "node")
            if parent_placement_id:
                self._placement_in(diagram_id, parent_placement_id)
            return self._add_placement(
                diagram_id,
                "node",
                node_id=node_id,
                parent_placement_id=parent_placement_id,
                x=x,
                y=y,
                width=width,
                height=height,
            )

    def add_edge_to_diagram(
        self,
        diagram_id: str,
        edge_id: str,
        *,
        source_placement_id: str,
        target_placement_id: str,
    ) -> str:
        with self._mutation("Add connection"):
            self._maybe_fail("add_edge_to_diagram")
            self._require("diagrams", diagram_id, "diagram")
            edge = self._require("edges", edge_id, "edge")
            source = self._placement_in(diagram_id, source_placement_id)
            target = self._placement_in(diagram_id, target_placement_id)
            if (source.get("node_id"), target.get("node_id")) != (edge["source_id"], edge["target_id"]):
                raise StoreError(
                    f"connection endpoints do not match edge {edge_id} direction "
                    f"({edge['source_id']} -> {edge['target_id']})"
                )
            connection_id = _new_id()
            self._state["connections"][connection_id] = {
                "id": connection_id,
                "diagram_id": diagram_id,
                "edge_id": edge_id,
                "source_placement_id": source_placement_id,
                "target_placement_id": target_placement_id,
                "style": {},
            }
            return connection_id

    def nest_in_diagram(
        self,
        diagram_id: str,
        placement_id: str,
        parent_placement_id: str,
        *,
        x: Optional[float] = None,
        y: Optional[float] = None,
    ) -> None:
        with self._mutation("Nest in diagram"):
            self._maybe_fail("nest_in_diagram")
            self._require("diagrams", diagram_id, "diagram")
            child = self._placement_in(diagram_id, placement_id)
            self._placement_in(diagram_id, parent_placement_id)
            cursor: Optional[str] = parent_placement_id
            while cursor is not None:
                if cursor == placement_id:
                    raise StoreError(f"placement {placement_id} cannot nest inside itself")
                cursor = self._state["placements"][cursor].get("parent_placement_id")
            child["parent_placement_id"] = parent_placement_id
            if x is not None:
                child["x"] = x
            if y is not None:
                child["y"] = y

    def move_diagram_object(self, placement_id: str, **bounds: float) -> None:
        with self._mutation("Move diagram object"):
            self._maybe_fail("move_diagram_object")
            row = self._require("placements", placement_id, "placement")
            for key in ("x", "y", "width", "height"):
                if bounds.get(key) is not None:
                    row[key] = bounds[key]

    def style_diagram_object(self, placement_id: str, **style: Any) -> None:
        with self._mutation("Style diagram object"):
            self._maybe_fail("style_diagram_object")
            row = self._require("placements", placement_id, "placement")
            row["style"].update({k: v for k, v in style.items() if v is not None})

    def style_connection(self, connection_id: str, **style: Any) -> None:
        with self._mutation("Style connection"):
            self._maybe_fail("style_connection")
            row = self._require("connections", connection_id, "connection")
            row["style"].update({k: v for k, v in style.items() if v is not None})

    def delete_connection(self, diagram_id: str, connection_id: str) -> None:
        with self._mutation("Delete connection"):
            self._maybe_fail("delete_connection")
            self._require("diagrams", diagram_id, "diagram")
            row = self._require("connections", connection_id, "connection")
            if row["diagram_id"] != diagram_id:
                raise StoreError(f"connection {connection_id} is not on diagram {diagram_id}")
            del self._state["connections"][connection_id]

    def create_note(
        self,
        diagram_id: str,
        *,
        content: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> str:
        with self._mutation("Create note"):
            self._maybe_fail("create_note")
            self._require("diagrams", diagram_id, "diagram")
            return self._add_placement(
                diagram_id, "note", content=content, x=x, y=y, width=width, height=height
            )

    def create_group(
        self,
        diagram_id: str,
        *,
        name: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> str:
        with self._mutation("Create group"):
            self._maybe_fail("create_group")
            self._require("diagrams", diagram_id, "diagram")
            return self._add_placement(
                diagram_id, "group", name=name, x=x, y=y, width=width, height=height
            )


__all__ = ["InMemoryModelStore", "ROOT_FOLDER_ID"]

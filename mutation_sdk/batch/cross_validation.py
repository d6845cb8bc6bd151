# mutation_sdk/batch/cross_validation.py
# SPDX-License-Identifier: Apache-2.0
"""
Client-side cross-validation of diagram connections.

Before a chunk is submitted, every add_edge_to_diagram is checked against
the edge it draws: the node behind the source placement must be the edge's
source node and the node behind the target placement its target node.

- both match                → passed
- both match when reversed  → swapped: the placement ids are exchanged in
                              place and the chunk goes out corrected
- anything else             → failed (DirectionMismatch naming both sides)
- not determinable          → skipped (never blocks submission)

Placements are resolved to nodes from add_node_to_diagram operations seen so
far in the batch, then from the diagram's placements read through the
client. Edge endpoints come from a create_edge in the batch or from the
client, cached per validator.

The same indexes let auto_resolve fill in connection placement ids the
caller left out.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Protocol, Sequence, Set, Tuple

from mutation_sdk.batch.batch_base import DirectionMismatch, MutationError, op_error_details

LOG = logging.getLogger(__name__)

CONNECTION_OP = "add_edge_to_diagram"
_EDGE_DECLARING_OPS = ("create_edge", "create_or_get_edge")


class EntityReader(Protocol):
    async def get_node(self, node_id: str) -> Mapping[str, Any]: ...

    async def get_edge(self, edge_id: str) -> Mapping[str, Any]: ...

    async def get_diagram(self, diagram_id: str) -> Mapping[str, Any]: ...


@dataclass
class ConnectionCheck:
    """
    Outcome for one connection operation.

    Attributes:
        index: Index of the operation in its chunk.
        status: "passed", "swapped", "failed" or "skipped".
        reason: Why it was skipped or failed.
        edge: Edge id, kind, name and endpoint node ids, when known.
        placements: Node ids behind the source and target placements.
    """
    index: int
    status: str
    reason: Optional[str] = None
    edge: Optional[Dict[str, Any]] = None
    placements: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrossValidationSummary:
    checked: int = 0
    passed: int = 0
    swapped: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[ConnectionCheck] = field(default_factory=list)

    def add(self, check: ConnectionCheck) -> None:
        self.checked += 1
        if check.status == "passed":
            self.passed += 1
        elif check.status == "swapped":
            self.swapped += 1
            self.details.append(check)
        elif check.status == "failed":
            self.failed += 1
            self.details.append(check)
        else:
            self.skipped += 1

    def merge(self, other: "CrossValidationSummary") -> None:
        self.checked += other.checked
        self.passed += other.passed
        self.swapped += other.swapped
        self.failed += other.failed
        self.skipped += other.skipped
        self.details.extend(other.details)

    def first_failure(self) -> Optional[ConnectionCheck]:
        for check in self.details:
            if check.status == "failed":
                return check
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "passed": self.passed,
            "swapped": self.swapped,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": [d.to_dict() for d in self.details],
        }


class CrossValidator:
    """
    Stateful across the chunks of one batch: observe() each chunk's raw
    changes before validating it so batch-declared placements and edges are
    known.
    """

    def __init__(self, client: EntityReader) -> None:
        self._client = client
        self._declared: Set[str] = set()
        self._placement_nodes: Dict[str, str] = {}
        # (diagram ref, node ref) -> placement temp ids, in batch order
        self._node_placements: Dict[Tuple[str, str], List[str]] = {}
        self._edge_endpoints: Dict[str, Tuple[str, str]] = {}
        self._edge_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self._node_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self._diagram_cache: Dict[str, Optional[Dict[str, Any]]] = {}

    def observe(self, changes: Sequence[Mapping[str, Any]]) -> None:
        for change in changes:
            temp_id = change.get("temp_id")
            if isinstance(temp_id, str) and temp_id:
                self._declared.add(temp_id)
            op = change.get("op")
            if op == "add_node_to_diagram" and temp_id and change.get("node_id"):
                self._placement_nodes[temp_id] = change["node_id"]
                key = (change.get("diagram_id"), change["node_id"])
                self._node_placements.setdefault(key, []).append(temp_id)
            elif op in _EDGE_DECLARING_OPS and temp_id:
                self._edge_endpoints[temp_id] = (change.get("source_id"), change.get("target_id"))
        # diagrams change as chunks commit
        self._diagram_cache.clear()

    # ---- lookups ------------------------------------------------------------

    def _pending(self, value: Optional[str], temp_map: Mapping[str, str]) -> bool:
        return value in self._declared and value not in temp_map

    @staticmethod
    def _resolve(value: Optional[str], temp_map: Mapping[str, str]) -> Optional[str]:
        if value is None:
            return None
        return temp_map.get(value, value)

    async def _fetch(self, cache: Dict[str, Any], loader, entity_id: str) -> Optional[Dict[str, Any]]:
        if entity_id in cache:
            return cache[entity_id]
        try:
            row = dict(await loader(entity_id))
        except MutationError as exc:
            LOG.debug("cross-validation read of %s failed: %s", entity_id, exc)
            row = None
        cache[entity_id] = row
        return row

    async def _edge(self, raw: Optional[str], temp_map: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        if raw in self._edge_endpoints and raw not in temp_map:
            source, target = self._edge_endpoints[raw]
            return {
                "id": raw,
                "source_id": self._resolve(source, temp_map),
                "target_id": self._resolve(target, temp_map),
            }
        edge_id = self._resolve(raw, temp_map)
        row = await self._fetch(self._edge_cache, self._client.get_edge, edge_id)
        if row is None:
            return None
        return {
            "id": edge_id,
            "kind": row.get("kind"),
            "name": row.get("name"),
            "source_id": row.get("source_id"),
            "target_id": row.get("target_id"),
        }

    async def _placement_node(
        self,
        original: Optional[str],
        current: Optional[str],
        diagram_id: Optional[str],
        temp_map: Mapping[str, str],
    ) -> Optional[str]:
        for candidate in (original, current):
            if candidate in self._placement_nodes:
                return self._resolve(self._placement_nodes[candidate], temp_map)
        if current is None or diagram_id is None or self._pending(current, temp_map):
            return None
        if self._pending(diagram_id, temp_map):
            return None
        diagram = await self._fetch(self._diagram_cache, self._client.get_diagram, diagram_id)
        for p in (diagram or {}).get("placements", ()):
            if p.get("id") == current:
                return p.get("node_id")
        return None

    async def _describe_node(self, node_id: str) -> str:
        row = await self._fetch(self._node_cache, self._client.get_node, node_id)
        if row and row.get("name"):
            return f"\"{row['name']}\" ({node_id})"
        return node_id

    # ---- auto-resolution ----------------------------------------------------

    async def auto_resolve(
        self,
        chunk: Sequence[MutableMapping[str, Any]],
        temp_map: Mapping[str, str],
    ) -> Dict[str, Any]:
        """
        Fill missing source/target placement ids on connection operations.

        Chunk operations are updated in place.
        """
        result: Dict[str, Any] = {"attempted": 0, "resolved": 0, "skipped": 0, "details": []}
        for i, op in enumerate(chunk):
            if op.get("op") != CONNECTION_OP:
                continue
            if op.get("source_placement_id") and op.get("target_placement_id"):
                continue
            result["attempted"] += 1
            edge = await self._edge(op.get("edge_id"), temp_map)
            diagram_id = op.get("diagram_id")
            if edge is None or not diagram_id:
                result["skipped"] += 1
                continue
            source = self._find_placement(diagram_id, edge["source_id"], temp_map)
            target = self._find_placement(diagram_id, edge["target_id"], temp_map)
            if source is None:
                source = await self._single_placement(diagram_id, edge["source_id"], temp_map)
            if target is None:
                target = await self._single_placement(diagram_id, edge["target_id"], temp_map)
            if source is None or target is None:
                result["skipped"] += 1
                continue
            if not op.get("source_placement_id"):
                op["source_placement_id"] = source
            if not op.get("target_placement_id"):
                op["target_placement_id"] = target
            result["resolved"] += 1
            result["details"].append(
                {
                    "index": i,
                    "edge_id": op.get("edge_id"),
                    "source_placement_id": op["source_placement_id"],
                    "target_placement_id": op["target_placement_id"],
                }
            )
        return result

    def _find_placement(self, diagram_id: str, node_id: Optional[str], temp_map: Mapping[str, str]) -> Optional[str]:
        if node_id is None:
            return None
        diagram = self._resolve(diagram_id, temp_map)
        for (d, n), placements in self._node_placements.items():
            if self._resolve(d, temp_map) == diagram and self._resolve(n, temp_map) == node_id:
                return self._resolve(placements[0], temp_map)
        return None

    async def _single_placement(
        self, diagram_id: str, node_id: Optional[str], temp_map: Mapping[str, str]
    ) -> Optional[str]:
        if node_id is None or self._pending(diagram_id, temp_map):
            return None
        resolved = self._resolve(diagram_id, temp_map)
        diagram = await self._fetch(self._diagram_cache, self._client.get_diagram, resolved)
        matches = [p["id"] for p in (diagram or {}).get("placements", ()) if p.get("node_id") == node_id]
        return matches[0] if len(matches) == 1 else None

    # ---- validation ---------------------------------------------------------

    async def validate(
        self,
        chunk: Sequence[MutableMapping[str, Any]],
        original: Sequence[Mapping[str, Any]],
        temp_map: Mapping[str, str],
    ) -> CrossValidationSummary:
        """
        Check every connection in ``chunk`` (already substituted).

        ``original`` is the same chunk before substitution; placement temp
        ids are looked up through it. Swaps are applied to ``chunk``.
        """
        summary = CrossValidationSummary()
        for i, op in enumerate(chunk):
            if op.get("op") != CONNECTION_OP:
                continue
            before = original[i] if i < len(original) else op
            summary.add(await self._check(i, op, before, temp_map))
        return summary

    async def _check(
        self,
        index: int,
        op: MutableMapping[str, Any],
        original: Mapping[str, Any],
        temp_map: Mapping[str, str],
    ) -> ConnectionCheck:
        edge = await self._edge(original.get("edge_id") or op.get("edge_id"), temp_map)
        if edge is None or not edge.get("source_id") or not edge.get("target_id"):
            return ConnectionCheck(index, "skipped", reason="edge endpoints unknown")

        diagram_id = self._resolve(op.get("diagram_id"), temp_map)
        source = await self._placement_node(
            original.get("source_placement_id"), op.get("source_placement_id"), diagram_id, temp_map
        )
        target = await self._placement_node(
            original.get("target_placement_id"), op.get("target_placement_id"), diagram_id, temp_map
        )
        if source is None or target is None:
            return ConnectionCheck(index, "skipped", reason="placement not resolvable to a node", edge=edge)

        placements = {"source_node_id": source, "target_node_id": target}
        if (source, target) == (edge["source_id"], edge["target_id"]):
            return ConnectionCheck(index, "passed", edge=edge, placements=placements)
        if (source, target) == (edge["target_id"], edge["source_id"]):
            op["source_placement_id"], op["target_placement_id"] = (
                op["target_placement_id"],
                op["source_placement_id"],
            )
            LOG.debug("swapped connection placements at chunk index %d", index)
            return ConnectionCheck(
                index, "swapped", reason="placements were reversed", edge=edge, placements=placements
            )

        label = edge.get("name") or edge["id"]
        if edge.get("kind"):
            label = f"{label} ({edge['kind']})"
        reason = (
            f"Connection direction mismatch: edge {label} connects "
            f"{await self._describe_node(edge['source_id'])} -> "
            f"{await self._describe_node(edge['target_id'])}, but the source placement shows "
            f"{await self._describe_node(source)} and the target placement shows "
            f"{await self._describe_node(target)}"
        )
        return ConnectionCheck(index, "failed", reason=reason, edge=edge, placements=placements)


def mismatch_error(check: ConnectionCheck, *, offset: int = 0) -> DirectionMismatch:
    """DirectionMismatch for a failed check; ``offset`` maps to batch indices."""
    index = offset + check.index
    return DirectionMismatch(
        check.reason or "connection direction mismatch",
        details=op_error_details(
            index,
            CONNECTION_OP,
            field="source_placement_id",
            reference=(check.edge or {}).get("id"),
            hint="connect placements of the edge's source and target nodes",
            message=check.reason,
            edge=check.edge,
            placements=check.placements,
        ),
    )


__all__ = [
    "ConnectionCheck",
    "CrossValidationSummary",
    "CrossValidator",
    "EntityReader",
    "mismatch_error",
]

# mutation_sdk/batch/snapshot.py
# SPDX-License-Identifier: Apache-2.0
"""
Model snapshot cache.

A point-in-time read model of the store (nodes, edges, diagrams, folders)
used for duplicate lookups, reference existence checks, cross-validation
reads and the read-model endpoint. It is never a source of truth.

Freshness rules:
- The execution queue refreshes it after every executed chunk, after a short
  quiescence delay.
- Store changes made outside the queue (a user undo/redo, a direct edit) mark
  it stale through the store's listener hook; readers call ensure_fresh()
  before trusting it. While the queue is executing its own chunk the hook is
  muted (ignore_changes), because that refresh is already scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from mutation_sdk.batch.batch_base import ModelStore, now_ms
from mutation_sdk.batch.vocabulary import DEFAULT_VOCABULARY, Vocabulary

LOG = logging.getLogger(__name__)

EdgeKey = Tuple[str, str, str, Optional[str]]

ENTITY_CATEGORIES = ("nodes", "edges", "diagrams", "folders", "placements", "connections")


class ModelSnapshot:
    """
    Refreshable read cache over a ModelStore.
    """

    def __init__(
        self,
        store: ModelStore,
        *,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        refresh_delay_ms: int = 100,
    ) -> None:
        self._store = store
        self._vocabulary = vocabulary
        self._refresh_delay_ms = max(0, int(refresh_delay_ms))
        self._muted = 0
        self._stale = True
        self._captured_at: Optional[int] = None
        self._refresh_count = 0
        self._nodes: List[Dict[str, Any]] = []
        self._edges: List[Dict[str, Any]] = []
        self._diagrams: List[Dict[str, Any]] = []
        self._folders: List[Dict[str, Any]] = []
        self._ids: Dict[str, str] = {}
        self._node_keys: Dict[Tuple[str, str], str] = {}
        self._edge_keys: Dict[EdgeKey, str] = {}
        store.add_listener(self._on_store_change)

    def detach(self) -> None:
        self._store.remove_listener(self._on_store_change)

    # ---- freshness ----------------------------------------------------------

    def _on_store_change(self, reason: str) -> None:
        if self._muted:
            return
        if not self._stale:
            LOG.debug("model snapshot marked stale by external store change (%s)", reason)
        self._stale = True

    @contextmanager
    def ignore_changes(self) -> Iterator[None]:
        """Mute the store listener while the caller mutates the store itself."""
        self._muted += 1
        try:
            yield
        finally:
            self._muted -= 1

    def mark_stale(self) -> None:
        self._stale = True

    @property
    def is_stale(self) -> bool:
        return self._stale

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    def capture(self) -> "ModelSnapshot":
        """Rebuild the cache from the live store."""
        data = self._store.export()
        self._nodes = [dict(n) for n in data.get("nodes", ())]
        self._edges = [dict(e) for e in data.get("edges", ())]
        self._diagrams = [dict(d) for d in data.get("diagrams", ())]
        self._folders = [dict(f) for f in data.get("folders", ())]

        ids: Dict[str, str] = {}
        for category, rows in (
            ("nodes", self._nodes),
            ("edges", self._edges),
            ("diagrams", self._diagrams),
            ("folders", self._folders),
        ):
            for row in rows:
                ids[row["id"]] = category
        for d in self._diagrams:
            for p in d.get("placements", ()):
                ids[p["id"]] = "placements"
            for c in d.get("connections", ()):
                ids[c["id"]] = "connections"
        self._ids = ids

        self._node_keys = {}
        for n in self._nodes:
            self._node_keys.setdefault((n["kind"], n["name"]), n["id"])
        self._edge_keys = {}
        for e in self._edges:
            key = self.edge_key(e["kind"], e["source_id"], e["target_id"], e.get("access_type"))
            self._edge_keys.setdefault(key, e["id"])

        self._stale = False
        self._captured_at = now_ms()
        self._refresh_count += 1
        return self

    def ensure_fresh(self) -> "ModelSnapshot":
        if self._stale:
            self.capture()
        return self

    async def refresh(self, *, delay: bool = True) -> "ModelSnapshot":
        """
        Rebuild after a mutation, waiting the quiescence delay first so
        asynchronous side effects of the mutation settle.
        """
        if delay and self._refresh_delay_ms:
            await asyncio.sleep(self._refresh_delay_ms / 1000.0)
        return self.capture()

    # ---- accessors ----------------------------------------------------------

    @property
    def nodes(self) -> List[Dict[str, Any]]:
        return self._nodes

    @property
    def edges(self) -> List[Dict[str, Any]]:
        return self._edges

    @property
    def diagrams(self) -> List[Dict[str, Any]]:
        return self._diagrams

    @property
    def folders(self) -> List[Dict[str, Any]]:
        return self._folders

    def edge_key(
        self,
        kind: str,
        source_id: str,
        target_id: str,
        access_type: Optional[str] = None,
    ) -> EdgeKey:
        return (kind, source_id, target_id, self._vocabulary.access_qualifier(kind, access_type))

    def find_node(self, kind: str, name: str) -> Optional[str]:
        return self._node_keys.get((kind, name))

    def find_edge(self, key: EdgeKey) -> Optional[str]:
        return self._edge_keys.get(key)

    def has_entity(self, entity_id: str, *categories: str) -> bool:
        category = self._ids.get(entity_id)
        if category is None:
            return False
        return not categories or category in categories

    def category_of(self, entity_id: str) -> Optional[str]:
        return self._ids.get(entity_id)

    def summary(self) -> Dict[str, Any]:
        placements = sum(len(d.get("placements", ())) for d in self._diagrams)
        connections = sum(len(d.get("connections", ())) for d in self._diagrams)
        return {
            "nodes": len(self._nodes),
            "edges": len(self._edges),
            "diagrams": len(self._diagrams),
            "folders": len(self._folders),
            "placements": placements,
            "connections": connections,
            "stale": self._stale,
            "captured_at": self._captured_at,
        }

    def sample(self, limit: int = 10) -> Dict[str, Any]:
        """Summary plus the first ``limit`` rows of each entity list."""
        limit = max(0, int(limit))
        return {
            "summary": self.summary(),
            "nodes": [
                {"id": n["id"], "kind": n["kind"], "name": n["name"]} for n in self._nodes[:limit]
            ],
            "edges": [
                {
                    "id": e["id"],
                    "kind": e["kind"],
                    "source_id": e["source_id"],
                    "target_id": e["target_id"],
                    "access_type": e.get("access_type"),
                }
                for e in self._edges[:limit]
            ],
            "diagrams": [{"id": d["id"], "name": d["name"]} for d in self._diagrams[:limit]],
        }

    def diagnostics(self) -> Dict[str, Any]:
        """
        Orphan and consistency checks.

        - orphan_nodes: nodes not placed on any diagram
        - dangling_edges: edges whose source or target node is gone
        - empty_diagrams: diagrams with no placements
        - broken_connections: connections whose edge no longer exists
        """
        node_ids = {n["id"] for n in self._nodes}
        edge_ids = {e["id"] for e in self._edges}
        placed = {
            p.get("node_id")
            for d in self._diagrams
            for p in d.get("placements", ())
            if p.get("node_id")
        }
        orphan_nodes = [
            {"id": n["id"], "kind": n["kind"], "name": n["name"]}
            for n in self._nodes
            if n["id"] not in placed
        ]
        dangling_edges = [
            {"id": e["id"], "kind": e["kind"]}
            for e in self._edges
            if e["source_id"] not in node_ids or e["target_id"] not in node_ids
        ]
        empty_diagrams = [
            {"id": d["id"], "name": d["name"]} for d in self._diagrams if not d.get("placements")
        ]
        broken_connections = [
            {"id": c["id"], "diagram_id": d["id"], "edge_id": c["edge_id"]}
            for d in self._diagrams
            for c in d.get("connections", ())
            if c["edge_id"] not in edge_ids
        ]
        return {
            "orphan_nodes": orphan_nodes,
            "dangling_edges": dangling_edges,
            "empty_diagrams": empty_diagrams,
            "broken_connections": broken_connections,
            "counts": {
                "orphan_nodes": len(orphan_nodes),
                "dangling_edges": len(dangling_edges),
                "empty_diagrams": len(empty_diagrams),
                "broken_connections": len(broken_connections),
            },
            "stale": self._stale,
        }


__all__ = ["ModelSnapshot", "EdgeKey", "ENTITY_CATEGORIES"]

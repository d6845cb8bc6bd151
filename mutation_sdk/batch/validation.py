# mutation_sdk/batch/validation.py
# SPDX-License-Identifier: Apache-2.0
"""
Semantic preflight validation.

Rejects a batch before anything is queued. Checks run in a fixed order and
fail fast on the first problem:

1. request shape: non-empty change list within the size limit, known
   duplicate strategy
2. per-operation schema (operations.parse_change)
3. kind vocabulary (after normalization) and access qualifiers
4. duplicate temp id declarations
5. phase availability of batch-declared temp ids
6. existence of every other reference in the model snapshot
7. duplicate nodes/edges against the snapshot and earlier in the batch,
   resolved through the effective duplicate strategy

Every error is a BadRequest subclass whose details name the operation index,
kind, field and offending reference, so a failure points at exactly one
change record.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mutation_sdk.batch.batch_base import (
    DUPLICATE_STRATEGIES,
    BadRequest,
    DuplicateConflict,
    PhaseConflictError,
    SchemaViolation,
    UnresolvedReference,
    op_error_details,
)
from mutation_sdk.batch.operations import (
    EDGE_CREATE_OPS,
    NODE_CREATE_OPS,
    ChangeOperation,
    CreateEdge,
    CreateNode,
    CreateOrGetEdge,
    CreateOrGetNode,
    parse_change,
)
from mutation_sdk.batch.snapshot import ModelSnapshot
from mutation_sdk.batch.tempids import (
    declared_temp_ids,
    find_duplicate_temp_ids,
    find_phase_conflict,
)
from mutation_sdk.batch.vocabulary import DEFAULT_VOCABULARY, Vocabulary

LOG = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9:_-]{1,128}$")

# Snapshot categories a reference field may point at.
_FIELD_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "source_id": ("nodes",),
    "target_id": ("nodes",),
    "node_id": ("nodes",),
    "edge_id": ("edges",),
    "diagram_id": ("diagrams",),
    "folder_id": ("folders",),
    "create.folder_id": ("folders",),
    "parent_id": ("folders",),
    "placement_id": ("placements",),
    "parent_placement_id": ("placements",),
    "source_placement_id": ("placements",),
    "target_placement_id": ("placements",),
    "connection_id": ("connections",),
}

# "id" is addressed per op kind.
_ID_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "update_node": ("nodes",),
    "delete_node": ("nodes",),
    "update_edge": ("edges",),
    "delete_edge": ("edges",),
    "set_property": ("nodes", "edges", "diagrams"),
    "move_to_folder": ("nodes", "edges", "diagrams", "folders"),
}


def validate_idempotency_key(key: Any) -> Optional[str]:
    """Return the key unchanged, or raise BadRequest when it is malformed."""
    if key is None:
        return None
    if not isinstance(key, str) or not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise BadRequest(
            "idempotency_key must be 1-128 characters of [A-Za-z0-9:_-]",
            details={"field": "idempotency_key"},
        )
    return key


def effective_strategy(op: ChangeOperation, default: Optional[str]) -> str:
    """Operation-level override, then the batch default, then ``error``."""
    return getattr(op, "on_duplicate", None) or default or "error"


@dataclass
class DuplicateResolution:
    """
    How a create that matched an existing identity will be handled.

    Attributes:
        op_index: Index of the create operation.
        op: Its kind.
        strategy: "reuse", "rename" or "bind" (create-or-get match).
        existing_id: Durable id of the matching entity, when pre-existing.
        declared_at: Index of the matching earlier create in the batch.
    """
    op_index: int
    op: str
    strategy: str
    existing_id: Optional[str] = None
    declared_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_index": self.op_index,
            "op": self.op,
            "strategy": self.strategy,
            "existing_id": self.existing_id,
            "declared_at": self.declared_at,
        }


@dataclass
class PreflightReport:
    """Validated batch: typed operations with canonical kinds."""
    ops: List[ChangeOperation]
    duplicate_strategy: Optional[str] = None
    duplicates: List[DuplicateResolution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_count": len(self.ops),
            "duplicate_strategy": self.duplicate_strategy,
            "duplicates": [d.to_dict() for d in self.duplicates],
        }


class PreflightValidator:
    """
    Validates change batches against the operation model, the vocabulary and
    the model snapshot.
    """

    def __init__(
        self,
        snapshot: ModelSnapshot,
        *,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        max_changes: int = 1000,
    ) -> None:
        self._snapshot = snapshot
        self._vocabulary = vocabulary
        self._max_changes = max(1, int(max_changes))

    @property
    def vocabulary(self) -> Vocabulary:
        return self._vocabulary

    def validate(
        self,
        changes: Any,
        *,
        duplicate_strategy: Optional[str] = None,
    ) -> PreflightReport:
        self._check_request(changes, duplicate_strategy)
        ops = [parse_change(raw, i) for i, raw in enumerate(changes)]
        ops = [self._normalize_kinds(op, i) for i, op in enumerate(ops)]
        return self.validate_ops(ops, duplicate_strategy=duplicate_strategy)

    def validate_ops(
        self,
        ops: Sequence[ChangeOperation],
        *,
        duplicate_strategy: Optional[str] = None,
    ) -> PreflightReport:
        """Semantic checks on already-parsed operations with canonical kinds."""
        ops = list(ops)
        find_duplicate_temp_ids(ops)

        conflict = find_phase_conflict(ops)
        if conflict is not None:
            raise PhaseConflictError(conflict.message, details=conflict.to_details())

        self._snapshot.ensure_fresh()
        self._check_references(ops)
        duplicates = self._check_duplicates(ops, duplicate_strategy)
        return PreflightReport(ops=ops, duplicate_strategy=duplicate_strategy, duplicates=duplicates)

    # ---- request / schema ---------------------------------------------------

    def _check_request(self, changes: Any, duplicate_strategy: Optional[str]) -> None:
        if not isinstance(changes, list):
            raise BadRequest("changes must be an array", details={"field": "changes"})
        if not changes:
            raise BadRequest("changes must not be empty", details={"field": "changes"})
        if len(changes) > self._max_changes:
            raise BadRequest(
                f"changes count {len(changes)} exceeds maximum of {self._max_changes}",
                details={"field": "changes", "max_changes": self._max_changes},
            )
        if duplicate_strategy is not None and duplicate_strategy not in DUPLICATE_STRATEGIES:
            raise BadRequest(
                f"duplicate_strategy must be one of {', '.join(DUPLICATE_STRATEGIES)}",
                details={"field": "duplicate_strategy"},
            )

    def _normalize_kinds(self, op: ChangeOperation, index: int) -> ChangeOperation:
        if op.OP in NODE_CREATE_OPS:
            kind = self._vocabulary.node_kind(op.kind)
            if kind is None:
                raise SchemaViolation(
                    f"{op.OP} at /changes/{index}: unknown node kind '{op.kind}'",
                    details=op_error_details(
                        index,
                        op.OP,
                        field="kind",
                        hint=f"valid node kinds: {', '.join(sorted(self._vocabulary.node_kinds))}",
                    ),
                )
            return replace(op, kind=kind) if kind != op.kind else op

        if op.OP in EDGE_CREATE_OPS:
            kind = self._vocabulary.edge_kind(op.kind)
            if kind is None:
                raise SchemaViolation(
                    f"{op.OP} at /changes/{index}: unknown edge kind '{op.kind}'",
                    details=op_error_details(
                        index,
                        op.OP,
                        field="kind",
                        hint=f"valid edge kinds: {', '.join(sorted(self._vocabulary.edge_kinds))}",
                    ),
                )
            if op.access_type is not None and not self._vocabulary.accepts_access_type(kind):
                raise SchemaViolation(
                    f"{op.OP} at /changes/{index}: access_type is only valid on "
                    f"{', '.join(sorted(self._vocabulary.qualified_edge_kinds))} edges",
                    details=op_error_details(index, op.OP, field="access_type"),
                )
            return replace(op, kind=kind) if kind != op.kind else op
        return op

    # ---- references ---------------------------------------------------------

    def _check_references(self, ops: Sequence[ChangeOperation]) -> None:
        declared = declared_temp_ids(ops)
        for i, op in enumerate(ops):
            for name, value in op.references():
                if value in declared:
                    continue
                if name == "id":
                    categories = _ID_CATEGORIES.get(op.OP, ())
                else:
                    categories = _FIELD_CATEGORIES.get(name, ())
                if self._snapshot.has_entity(value, *categories):
                    continue
                found = self._snapshot.category_of(value)
                hint = f"{name} refers to '{value}' which was not resolved"
                if found is not None:
                    hint = (
                        f"{name} refers to '{value}', which is one of the model's {found}, "
                        f"not {'/'.join(categories)}"
                    )
                raise UnresolvedReference(
                    f"{op.OP} at /changes/{i}: {hint}",
                    details=op_error_details(i, op.OP, field=name, reference=value, hint=hint),
                )

    # ---- duplicates ---------------------------------------------------------

    def _check_duplicates(
        self,
        ops: Sequence[ChangeOperation],
        default: Optional[str],
    ) -> List[DuplicateResolution]:
        resolutions: List[DuplicateResolution] = []
        node_owner: Dict[Tuple[str, str], int] = {}
        edge_owner: Dict[Tuple[str, str, str, Optional[str]], int] = {}
        # temp id -> the entity it was bound to by an earlier resolution
        bound: Dict[str, str] = {}

        for i, op in enumerate(ops):
            if isinstance(op, (CreateNode, CreateOrGetNode)):
                key = (op.kind, op.name)
                existing = self._snapshot.find_node(*key)
                earlier = node_owner.get(key)
                identity = {"kind": op.kind, "name": op.name}
            elif isinstance(op, (CreateEdge, CreateOrGetEdge)):
                source = bound.get(op.source_id, op.source_id)
                target = bound.get(op.target_id, op.target_id)
                key = self._snapshot.edge_key(op.kind, source, target, op.access_type)
                existing = self._snapshot.find_edge(key)
                earlier = edge_owner.get(key)
                identity = {
                    "kind": key[0],
                    "source_id": key[1],
                    "target_id": key[2],
                    "access_type": key[3],
                }
            else:
                continue

            is_edge = isinstance(op, (CreateEdge, CreateOrGetEdge))
            owner = edge_owner if is_edge else node_owner

            if isinstance(op, (CreateOrGetNode, CreateOrGetEdge)):
                if existing or earlier is not None:
                    resolutions.append(
                        DuplicateResolution(i, op.OP, "bind", existing_id=existing, declared_at=earlier)
                    )
                    self._bind(bound, ops, op, existing, earlier)
                else:
                    owner[key] = i
                continue

            strategy = effective_strategy(op, default)
            if is_edge and strategy == "rename":
                raise BadRequest(
                    f"{op.OP} at /changes/{i}: duplicate strategy 'rename' is not supported for edges",
                    code="UNSUPPORTED_DUPLICATE_STRATEGY",
                    details=op_error_details(
                        i,
                        op.OP,
                        field="on_duplicate",
                        hint="edges support 'error' or 'reuse'; set on_duplicate on this operation",
                    ),
                )

            if not existing and earlier is None:
                owner[key] = i
                continue

            if strategy == "error":
                what = "edge" if is_edge else "node"
                where = (
                    f"already exists as '{existing}'"
                    if existing
                    else f"was already declared at /changes/{earlier}"
                )
                raise DuplicateConflict(
                    f"{op.OP} at /changes/{i}: {what} {identity} {where}",
                    details=op_error_details(
                        i,
                        op.OP,
                        field="name" if not is_edge else "kind",
                        reference=existing,
                        hint=(
                            "set on_duplicate to 'reuse' to bind the existing entity"
                            + ("" if is_edge else " or 'rename' to create a distinct copy")
                        ),
                        existing_id=existing,
                        declared_at=earlier,
                        identity=identity,
                    ),
                )

            resolutions.append(
                DuplicateResolution(i, op.OP, strategy, existing_id=existing, declared_at=earlier)
            )
            if strategy == "reuse":
                self._bind(bound, ops, op, existing, earlier)
            LOG.debug("duplicate %s at /changes/%d resolved by %s", op.OP, i, strategy)

        return resolutions

    @staticmethod
    def _bind(
        bound: Dict[str, str],
        ops: Sequence[ChangeOperation],
        op: ChangeOperation,
        existing: Optional[str],
        earlier: Optional[int],
    ) -> None:
        if not op.temp_id:
            return
        target = existing or (ops[earlier].temp_id if earlier is not None else None)
        if target:
            bound[op.temp_id] = bound.get(target, target)


__all__ = [
    "IDEMPOTENCY_KEY_PATTERN",
    "validate_idempotency_key",
    "effective_strategy",
    "DuplicateResolution",
    "PreflightReport",
    "PreflightValidator",
]

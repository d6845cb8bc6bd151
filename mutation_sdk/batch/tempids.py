# mutation_sdk/batch/tempids.py
# SPDX-License-Identifier: Apache-2.0
"""
Temp id resolution.

A temp id is a caller-chosen symbol naming an entity created earlier in the
same batch (or in an earlier chunk of the same client-side batch). Two things
happen to temp ids:

1. Substitution: once a temp id is bound to a durable id, every reference
   field carrying it is rewritten. Unbound values are left alone so a later
   pass can resolve them.

2. Phase availability: operations execute in phases, not in submission
   order.

       phase 1  create_node / create_or_get_node        (batch order)
       phase 2  every other non-deleting operation      (batch order)
       phase 3  deletions                               (batch order)

   A temp id becomes available when its declaring operation has run. A
   reference to a temp id that is declared in the batch but not yet
   available at the referencing operation's turn is an error, never a
   silent deferral.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set

from mutation_sdk.batch.batch_base import BadRequest, SchemaViolation, op_error_details
from mutation_sdk.batch.operations import REFERENCE_FIELDS, ChangeOperation

LOG = logging.getLogger(__name__)

# Result keys that carry the durable id produced for a declared temp id,
# in lookup order.
RESULT_ID_KEYS = ("id", "placement_id", "connection_id", "note_id", "group_id")


class TempIdMap:
    """
    Additive temp id → durable id mapping.

    Entries are never removed or overwritten. Rebinding a temp id to the
    durable id it already has is a no-op; rebinding it to a different id
    raises BadRequest(code="TEMP_ID_CONFLICT").
    """

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._map: Dict[str, str] = {}
        if initial:
            self.merge(initial)

    def bind(self, temp_id: str, durable_id: str) -> None:
        current = self._map.get(temp_id)
        if current is None:
            self._map[temp_id] = durable_id
            return
        if current != durable_id:
            raise BadRequest(
                f"temp id '{temp_id}' is already bound to '{current}'",
                code="TEMP_ID_CONFLICT",
                details={"temp_id": temp_id, "bound_to": current, "rebind_to": durable_id},
            )

    def merge(self, mapping: Mapping[str, str]) -> None:
        for temp_id, durable_id in mapping.items():
            self.bind(temp_id, durable_id)

    def get(self, temp_id: str) -> Optional[str]:
        return self._map.get(temp_id)

    def resolve(self, value: str) -> str:
        return self._map.get(value, value)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._map)

    def __contains__(self, temp_id: object) -> bool:
        return temp_id in self._map

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[str]:
        return iter(self._map)

    def __repr__(self) -> str:
        return f"TempIdMap({self._map!r})"


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------

def substitute_change(change: Mapping[str, Any], mapping: Mapping[str, str]) -> Dict[str, Any]:
    """Copy of a raw change with bound reference fields replaced."""
    out = dict(change)
    for name in REFERENCE_FIELDS:
        value = out.get(name)
        if isinstance(value, str) and value in mapping:
            out[name] = mapping[value]
    create = out.get("create")
    if isinstance(create, Mapping):
        folder_id = create.get("folder_id")
        if isinstance(folder_id, str) and folder_id in mapping:
            out["create"] = {**create, "folder_id": mapping[folder_id]}
    return out


def substitute_changes(
    changes: Sequence[Mapping[str, Any]],
    mapping: Mapping[str, str],
) -> List[Dict[str, Any]]:
    """
    Replace every reference bound in ``mapping``; leave the rest untouched.

    Declared temp ids themselves are never rewritten.
    """
    if isinstance(mapping, TempIdMap):
        mapping = mapping.as_dict()
    return [substitute_change(c, mapping) for c in changes]


def collect_temp_id_refs(changes: Iterable[Mapping[str, Any]]) -> Set[str]:
    """Every value appearing in a reference field of the raw changes."""
    refs: Set[str] = set()
    for change in changes:
        for name in REFERENCE_FIELDS:
            value = change.get(name)
            if isinstance(value, str) and value:
                refs.add(value)
    return refs


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

def phase_of(op: ChangeOperation) -> int:
    return op.PHASE


def execution_order(ops: Sequence[ChangeOperation]) -> List[int]:
    """Indices of ``ops`` in execution order (phase, then batch order)."""
    return sorted(range(len(ops)), key=lambda i: (ops[i].PHASE, i))


def declared_temp_ids(ops: Sequence[ChangeOperation]) -> Dict[str, int]:
    """temp id → index of its (first) declaring operation."""
    declared: Dict[str, int] = {}
    for i, op in enumerate(ops):
        if op.temp_id and op.temp_id not in declared:
            declared[op.temp_id] = i
    return declared


def find_duplicate_temp_ids(ops: Sequence[Any]) -> None:
    """
    Raise SchemaViolation when two operations declare the same temp id.

    Accepts parsed operations or raw change mappings.
    """
    seen: Dict[str, int] = {}
    for i, op in enumerate(ops):
        if isinstance(op, Mapping):
            temp_id, name = op.get("temp_id"), op.get("op")
        else:
            temp_id, name = getattr(op, "temp_id", None), getattr(op, "OP", None)
        if not isinstance(temp_id, str) or not temp_id:
            continue
        if temp_id in seen:
            first = seen[temp_id]
            raise SchemaViolation(
                f"Duplicate temp id '{temp_id}' also used at /changes/{first}",
                details=op_error_details(
                    i,
                    name,
                    field="temp_id",
                    reference=temp_id,
                    hint=f"temp ids must be unique within a batch; first declared at /changes/{first}",
                    path=f"/changes/{i}/temp_id",
                    declared_at=first,
                ),
            )
        seen[temp_id] = i


@dataclass(frozen=True)
class PhaseConflict:
    """
    First reference to a batch-declared temp id that is not yet available.

    Attributes:
        op_index: Index of the referencing operation.
        op: Kind of the referencing operation.
        field: Reference field carrying the temp id.
        reference: The temp id.
        declared_at: Index of the declaring operation.
        declared_op: Kind of the declaring operation.
    """
    op_index: int
    op: str
    field: str
    reference: str
    declared_at: int
    declared_op: str

    @property
    def hint(self) -> str:
        return (
            f"temp id '{self.reference}' is declared at /changes/{self.declared_at} "
            f"({self.declared_op}) but is not available at this execution phase"
        )

    @property
    def message(self) -> str:
        return (
            f"{self.op} at /changes/{self.op_index} references '{self.reference}' "
            f"in '{self.field}' before /changes/{self.declared_at} ({self.declared_op}) "
            f"has created it"
        )

    def to_details(self) -> Dict[str, Any]:
        return op_error_details(
            self.op_index,
            self.op,
            field=self.field,
            reference=self.reference,
            hint=self.hint,
            message=self.message,
            declared_at=self.declared_at,
            declared_op=self.declared_op,
        )


def find_phase_conflict(ops: Sequence[ChangeOperation]) -> Optional[PhaseConflict]:
    """
    Replay phase availability and return the first conflict, if any.

    Used by preflight validation, and again by the execution queue to
    diagnose a runtime failure.
    """
    declared = declared_temp_ids(ops)
    available: Set[str] = set()

    def check(i: int) -> Optional[PhaseConflict]:
        op = ops[i]
        for name, value in op.references():
            decl = declared.get(value)
            if decl is None or value in available:
                continue
            return PhaseConflict(
                op_index=i,
                op=op.OP,
                field=name,
                reference=value,
                declared_at=decl,
                declared_op=ops[decl].OP,
            )
        return None

    phase1 = [i for i, op in enumerate(ops) if op.PHASE == 1]
    for i in phase1:
        if ops[i].temp_id:
            available.add(ops[i].temp_id)
    for i in phase1:
        conflict = check(i)
        if conflict:
            return conflict

    for i, op in enumerate(ops):
        if op.PHASE != 2:
            continue
        conflict = check(i)
        if conflict:
            return conflict
        if op.temp_id:
            available.add(op.temp_id)

    for i, op in enumerate(ops):
        if op.PHASE == 3:
            conflict = check(i)
            if conflict:
                return conflict
    return None


# ---------------------------------------------------------------------------
# Results → mappings
# ---------------------------------------------------------------------------

def result_durable_id(result: Mapping[str, Any]) -> Optional[str]:
    for key in RESULT_ID_KEYS:
        value = result.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_temp_id_mappings(results: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """temp id → durable id for every result that declared a temp id."""
    mapping: Dict[str, str] = {}
    for result in results or ():
        temp_id = result.get("temp_id")
        if not temp_id:
            continue
        durable = result_durable_id(result)
        if durable:
            mapping[temp_id] = durable
        else:
            LOG.debug("result for temp id %s carries no durable id: %s", temp_id, result)
    return mapping


__all__ = [
    "RESULT_ID_KEYS",
    "TempIdMap",
    "substitute_change",
    "substitute_changes",
    "collect_temp_id_refs",
    "phase_of",
    "execution_order",
    "declared_temp_ids",
    "find_duplicate_temp_ids",
    "PhaseConflict",
    "find_phase_conflict",
    "result_durable_id",
    "extract_temp_id_mappings",
]

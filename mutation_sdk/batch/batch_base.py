# mutation_sdk/batch/batch_base.py
# SPDX-License-Identifier: Apache-2.0
"""
Mutation SDK — Batch Mutation Protocol V1.0 (shared base)

Purpose
-------
Shared vocabulary for every layer of the batched mutation pipeline:

- Structured, normalized error taxonomy (SIEM-safe, machine-actionable)
- OperationContext propagated from the wire envelope
- Metrics sink protocol (low-cardinality)
- BatchConfig: queue cadence, timeouts, retention and request limits
- ModelStore: the collaborator boundary the execution queue writes through

Design Philosophy
-----------------
- One error base class for the whole pipeline; every error carries a code,
  an optional retry hint, and details that point at one exact line of caller
  input (op index, op kind, field, reference).
- Nothing here performs I/O. Components are constructed explicitly and passed
  by reference; there are no module-level singletons.
- The store is opaque: the pipeline only relies on the protocol below.

Deliberate Non-Goals
--------------------
- No persistence of the operation log.
- No multi-writer execution; the store is single-writer.
- No authentication or rate limiting (middleware concerns). The queue only
  applies backpressure to its own backlog.

Wire Contract (Canonical Interface)
-----------------------------------
Envelopes mirror the rest of the SDK:

    Request:
        {"op": "mutation.<operation>", "ctx": {...}, "args": {...}}

    Success:
        {"ok": true, "code": "OK", "ms": <float>, "result": {...}}

    Error:
        {
            "ok": false,
            "code": "<UPPER_SNAKE_CASE>",
            "error": "<ErrorClassName>",
            "message": "<human readable>",
            "retry_after_ms": <int|null>,
            "details": {...} | null,
            "ms": <float>
        }

Change records on the wire use snake_case keys, e.g.:

    {"op": "create_node", "kind": "actor", "name": "Alice", "temp_id": "t1"}
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass, fields
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    List,
    Mapping,
    NewType,
    Optional,
    Protocol,
    runtime_checkable,
)

LOG = logging.getLogger(__name__)

MUTATION_PROTOCOL_VERSION = "1.0.0"
MUTATION_PROTOCOL_ID = "mutation/v1.0"

DurableID = NewType("DurableID", str)
"""Store-assigned identifier of a node, edge, diagram object or folder."""

# Descriptor lifecycle
STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETE = "complete"
STATUS_ERROR = "error"
OPERATION_STATUSES = (STATUS_QUEUED, STATUS_PROCESSING, STATUS_COMPLETE, STATUS_ERROR)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETE, STATUS_ERROR})

DUPLICATE_STRATEGIES = ("error", "reuse", "rename")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def tenant_hash(tenant: Optional[str]) -> Optional[str]:
    if not tenant:
        return None
    return hashlib.sha256(tenant.encode("utf-8")).hexdigest()[:12]


# =============================================================================
# Normalized Errors
# =============================================================================

class MutationError(Exception):
    """
    Base exception for the mutation pipeline.

    Attributes:
        message: Human-readable description.
        code: Machine-readable, UPPER_SNAKE_CASE error code.
        retry_after_ms: Suggested client backoff (if applicable).
        details: Additional, SIEM-safe machine context (no PII).
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after_ms = retry_after_ms
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.code:
            base += f" [code={self.code}]"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        if self.details:
            base += f" details={self.details}"
        return base


class BadRequest(MutationError):
    """Client error: invalid request envelope or parameters."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kw)


class SchemaViolation(BadRequest):
    """A change record is missing a field, has a bad value, or an unknown op."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "SCHEMA_VIOLATION")
        super().__init__(message, **kw)


class DuplicateConflict(BadRequest):
    """A create would duplicate an existing or earlier-declared entity."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "DUPLICATE_ENTITY")
        super().__init__(message, **kw)


class UnresolvedReference(BadRequest):
    """A reference field names neither a known entity nor a declared temp id."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "UNRESOLVED_REFERENCE")
        super().__init__(message, **kw)


class PhaseConflictError(BadRequest):
    """A temp id is referenced before its declaring op's phase makes it available."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "PHASE_CONFLICT")
        super().__init__(message, **kw)


class DirectionMismatch(BadRequest):
    """A diagram connection's endpoints do not match its edge in either direction."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "DIRECTION_MISMATCH")
        super().__init__(message, **kw)


class IdempotencyConflict(BadRequest):
    """An idempotency key was replayed with a different payload."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "IDEMPOTENCY_CONFLICT")
        super().__init__(message, **kw)


class OperationNotFound(MutationError):
    """Unknown (or evicted) operation id."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "NOT_FOUND")
        super().__init__(message, **kw)


class StoreError(MutationError):
    """The model store rejected a mutation primitive."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "STORE_ERROR")
        super().__init__(message, **kw)


class EntityNotFound(StoreError):
    """The store could not find an entity a primitive referred to."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "ENTITY_NOT_FOUND")
        super().__init__(message, **kw)


class ResourceExhausted(MutationError):
    """Queue backlog or rate limit exhausted; retry after the hint."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "RESOURCE_EXHAUSTED")
        super().__init__(message, **kw)


class Unavailable(MutationError):
    """Service not started / shutting down."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "UNAVAILABLE")
        super().__init__(message, **kw)


class NotSupported(MutationError):
    """Unsupported operation or parameter."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "NOT_SUPPORTED")
        super().__init__(message, **kw)


class DeadlineExceeded(MutationError):
    """A bounded wait ran out of time."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "DEADLINE_EXCEEDED")
        super().__init__(message, **kw)


def op_error_details(
    index: Optional[int],
    op: Optional[str],
    *,
    field: Optional[str] = None,
    reference: Optional[str] = None,
    hint: Optional[str] = None,
    message: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Build the details block shared by every per-operation error.

    ``index`` is 0-based; ``op_number`` and ``path`` are derived from it so
    callers can point at the exact change record.
    """
    details: Dict[str, Any] = {
        "op_index": index,
        "op_number": (index + 1) if index is not None else None,
        "path": f"/changes/{index}" if index is not None else None,
        "op": op,
        "field": field,
        "reference": reference,
        "hint": hint,
    }
    if message is not None:
        details["message"] = message
    details.update(extra)
    return details


# =============================================================================
# Context + Metrics
# =============================================================================

@dataclass(frozen=True)
class OperationContext:
    """
    Context for mutation requests.

    Attributes:
        request_id: Correlation ID for tracing.
        idempotency_key: Replay guard for apply requests.
        deadline_ms: Absolute epoch ms for the request.
        traceparent: W3C traceparent header.
        tenant: Tenant / customer / app identifier (never logged raw).
        attrs: Extra attributes for middleware / routing (SIEM-safe).
    """
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    deadline_ms: Optional[int] = None
    traceparent: Optional[str] = None
    tenant: Optional[str] = None
    attrs: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if self.attrs is None:
            object.__setattr__(self, "attrs", {})

    def remaining_ms(self) -> Optional[int]:
        """Return non-negative ms remaining until deadline, or None."""
        if self.deadline_ms is None:
            return None
        return max(0, self.deadline_ms - now_ms())


class MetricsSink(Protocol):
    """
    Metrics collection protocol (low-cardinality; SIEM-safe).
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...


class NoopMetrics:
    def observe(self, **_: Any) -> None:
        ...
    def counter(self, **_: Any) -> None:
        ...


# =============================================================================
# Configuration
# =============================================================================

def _env_int(name: str, default: int) -> int:
    """
    Parse an integer environment variable, ignoring blank or malformed values.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        LOG.warning("Ignoring non-integer value for %s: %r", name, raw)
        return default


@dataclass(frozen=True)
class BatchConfig:
    """
    Tunables for the execution queue and request validation.

    Attributes:
        processor_interval_ms: Consumer tick cadence.
        max_ops_per_cycle: Queued operations drained per tick (one at a time).
        cleanup_every_cycles: Ticks between retention sweeps.
        max_operation_age_ms: Terminal descriptors older than this are evicted.
        operation_timeout_ms: Processing longer than this is marked as error.
        timeout_sweep_interval_ms: Cadence of the independent timeout sweep.
        snapshot_refresh_delay_ms: Quiescence delay before a snapshot refresh.
        max_changes_per_request: Upper bound on changes in one apply request.
        max_queued_operations: Backlog bound before ResourceExhausted.
        throttle_retry_after_ms: Retry hint attached to backlog rejections.
        default_list_limit: Page size for list queries without a limit.
        max_list_limit: Hard page-size ceiling for list queries.
    """
    processor_interval_ms: int = 50
    max_ops_per_cycle: int = 10
    cleanup_every_cycles: int = 100
    max_operation_age_ms: int = 3_600_000
    operation_timeout_ms: int = 60_000
    timeout_sweep_interval_ms: int = 1_000
    snapshot_refresh_delay_ms: int = 100
    max_changes_per_request: int = 1_000
    max_queued_operations: int = 100
    throttle_retry_after_ms: int = 1_000
    default_list_limit: int = 20
    max_list_limit: int = 200

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{f.name} must be an integer")
            if f.name == "snapshot_refresh_delay_ms":
                if value < 0:
                    raise ValueError(f"{f.name} must be >= 0")
            elif value < 1:
                raise ValueError(f"{f.name} must be >= 1")
        if self.default_list_limit > self.max_list_limit:
            raise ValueError("default_list_limit cannot exceed max_list_limit")

    @classmethod
    def from_env(cls, prefix: str = "MUTATION_", **overrides: Any) -> "BatchConfig":
        """
        Build a config from ``<prefix><FIELD_NAME>`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: Dict[str, Any] = {}
        for f in fields(cls):
            values[f.name] = _env_int(f"{prefix}{f.name.upper()}", f.default)
        values.update(overrides)
        return cls(**values)


# =============================================================================
# Store collaborator boundary
# =============================================================================

StoreListener = Callable[[str], None]


@runtime_checkable
class ModelStore(Protocol):
    """
    Single-writer model store the execution queue mutates.

    Mutation primitives raise StoreError (EntityNotFound for missing
    references, with messages shaped like ``cannot find node: <id>``).
    ``transaction(label)`` wraps a group of primitives into one undoable
    unit; an exception inside it rolls every primitive of the group back.
    Listeners receive a short reason string ("commit", "undo", "redo", ...).
    """

    def transaction(self, label: str) -> ContextManager[None]: ...

    def export(self) -> Mapping[str, Any]: ...

    def add_listener(self, listener: StoreListener) -> None: ...

    def remove_listener(self, listener: StoreListener) -> None: ...

    def undo(self) -> bool: ...

    def redo(self) -> bool: ...

    def get_node(self, node_id: str) -> Optional[Mapping[str, Any]]: ...

    def get_edge(self, edge_id: str) -> Optional[Mapping[str, Any]]: ...

    def get_diagram(self, diagram_id: str) -> Optional[Mapping[str, Any]]: ...

    def find_nodes(self, *, kind: str, name: str) -> List[Mapping[str, Any]]: ...

    def find_edges(
        self,
        *,
        kind: str,
        source_id: str,
        target_id: str,
        access_type: Optional[str] = None,
    ) -> List[Mapping[str, Any]]: ...

    def create_node(
        self,
        *,
        kind: str,
        name: str,
        documentation: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
        folder_id: Optional[str] = None,
    ) -> str: ...

    def update_node(self, node_id: str, **changes: Any) -> None: ...

    def delete_node(self, node_id: str, *, cascade: bool = True) -> None: ...

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
    ) -> str: ...

    def update_edge(self, edge_id: str, **changes: Any) -> None: ...

    def delete_edge(self, edge_id: str) -> None: ...

    def set_property(self, entity_id: str, key: str, value: str) -> None: ...

    def move_to_folder(self, entity_id: str, folder_id: str) -> None: ...

    def create_folder(self, *, name: str, parent_id: str) -> str: ...

    def create_diagram(
        self,
        *,
        name: str,
        folder_id: Optional[str] = None,
        documentation: Optional[str] = None,
    ) -> str: ...

    def delete_diagram(self, diagram_id: str) -> None: ...

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
    ) -> str: ...

    def add_edge_to_diagram(
        self,
        diagram_id: str,
        edge_id: str,
        *,
        source_placement_id: str,
        target_placement_id: str,
    ) -> str: ...

    def nest_in_diagram(
        self,
        diagram_id: str,
        placement_id: str,
        parent_placement_id: str,
        *,
        x: Optional[float] = None,
        y: Optional[float] = None,
    ) -> None: ...

    def move_diagram_object(self, placement_id: str, **bounds: float) -> None: ...

    def style_diagram_object(self, placement_id: str, **style: Any) -> None: ...

    def style_connection(self, connection_id: str, **style: Any) -> None: ...

    def delete_connection(self, diagram_id: str, connection_id: str) -> None: ...

    def create_note(
        self,
        diagram_id: str,
        *,
        content: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> str: ...

    def create_group(
        self,
        diagram_id: str,
        *,
        name: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> str: ...


__all__ = [
    "MUTATION_PROTOCOL_VERSION",
    "MUTATION_PROTOCOL_ID",
    "DurableID",
    "STATUS_QUEUED",
    "STATUS_PROCESSING",
    "STATUS_COMPLETE",
    "STATUS_ERROR",
    "OPERATION_STATUSES",
    "TERMINAL_STATUSES",
    "DUPLICATE_STRATEGIES",
    "now_ms",
    "tenant_hash",
    "MutationError",
    "BadRequest",
    "SchemaViolation",
    "DuplicateConflict",
    "UnresolvedReference",
    "PhaseConflictError",
    "DirectionMismatch",
    "IdempotencyConflict",
    "OperationNotFound",
    "StoreError",
    "EntityNotFound",
    "ResourceExhausted",
    "Unavailable",
    "NotSupported",
    "DeadlineExceeded",
    "op_error_details",
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",
    "BatchConfig",
    "ModelStore",
    "StoreListener",
]

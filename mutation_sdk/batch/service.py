# mutation_sdk/batch/service.py
# SPDX-License-Identifier: Apache-2.0
"""
Mutation service facade and wire surface.

MutationService owns one snapshot, validator, executor and execution queue
over a single model store, and is the only thing callers talk to:

    service = MutationService(store, config=BatchConfig.from_env())
    async with service:
        accepted = await service.apply(changes, idempotency_key="import-42")
        status = await service.wait_for(accepted["operation_id"])

apply() runs preflight validation synchronously (nothing is mutated when it
raises) and returns as soon as the batch is queued.

WireMutationHandler maps canonical JSON envelopes onto the service;
WireMutationClient is the reverse, turning error envelopes back into the
typed exception taxonomy so remote and in-process callers handle failures
the same way.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Type

from mutation_sdk.batch import batch_base
from mutation_sdk.batch.batch_base import (
    BadRequest,
    BatchConfig,
    DeadlineExceeded,
    EntityNotFound,
    IdempotencyConflict,
    MetricsSink,
    ModelStore,
    MutationError,
    NoopMetrics,
    NotSupported,
    OperationContext,
    OperationNotFound,
    Unavailable,
    tenant_hash,
)
from mutation_sdk.batch.executor import BatchExecutor
from mutation_sdk.batch.operations import normalize_change
from mutation_sdk.batch.queue import ExecutionQueue
from mutation_sdk.batch.snapshot import ModelSnapshot
from mutation_sdk.batch.validation import PreflightValidator, validate_idempotency_key
from mutation_sdk.batch.vocabulary import DEFAULT_VOCABULARY, Vocabulary

LOG = logging.getLogger(__name__)


def _payload_hash(changes: Any, duplicate_strategy: Optional[str]) -> str:
    raw = json.dumps(
        {"changes": changes, "duplicate_strategy": duplicate_strategy},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class MutationService:
    """
    Validates, queues and tracks change batches against one model store.

    Components are created per instance; two services never share a queue.
    """

    _component = "mutation"

    def __init__(
        self,
        store: ModelStore,
        *,
        config: Optional[BatchConfig] = None,
        metrics: Optional[MetricsSink] = None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
    ) -> None:
        self._store = store
        self._config = config or BatchConfig()
        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._snapshot = ModelSnapshot(
            store,
            vocabulary=vocabulary,
            refresh_delay_ms=self._config.snapshot_refresh_delay_ms,
        )
        self._validator = PreflightValidator(
            self._snapshot,
            vocabulary=vocabulary,
            max_changes=self._config.max_changes_per_request,
        )
        self._executor = BatchExecutor(store, vocabulary=vocabulary)
        self._queue = ExecutionQueue(
            self._executor,
            self._snapshot,
            config=self._config,
            metrics=self._metrics,
        )
        # idempotency key -> (payload hash, operation id, duplicates)
        self._idempotency: Dict[str, Tuple[str, str, List[Dict[str, Any]]]] = {}
        self._closed = False

    # ---- lifecycle ----------------------------------------------------------

    @property
    def config(self) -> BatchConfig:
        return self._config

    @property
    def snapshot(self) -> ModelSnapshot:
        return self._snapshot

    @property
    def queue(self) -> ExecutionQueue:
        return self._queue

    async def start(self) -> "MutationService":
        if self._closed:
            raise Unavailable("mutation service is closed")
        self._snapshot.capture()
        self._queue.start()
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.close()
        self._snapshot.detach()

    async def __aenter__(self) -> "MutationService":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ---- internal helpers ---------------------------------------------------

    def _record(
        self,
        op: str,
        t0: float,
        ok: bool,
        *,
        code: str = "OK",
        ctx: Optional[OperationContext] = None,
        **extra: Any,
    ) -> None:
        try:
            ms = (time.monotonic() - t0) * 1000.0
            x = dict(extra or {})
            if ctx:
                th = tenant_hash(ctx.tenant)
                if th:
                    x.setdefault("tenant_hash", th)
            self._metrics.observe(
                component=self._component,
                op=op,
                ms=ms,
                ok=ok,
                code=code,
                extra=x or None,
            )
        except Exception:
            # never let metrics break caller
            pass

    def _require_open(self) -> None:
        if self._closed:
            raise Unavailable("mutation service is closed")

    @staticmethod
    def _fail_if_deadline_expired(ctx: Optional[OperationContext]) -> None:
        if ctx is None:
            return
        rem = ctx.remaining_ms()
        if rem is not None and rem <= 0:
            raise DeadlineExceeded("deadline already expired")

    # ---- apply --------------------------------------------------------------

    async def apply(
        self,
        changes: Any,
        *,
        idempotency_key: Optional[str] = None,
        duplicate_strategy: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        """
        Validate and queue a batch.

        Returns ``{operation_id, status, change_count, duplicates, replayed}``.
        Raises a BadRequest subclass when preflight rejects the batch, and
        ResourceExhausted when the queue backlog is full.
        """
        t0 = time.monotonic()
        ctx = ctx or OperationContext()
        try:
            self._require_open()
            self._fail_if_deadline_expired(ctx)
            key = validate_idempotency_key(idempotency_key or ctx.idempotency_key)
            if isinstance(changes, list):
                changes = [normalize_change(c) if isinstance(c, Mapping) else c for c in changes]

            digest = None
            if key is not None:
                digest = _payload_hash(changes, duplicate_strategy)
                replay = self._replay(key, digest)
                if replay is not None:
                    self._record("apply", t0, True, ctx=ctx, replayed=True)
                    return replay

            report = self._validator.validate(changes, duplicate_strategy=duplicate_strategy)
            view = self._queue.submit(
                report.ops,
                duplicate_strategy=duplicate_strategy,
                request_id=ctx.request_id,
            )
            duplicates = [d.to_dict() for d in report.duplicates]
            if key is not None:
                self._idempotency[key] = (digest, view["operation_id"], duplicates)
        except MutationError as e:
            self._record("apply", t0, False, code=e.code or type(e).__name__, ctx=ctx)
            raise
        except Exception:
            self._record("apply", t0, False, code="UNAVAILABLE", ctx=ctx)
            raise

        self._record("apply", t0, True, ctx=ctx, changes=len(report.ops))
        return {
            "operation_id": view["operation_id"],
            "status": view["status"],
            "change_count": view["change_count"],
            "duplicates": duplicates,
            "replayed": False,
        }

    def _replay(self, key: str, digest: str) -> Optional[Dict[str, Any]]:
        entry = self._idempotency.get(key)
        if entry is None:
            return None
        stored_digest, operation_id, duplicates = entry
        try:
            view = self._queue.get(operation_id)
        except OperationNotFound:
            # the operation was evicted; the key expires with it
            del self._idempotency[key]
            return None
        if stored_digest != digest:
            raise IdempotencyConflict(
                f"idempotency key '{key}' was already used with a different payload",
                details={"idempotency_key": key, "operation_id": operation_id},
            )
        LOG.debug("replayed idempotency key %s -> %s", key, operation_id)
        return {
            "operation_id": operation_id,
            "status": view["status"],
            "change_count": view["change_count"],
            "duplicates": duplicates,
            "replayed": True,
        }

    # ---- status + queries ---------------------------------------------------

    async def get_status(self, operation_id: str, *, ctx: Optional[OperationContext] = None) -> Dict[str, Any]:
        t0 = time.monotonic()
        try:
            view = self._queue.get(operation_id)
        except MutationError as e:
            self._record("status", t0, False, code=e.code or "NOT_FOUND", ctx=ctx)
            raise
        self._record("status", t0, True, ctx=ctx)
        return view

    async def wait_for(
        self,
        operation_id: str,
        *,
        timeout_ms: int = 120_000,
        poll_interval_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._queue.wait_for(
            operation_id, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms
        )

    async def list_operations(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        t0 = time.monotonic()
        res = self._queue.list(status=status, limit=limit)
        self._record("list", t0, True, ctx=ctx)
        return res

    async def queue_stats(self) -> Dict[str, int]:
        return self._queue.stats()

    async def model_summary(self, sample_limit: int = 10) -> Dict[str, Any]:
        """Counts plus the first ``sample_limit`` nodes, edges and diagrams."""
        if self._snapshot.is_stale:
            LOG.warning("model snapshot is stale; recapturing before read")
        self._snapshot.ensure_fresh()
        return self._snapshot.sample(sample_limit)

    async def diagnostics(self) -> Dict[str, Any]:
        self._snapshot.ensure_fresh()
        return self._snapshot.diagnostics()

    async def get_node(self, node_id: str) -> Dict[str, Any]:
        row = self._store.get_node(node_id)
        if row is None:
            raise EntityNotFound(f"cannot find node: {node_id}", details={"id": node_id})
        return dict(row)

    async def get_edge(self, edge_id: str) -> Dict[str, Any]:
        row = self._store.get_edge(edge_id)
        if row is None:
            raise EntityNotFound(f"cannot find edge: {edge_id}", details={"id": edge_id})
        return dict(row)

    async def get_diagram(self, diagram_id: str) -> Dict[str, Any]:
        """Diagram with its placements and connections."""
        row = self._store.get_diagram(diagram_id)
        if row is None:
            raise EntityNotFound(f"cannot find diagram: {diagram_id}", details={"id": diagram_id})
        return dict(row)


# =============================================================================
# Wire-Level Helpers (canonical envelopes)
# =============================================================================

def _ctx_from_wire(ctx_dict: Optional[Mapping[str, Any]]) -> OperationContext:
    """
    Convert wire-level ctx dict to OperationContext. Unknown keys are ignored.
    """
    if ctx_dict is None:
        return OperationContext()
    return OperationContext(
        request_id=ctx_dict.get("request_id"),
        idempotency_key=ctx_dict.get("idempotency_key"),
        deadline_ms=ctx_dict.get("deadline_ms"),
        traceparent=ctx_dict.get("traceparent"),
        tenant=ctx_dict.get("tenant"),
        attrs=ctx_dict.get("attrs") or {},
    )


def _error_to_wire(e: Exception, ms: float) -> Dict[str, Any]:
    """
    Map MutationError (or unexpected Exception) to canonical error envelope.
    """
    if isinstance(e, MutationError):
        return {
            "ok": False,
            "code": e.code or type(e).__name__.upper(),
            "error": type(e).__name__,
            "message": e.message,
            "retry_after_ms": e.retry_after_ms,
            "details": e.details or None,
            "ms": ms,
        }
    return {
        "ok": False,
        "code": "UNAVAILABLE",
        "error": type(e).__name__,
        "message": str(e) or "internal error",
        "retry_after_ms": None,
        "details": None,
        "ms": ms,
    }


def _success_to_wire(result: Any, ms: float) -> Dict[str, Any]:
    if hasattr(result, "__dataclass_fields__"):
        payload = asdict(result)
    else:
        payload = result
    return {
        "ok": True,
        "code": "OK",
        "ms": ms,
        "result": payload,
    }


def _error_classes() -> Dict[str, Type[MutationError]]:
    classes: Dict[str, Type[MutationError]] = {}
    for name in batch_base.__all__:
        obj = getattr(batch_base, name)
        if isinstance(obj, type) and issubclass(obj, MutationError):
            classes[name] = obj
    return classes


_ERROR_CLASSES = _error_classes()


def _error_from_wire(envelope: Mapping[str, Any]) -> MutationError:
    """Rebuild the typed exception an error envelope was produced from."""
    cls = _ERROR_CLASSES.get(str(envelope.get("error")), MutationError)
    return cls(
        envelope.get("message") or "",
        code=envelope.get("code"),
        retry_after_ms=envelope.get("retry_after_ms"),
        details=envelope.get("details") or None,
    )


def _require_str(args: Mapping[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value:
        raise BadRequest(f"'{name}' must be a non-empty string", details={"field": name})
    return value


class WireMutationHandler:
    """
    Reference wire adapter for MutationService.

    Transport-agnostic: plug into HTTP, a tool-call router, stdio, etc.
    """

    def __init__(self, service: MutationService):
        self._service = service

    async def handle(self, envelope: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Handle mutation operations via JSON envelope.

        Supported ops:
            - mutation.apply
            - mutation.status
            - mutation.list
            - mutation.stats
            - mutation.model
            - mutation.diagnostics
            - mutation.get_node
            - mutation.get_edge
            - mutation.get_diagram
        """
        t0 = time.monotonic()
        try:
            op = envelope.get("op")
            if not isinstance(op, str):
                raise BadRequest("missing or invalid 'op'")

            ctx = _ctx_from_wire(envelope.get("ctx") or {})
            args = envelope.get("args") or {}

            if op == "mutation.apply":
                res = await self._service.apply(
                    args.get("changes"),
                    idempotency_key=args.get("idempotency_key"),
                    duplicate_strategy=args.get("duplicate_strategy"),
                    ctx=ctx,
                )
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.status":
                res = await self._service.get_status(_require_str(args, "operation_id"), ctx=ctx)
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.list":
                res = await self._service.list_operations(
                    args.get("status"), args.get("limit"), ctx=ctx
                )
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.stats":
                res = await self._service.queue_stats()
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.model":
                res = await self._service.model_summary(int(args.get("sample_limit", 10)))
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.diagnostics":
                res = await self._service.diagnostics()
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.get_node":
                res = await self._service.get_node(_require_str(args, "id"))
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.get_edge":
                res = await self._service.get_edge(_require_str(args, "id"))
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            if op == "mutation.get_diagram":
                res = await self._service.get_diagram(_require_str(args, "id"))
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            raise NotSupported(f"unknown or non-unary operation '{op}'")
        except Exception as e:
            ms = (time.monotonic() - t0) * 1000.0
            return _error_to_wire(e, ms)


class EnvelopeHandler(Protocol):
    async def handle(self, envelope: Mapping[str, Any]) -> Dict[str, Any]: ...


class WireMutationClient:
    """
    Client over any envelope handler (in-process or behind a transport).

    Method signatures mirror MutationService, so the chunking orchestrator
    accepts either.
    """

    def __init__(self, handler: EnvelopeHandler, *, ctx: Optional[Mapping[str, Any]] = None):
        self._handler = handler
        self._ctx = dict(ctx or {})

    async def _call(self, op: str, **args: Any) -> Any:
        envelope = {"op": f"mutation.{op}", "ctx": self._ctx, "args": args}
        response = await self._handler.handle(envelope)
        if not response.get("ok"):
            raise _error_from_wire(response)
        return response.get("result")

    async def apply(
        self,
        changes: Any,
        *,
        idempotency_key: Optional[str] = None,
        duplicate_strategy: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._call(
            "apply",
            changes=changes,
            idempotency_key=idempotency_key,
            duplicate_strategy=duplicate_strategy,
        )

    async def get_status(self, operation_id: str) -> Dict[str, Any]:
        return await self._call("status", operation_id=operation_id)

    async def list_operations(self, status: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        return await self._call("list", status=status, limit=limit)

    async def queue_stats(self) -> Dict[str, int]:
        return await self._call("stats")

    async def model_summary(self, sample_limit: int = 10) -> Dict[str, Any]:
        return await self._call("model", sample_limit=sample_limit)

    async def diagnostics(self) -> Dict[str, Any]:
        return await self._call("diagnostics")

    async def get_node(self, node_id: str) -> Dict[str, Any]:
        return await self._call("get_node", id=node_id)

    async def get_edge(self, edge_id: str) -> Dict[str, Any]:
        return await self._call("get_edge", id=edge_id)

    async def get_diagram(self, diagram_id: str) -> Dict[str, Any]:
        return await self._call("get_diagram", id=diagram_id)


__all__ = [
    "MutationService",
    "WireMutationHandler",
    "WireMutationClient",
    "EnvelopeHandler",
]

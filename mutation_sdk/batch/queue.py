# mutation_sdk/batch/queue.py
# SPDX-License-Identifier: Apache-2.0
"""
Asynchronous execution queue.

Accepted chunks are queued as operation descriptors and executed by a single
consumer task, one at a time, each as one store transaction. Callers never
wait on execution: they get a status view back from submit() and poll it.

Lifecycle of a descriptor:

    queued ──► processing ──► complete
                    │
                    └──────► error   (executor failure or timeout sweep)

Terminal states are final. The executor's result is stored on the
descriptor as soon as the transaction commits, before the snapshot refresh,
so a timeout that fires during the refresh still carries the committed
result and temp id map (``error_details["committed"]`` is true). Terminal
descriptors are evicted once they are older than the retention window.

When a chunk fails at runtime the queue maps the failure back to the change
record that caused it: first by replaying temp id phase availability, then
from the failing op index the executor attaches to the exception, then by
matching the store's error message against the batch's reference fields.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from mutation_sdk.batch.batch_base import (
    OPERATION_STATUSES,
    STATUS_COMPLETE,
    STATUS_ERROR,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    BadRequest,
    BatchConfig,
    DeadlineExceeded,
    MetricsSink,
    MutationError,
    NoopMetrics,
    OperationNotFound,
    ResourceExhausted,
    now_ms,
    op_error_details,
)
from mutation_sdk.batch.executor import BatchExecutor
from mutation_sdk.batch.operations import ChangeOperation
from mutation_sdk.batch.snapshot import ModelSnapshot
from mutation_sdk.batch.tempids import extract_temp_id_mappings, find_phase_conflict
from mutation_sdk.core.error_context import attach_context, get_context

LOG = logging.getLogger(__name__)

TIMEOUT_HINT = "Operation exceeded timeout while in processing state"

# Store error messages → the reference field they most likely came from.
# More specific patterns come first.
_REFERENCE_PATTERNS: Tuple[Tuple["re.Pattern[str]", str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"cannot find node to delete:\s*([^\s,;]+)", "id"),
        (r"cannot find edge to delete:\s*([^\s,;]+)", "id"),
        (r"cannot find diagram to delete:\s*([^\s,;]+)", "diagram_id"),
        (r"cannot find node:\s*([^\s,;]+)", "node_id"),
        (r"cannot find edge:\s*([^\s,;]+)", "edge_id"),
        (r"cannot find diagram:\s*([^\s,;]+)", "diagram_id"),
        (r"cannot find placement:\s*([^\s,;]+)", "placement_id"),
        (r"cannot find connection:\s*([^\s,;]+)", "connection_id"),
        (r"cannot find folder:\s*([^\s,;]+)", "folder_id"),
        (r"cannot find entity:\s*([^\s,;]+)", "id"),
    )
)


def extract_reference(message: str) -> Optional[Tuple[str, str]]:
    """(field, reference) named by a store error message, if recognizable."""
    if not message:
        return None
    for regex, name in _REFERENCE_PATTERNS:
        m = regex.search(message)
        if m:
            return name, m.group(1).strip("'\"")
    return None


def _new_operation_id() -> str:
    return f"op_{now_ms()}_{random.getrandbits(32):08x}"


@dataclass
class OperationDescriptor:
    """
    Queue-owned record of one submitted chunk.

    Timestamps are epoch milliseconds.
    """
    id: str
    ops: List[ChangeOperation]
    duplicate_strategy: Optional[str] = None
    label: str = "Apply changes"
    request_id: Optional[str] = None
    status: str = STATUS_QUEUED
    created_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def changes(self) -> List[Dict[str, Any]]:
        return [op.to_wire() for op in self.ops]

    def to_status_view(self) -> Dict[str, Any]:
        duration = None
        if self.started_at is not None and self.completed_at is not None:
            duration = self.completed_at - self.started_at
        return {
            "operation_id": self.id,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": duration,
            "change_count": len(self.ops),
            "result": self.result,
            "error": self.error,
            "error_details": self.error_details,
        }


class ExecutionQueue:
    """
    Single-consumer queue of chunk transactions.

    The consumer drains up to ``max_ops_per_cycle`` descriptors per tick,
    strictly one after another. A tick that fires while the previous one is
    still running does nothing.
    """

    def __init__(
        self,
        executor: BatchExecutor,
        snapshot: ModelSnapshot,
        *,
        config: Optional[BatchConfig] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._executor = executor
        self._snapshot = snapshot
        self._config = config or BatchConfig()
        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._clock = clock
        self._operations: Dict[str, OperationDescriptor] = {}
        self._pending: Deque[str] = deque()
        self._busy = False
        self._cycles = 0
        self._consumer: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None

    # ---- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._consumer = loop.create_task(self._consume(), name="mutation-queue-consumer")
        self._sweeper = loop.create_task(self._sweep(), name="mutation-queue-timeouts")
        LOG.info(
            "execution queue started (interval=%dms, max_ops_per_cycle=%d)",
            self._config.processor_interval_ms,
            self._config.max_ops_per_cycle,
        )

    async def close(self) -> None:
        tasks = [t for t in (self._consumer, self._sweeper) if t is not None]
        self._consumer = self._sweeper = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            LOG.info("execution queue stopped (%d queued operation(s) left)", len(self._pending))

    async def _consume(self) -> None:
        interval = self._config.processor_interval_ms / 1000.0
        while True:
            await self.run_cycle()
            await asyncio.sleep(interval)

    async def _sweep(self) -> None:
        interval = self._config.timeout_sweep_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.sweep_timeouts()

    # ---- submission ---------------------------------------------------------

    def submit(
        self,
        ops: Sequence[ChangeOperation],
        *,
        duplicate_strategy: Optional[str] = None,
        label: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Queue a validated chunk and return its status view."""
        if not ops:
            raise BadRequest("cannot queue an empty batch", details={"field": "changes"})
        if len(self._pending) >= self._config.max_queued_operations:
            self._count("throttled")
            raise ResourceExhausted(
                f"execution queue is full ({len(self._pending)} operations queued)",
                retry_after_ms=self._config.throttle_retry_after_ms,
                details={"queued": len(self._pending), "max_queued": self._config.max_queued_operations},
            )
        desc = OperationDescriptor(
            id=_new_operation_id(),
            ops=list(ops),
            duplicate_strategy=duplicate_strategy,
            label=label or f"Apply {len(ops)} change(s)",
            request_id=request_id,
            created_at=self._clock(),
        )
        self._operations[desc.id] = desc
        self._pending.append(desc.id)
        self._count("operations_enqueued")
        LOG.debug("queued %s with %d change(s)", desc.id, len(desc.ops))
        return desc.to_status_view()

    # ---- processing ---------------------------------------------------------

    async def run_cycle(self) -> int:
        """One consumer tick. Returns the number of descriptors executed."""
        if self._busy:
            return 0
        self._busy = True
        processed = 0
        try:
            while self._pending and processed < self._config.max_ops_per_cycle:
                desc = self._operations.get(self._pending.popleft())
                if desc is None or desc.status != STATUS_QUEUED:
                    continue
                await self._process(desc)
                processed += 1
        finally:
            self._busy = False
        self._cycles += 1
        if self._cycles % self._config.cleanup_every_cycles == 0:
            self.evict_expired()
        return processed

    async def _process(self, desc: OperationDescriptor) -> None:
        desc.status = STATUS_PROCESSING
        desc.started_at = self._clock()
        try:
            with self._snapshot.ignore_changes():
                results = self._executor.execute(
                    desc.ops, duplicate_strategy=desc.duplicate_strategy, label=desc.label
                )
        except Exception as exc:
            attach_context(exc, "queue", operation_id=desc.id)
            self._fail(desc, exc)
            self._snapshot.mark_stale()
            return

        # committed from here on
        desc.result = {
            "results": results,
            "temp_id_map": extract_temp_id_mappings(results),
            "operations_applied": len(results),
        }
        try:
            await self._snapshot.refresh()
        except asyncio.CancelledError:
            self._snapshot.mark_stale()
            self._complete(desc)
            raise
        except Exception as exc:
            LOG.warning("snapshot refresh after %s failed: %s", desc.id, exc)
            self._snapshot.mark_stale()
        self._complete(desc)

    def _complete(self, desc: OperationDescriptor) -> None:
        if desc.status != STATUS_PROCESSING:
            LOG.warning(
                "%s committed but reached %s during snapshot refresh; result kept on the descriptor",
                desc.id,
                desc.status,
            )
            return
        desc.status = STATUS_COMPLETE
        desc.completed_at = self._clock()
        self._count("operations_completed")
        LOG.info("%s complete (%d change(s))", desc.id, desc.result["operations_applied"])

    def _fail(self, desc: OperationDescriptor, exc: BaseException) -> None:
        message, details = self.describe_failure(desc.ops, exc)
        details.setdefault("operation_id", get_context(exc, component="queue").get("operation_id"))
        if desc.status != STATUS_PROCESSING:
            return
        desc.status = STATUS_ERROR
        desc.error = message
        desc.error_details = details
        desc.completed_at = self._clock()
        self._count("operations_failed")
        LOG.info("%s failed: %s", desc.id, message)

    def describe_failure(
        self,
        ops: Sequence[ChangeOperation],
        exc: BaseException,
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Error message and details pointing at the change record that failed.
        """
        raw = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        code = getattr(exc, "code", None) or "STORE_ERROR"

        conflict = find_phase_conflict(ops)
        if conflict is not None:
            details = conflict.to_details()
            details.update(code="PHASE_CONFLICT", store_message=raw)
            return conflict.message, details

        if isinstance(exc, MutationError) and exc.details.get("op_index") is not None:
            details = dict(exc.details)
            details.setdefault("message", raw)
            details.setdefault("code", code)
            return raw, details

        index = get_context(exc).get("op_index")
        ref = extract_reference(raw)
        located = self._locate(ops, index, ref)
        if located is None:
            details = op_error_details(index, ops[index].OP if index is not None else None, message=raw)
            details["code"] = code
            return raw, details

        index, name, value = located
        hint = None
        if value is not None:
            hint = f"{name} refers to '{value}' which was not found in the model"
        details = op_error_details(index, ops[index].OP, field=name, reference=value, hint=hint, message=raw)
        details["code"] = code
        return f"{ops[index].OP} at /changes/{index}: {raw}", details

    @staticmethod
    def _locate(
        ops: Sequence[ChangeOperation],
        index: Optional[int],
        ref: Optional[Tuple[str, str]],
    ) -> Optional[Tuple[int, Optional[str], Optional[str]]]:
        if ref is None:
            return (index, None, None) if index is not None else None
        name, value = ref
        if index is not None and 0 <= index < len(ops):
            refs = dict(ops[index].references())
            for candidate, v in refs.items():
                if v == value:
                    return index, candidate, value
            return index, name, value
        for i, op in enumerate(ops):
            if dict(op.references()).get(name) == value:
                return i, name, value
        for i, op in enumerate(ops):
            for candidate, v in op.references():
                if v == value:
                    return i, candidate, value
        return None

    # ---- timeouts + retention -----------------------------------------------

    def sweep_timeouts(self) -> int:
        """
        Fail every descriptor stuck in processing past the timeout.

        A descriptor whose transaction already committed keeps its result;
        the error details flag it as committed and repeat its temp id map.
        """
        now = self._clock()
        limit = self._config.operation_timeout_ms
        timed_out = 0
        for desc in self._operations.values():
            if desc.status != STATUS_PROCESSING or desc.started_at is None:
                continue
            elapsed = now - desc.started_at
            if elapsed <= limit:
                continue
            desc.status = STATUS_ERROR
            desc.error = f"Operation timed out after {round(elapsed / 1000)} seconds"
            desc.error_details = {
                "message": desc.error,
                "hint": TIMEOUT_HINT,
                "code": "DEADLINE_EXCEEDED",
                "elapsed_ms": elapsed,
                "timeout_ms": limit,
                "committed": desc.result is not None,
            }
            if desc.result is not None:
                desc.error_details["temp_id_map"] = dict(desc.result["temp_id_map"])
            desc.completed_at = now
            timed_out += 1
            self._count("operations_timed_out")
            LOG.warning("%s timed out after %dms (limit %dms)", desc.id, elapsed, limit)
        return timed_out

    def evict_expired(self, now: Optional[int] = None) -> int:
        """Drop terminal descriptors completed before the retention window."""
        cutoff = (self._clock() if now is None else now) - self._config.max_operation_age_ms
        expired = [
            op_id
            for op_id, desc in self._operations.items()
            if desc.terminal and desc.completed_at is not None and desc.completed_at < cutoff
        ]
        for op_id in expired:
            del self._operations[op_id]
        if expired:
            self._count("operations_evicted", len(expired))
            LOG.debug("evicted %d expired operation(s)", len(expired))
        return len(expired)

    # ---- queries ------------------------------------------------------------

    def descriptor(self, operation_id: str) -> OperationDescriptor:
        desc = self._operations.get(operation_id)
        if desc is None:
            raise OperationNotFound(
                f"operation '{operation_id}' not found",
                details={"operation_id": operation_id},
            )
        return desc

    def get(self, operation_id: str) -> Dict[str, Any]:
        return self.descriptor(operation_id).to_status_view()

    def list(self, status: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """Newest-first status views, optionally filtered by status."""
        if status is not None and status not in OPERATION_STATUSES:
            raise BadRequest(
                f"status must be one of {', '.join(OPERATION_STATUSES)}",
                details={"field": "status"},
            )
        if limit is None:
            limit = self._config.default_list_limit
        limit = max(1, min(int(limit), self._config.max_list_limit))
        matching = [d for d in self._operations.values() if status is None or d.status == status]
        # insertion order breaks created_at ties
        newest = [d for _, d in sorted(enumerate(matching), key=lambda p: (p[1].created_at, p[0]), reverse=True)]
        return {
            "operations": [d.to_status_view() for d in newest[:limit]],
            "total": len(matching),
            "limit": limit,
            "status": status,
        }

    def stats(self) -> Dict[str, int]:
        counts = {s: 0 for s in OPERATION_STATUSES}
        for desc in self._operations.values():
            counts[desc.status] += 1
        return {
            "queue_size": len(self._pending),
            "queued": counts[STATUS_QUEUED],
            "processing": counts[STATUS_PROCESSING],
            "complete": counts[STATUS_COMPLETE],
            "error": counts[STATUS_ERROR],
            "total": len(self._operations),
        }

    async def wait_for(
        self,
        operation_id: str,
        *,
        timeout_ms: int = 120_000,
        poll_interval_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Poll until the descriptor is terminal; DeadlineExceeded otherwise."""
        interval = (poll_interval_ms or self._config.processor_interval_ms) / 1000.0
        deadline = now_ms() + timeout_ms
        while True:
            view = self.get(operation_id)
            if view["status"] in TERMINAL_STATUSES:
                return view
            if now_ms() >= deadline:
                raise DeadlineExceeded(
                    f"operation '{operation_id}' still {view['status']} after {timeout_ms}ms",
                    details={"operation_id": operation_id, "status": view["status"]},
                )
            await asyncio.sleep(interval)

    # ---- metrics ------------------------------------------------------------

    def _count(self, name: str, value: int = 1) -> None:
        try:
            self._metrics.counter(component="mutation_queue", name=name, value=value)
        except Exception:
            # never let metrics break caller
            pass


__all__ = [
    "TIMEOUT_HINT",
    "extract_reference",
    "OperationDescriptor",
    "ExecutionQueue",
]

# mutation_sdk/batch/orchestrator.py
# SPDX-License-Identifier: Apache-2.0
"""
Client-side chunking and recovery orchestrator.

Large batches are split into ordered chunks of at most ``chunk_size``
operations and submitted strictly one after another: a chunk may reference
temp ids that only resolve once the previous chunk has completed.

Per chunk:

    substitute resolved temp ids ─► auto-resolve connection placements
        ─► cross-validate connection direction ─► submit (retry throttling)
        ─► poll to a terminal status ─► merge the chunk's temp id map

The first failing chunk stops the run. Chunks before it stay committed, and
the result says exactly which ones succeeded and where the failure is, with a
targeted recovery snapshot (model counts and consistency diagnostics) to
decide how to resume.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from mutation_sdk.batch.batch_base import TERMINAL_STATUSES, MutationError
from mutation_sdk.batch.cross_validation import CrossValidationSummary, CrossValidator, mismatch_error
from mutation_sdk.batch.operations import normalize_change
from mutation_sdk.batch.retry import RetryPolicy, retry_async
from mutation_sdk.batch.tempids import (
    TempIdMap,
    extract_temp_id_mappings,
    find_duplicate_temp_ids,
    substitute_changes,
)

LOG = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 8
DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_POLL_TIMEOUT_MS = 120_000

RECOVERY_NEXT_STEP = (
    "Re-read model state, reconcile expected vs actual changes, "
    "and resume with minimal targeted batches."
)


class MutationClient(Protocol):
    """What the orchestrator needs; MutationService and WireMutationClient both fit."""

    async def apply(
        self,
        changes: Any,
        *,
        idempotency_key: Optional[str] = None,
        duplicate_strategy: Optional[str] = None,
    ) -> Mapping[str, Any]: ...

    async def get_status(self, operation_id: str) -> Mapping[str, Any]: ...

    async def model_summary(self, sample_limit: int = 10) -> Mapping[str, Any]: ...

    async def diagnostics(self) -> Mapping[str, Any]: ...

    async def get_node(self, node_id: str) -> Mapping[str, Any]: ...

    async def get_edge(self, edge_id: str) -> Mapping[str, Any]: ...

    async def get_diagram(self, diagram_id: str) -> Mapping[str, Any]: ...


@dataclass
class ChunkRecord:
    """
    Progress of one chunk.

    ``status`` is "complete", "error" (rejected or failed), or "timeout"
    (polling gave up while the chunk was still running).
    ``committed_after_timeout`` marks a chunk the server timed out after its
    transaction committed; its result is used like a completion.
    """
    chunk: int
    start_index: int
    operation_count: int
    status: str = "pending"
    operation_id: Optional[str] = None
    attempts: int = 0
    polls: int = 0
    status_history: List[str] = field(default_factory=list)
    timed_out: bool = False
    committed_after_timeout: bool = False
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    auto_resolved: Optional[Dict[str, Any]] = None
    cross_validation: Optional[Dict[str, Any]] = None


@dataclass
class ApplyResult:
    """Outcome of a chunked apply."""
    status: str
    total_operations: int
    chunks_submitted: int
    chunks_completed: int
    chunks_failed: int
    temp_id_map: Dict[str, str]
    results: List[Dict[str, Any]]
    elapsed_ms: int
    chunks: List[ChunkRecord]
    cross_validation: Dict[str, Any]
    summary: str
    failure: Optional[Dict[str, Any]] = None
    recovery: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "complete"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def split_chunks(changes: Sequence[Any], size: int) -> List[List[Any]]:
    """Ordered chunks of at most ``size`` operations."""
    size = max(1, int(size))
    return [list(changes[i:i + size]) for i in range(0, len(changes), size)]


def _span(first: int, last: int) -> str:
    return f"chunk {first}" if first == last else f"chunks {first}-{last}"


def summarize(total_chunks: int, completed: int, failure: Optional[Mapping[str, Any]]) -> str:
    """
    One-line outcome, e.g.
    ``chunks 1-2 of 3 succeeded; chunk 3 failed at operation 4``.
    """
    if not total_chunks:
        return "no changes to apply"
    if failure is None:
        return f"{_span(1, completed)} of {total_chunks} succeeded"
    where = f"chunk {failure['chunk']}"
    if completed:
        where = f"{_span(1, completed)} of {total_chunks} succeeded; {where}"
    else:
        where = f"{where} of {total_chunks}"
    if failure.get("operation_number") is not None:
        return f"{where} failed at operation {failure['operation_number']}"
    return f"{where} failed"


class ChunkedApplier:
    """
    Applies arbitrarily large batches through a MutationClient.

    Args:
        client: Server facade or wire client.
        chunk_size: Operations per submission, capped at MAX_CHUNK_SIZE.
        poll_interval_ms: Delay between status polls.
        poll_timeout_ms: Give up polling a chunk after this long.
        retry_policy: Backoff for throttled submissions.
    """

    def __init__(
        self,
        client: MutationClient,
        *,
        chunk_size: int = MAX_CHUNK_SIZE,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
        retry_policy: Optional[RetryPolicy] = None,
        recovery_sample_limit: int = 10,
    ) -> None:
        self._client = client
        self._chunk_size = max(1, min(int(chunk_size), MAX_CHUNK_SIZE))
        self._poll_interval_ms = max(1, int(poll_interval_ms))
        self._poll_timeout_ms = max(1, int(poll_timeout_ms))
        self._retry_policy = retry_policy or RetryPolicy()
        self._recovery_sample_limit = max(0, int(recovery_sample_limit))

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    async def apply(
        self,
        changes: Sequence[Any],
        *,
        idempotency_key: Optional[str] = None,
        duplicate_strategy: Optional[str] = None,
    ) -> ApplyResult:
        t0 = time.monotonic()
        normalized = [normalize_change(c) if isinstance(c, Mapping) else c for c in changes]
        chunks = split_chunks(normalized, self._chunk_size)
        temp_map = TempIdMap()
        validator = CrossValidator(self._client)
        cv_total = CrossValidationSummary()
        records: List[ChunkRecord] = []
        results: List[Dict[str, Any]] = []
        failure: Optional[Dict[str, Any]] = None
        recovery: Optional[Dict[str, Any]] = None
        submitted = 0

        LOG.debug("applying %d change(s) in %d chunk(s)", len(normalized), len(chunks))
        to_run = chunks
        try:
            # each chunk is checked alone server-side; temp ids must be unique batch-wide
            find_duplicate_temp_ids(normalized)
        except MutationError as exc:
            record = self._batch_rejection(chunks, exc)
            records.append(record)
            failure = self._failure(record)
            recovery = await self._recovery_snapshot(record, records, temp_map, len(normalized))
            LOG.warning("batch rejected before submission: %s", record.error)
            to_run = []

        for n, chunk in enumerate(to_run, start=1):
            start = (n - 1) * self._chunk_size
            record = ChunkRecord(chunk=n, start_index=start, operation_count=len(chunk))
            records.append(record)
            key = f"{idempotency_key}:chunk-{n}" if idempotency_key else None

            try:
                payload = await self._prepare(chunk, record, validator, temp_map, cv_total)
                submitted += 1
                view = await self._submit(payload, record, key, duplicate_strategy)
                record.operation_id = view.get("operation_id")
                view = await self._poll(record)
            except MutationError as exc:
                self._reject(record, exc)
                view = None

            if view is not None and self._committed(view):
                chunk_results = list((view.get("result") or {}).get("results") or [])
                mapping = (view.get("result") or {}).get("temp_id_map") or extract_temp_id_mappings(chunk_results)
                record.results = chunk_results
                results.extend(chunk_results)
                try:
                    temp_map.merge(mapping)
                except MutationError as exc:
                    # the chunk is committed; its ids just cannot join the run's map
                    self._reject(record, exc)
                    conflicting = (exc.details or {}).get("temp_id")
                    for i, change in enumerate(chunk):
                        if isinstance(change, Mapping) and change.get("temp_id") == conflicting:
                            record.error_details = dict(record.error_details or {}, op_index=i)
                            break
                    view = None
                else:
                    record.status = "complete"
                    if view.get("status") != "complete":
                        record.committed_after_timeout = True
                        LOG.warning(
                            "chunk %d/%d timed out server-side after committing; using its result",
                            n,
                            len(chunks),
                        )
                    LOG.debug("chunk %d/%d complete (%s)", n, len(chunks), record.operation_id)
                    continue

            if view is not None:
                self._terminal_failure(record, view)
            failure = self._failure(record)
            recovery = await self._recovery_snapshot(record, records, temp_map, len(normalized))
            LOG.warning("chunk %d/%d failed: %s", n, len(chunks), record.error)
            break

        completed = sum(1 for r in records if r.status == "complete")
        failed = sum(1 for r in records if r.status in ("error", "timeout"))
        if failure is None:
            status = "complete"
        elif completed:
            status = "partial_error"
        else:
            status = "error"
        return ApplyResult(
            status=status,
            total_operations=len(normalized),
            chunks_submitted=submitted,
            chunks_completed=completed,
            chunks_failed=failed,
            temp_id_map=temp_map.as_dict(),
            results=results,
            elapsed_ms=int((time.monotonic() - t0) * 1000),
            chunks=records,
            cross_validation=cv_total.to_dict(),
            summary=summarize(len(chunks), completed, failure),
            failure=failure,
            recovery=recovery,
        )

    # ---- per-chunk steps ----------------------------------------------------

    async def _prepare(
        self,
        chunk: List[Any],
        record: ChunkRecord,
        validator: CrossValidator,
        temp_map: TempIdMap,
        cv_total: CrossValidationSummary,
    ) -> List[Any]:
        mappings = [c for c in chunk if isinstance(c, Mapping)]
        if len(mappings) != len(chunk):
            # malformed records go out untouched; the server reports them
            return chunk
        resolved = temp_map.as_dict()
        validator.observe(chunk)
        payload = substitute_changes(chunk, resolved)
        record.auto_resolved = await validator.auto_resolve(payload, resolved)
        summary = await validator.validate(payload, chunk, resolved)
        record.cross_validation = summary.to_dict()
        cv_total.merge(summary)
        failed = summary.first_failure()
        if failed is not None:
            raise mismatch_error(failed)
        return payload

    async def _submit(
        self,
        payload: List[Any],
        record: ChunkRecord,
        key: Optional[str],
        duplicate_strategy: Optional[str],
    ) -> Mapping[str, Any]:
        async def attempt() -> Mapping[str, Any]:
            record.attempts += 1
            return await self._client.apply(
                payload, idempotency_key=key, duplicate_strategy=duplicate_strategy
            )

        return await retry_async(attempt, policy=self._retry_policy)

    async def _poll(self, record: ChunkRecord) -> Mapping[str, Any]:
        started = time.monotonic()
        while True:
            view = await self._client.get_status(record.operation_id)
            record.polls += 1
            record.status_history.append(view.get("status"))
            if view.get("status") in TERMINAL_STATUSES:
                return view
            elapsed = (time.monotonic() - started) * 1000.0
            if elapsed >= self._poll_timeout_ms:
                record.timed_out = True
                return view
            await asyncio.sleep(min(self._poll_interval_ms, self._poll_timeout_ms - elapsed) / 1000.0)

    @staticmethod
    def _committed(view: Mapping[str, Any]) -> bool:
        if view.get("status") == "complete":
            return True
        details = view.get("error_details") or {}
        # a server timeout that fired after the transaction committed
        return bool(details.get("committed")) and bool(view.get("result"))

    def _batch_rejection(self, chunks: Sequence[Sequence[Any]], exc: MutationError) -> ChunkRecord:
        index = (exc.details or {}).get("op_index") or 0
        n = index // self._chunk_size + 1
        record = ChunkRecord(
            chunk=n,
            start_index=(n - 1) * self._chunk_size,
            operation_count=len(chunks[n - 1]),
        )
        self._reject(record, exc)
        local = index - record.start_index
        record.error_details = dict(
            record.error_details or {}, op_index=local, op_number=local + 1, batch_index=index
        )
        return record

    @staticmethod
    def _reject(record: ChunkRecord, exc: MutationError) -> None:
        record.status = "error"
        record.error = exc.message or str(exc)
        record.error_code = exc.code
        record.error_details = dict(exc.details or {}) or None

    def _terminal_failure(self, record: ChunkRecord, view: Mapping[str, Any]) -> None:
        if record.timed_out:
            record.status = "timeout"
            record.error = f"Polling timed out after {self._poll_timeout_ms}ms"
            record.error_code = "DEADLINE_EXCEEDED"
            return
        record.status = "error"
        record.error = view.get("error") or "operation failed"
        details = view.get("error_details")
        record.error_details = dict(details) if details else None
        record.error_code = (record.error_details or {}).get("code")

    @staticmethod
    def _failure(record: ChunkRecord) -> Dict[str, Any]:
        local = (record.error_details or {}).get("op_index")
        return {
            "chunk": record.chunk,
            "operation_id": record.operation_id,
            "operation_index": (record.start_index + local) if local is not None else None,
            "operation_number": (local + 1) if local is not None else None,
            "code": record.error_code,
            "message": record.error,
        }

    async def _recovery_snapshot(
        self,
        record: ChunkRecord,
        records: Sequence[ChunkRecord],
        temp_map: TempIdMap,
        total: int,
    ) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {
            "mode": "targeted_recovery",
            "failed_chunk": record.chunk,
            "operation_id": record.operation_id,
            "error": record.error,
            "error_details": record.error_details,
            "chunks_completed": sum(1 for r in records if r.status == "complete"),
            "resolved_temp_ids": len(temp_map),
            "total_operations": total,
            "next_step": RECOVERY_NEXT_STEP,
        }
        try:
            snapshot["model"] = dict(await self._client.model_summary(self._recovery_sample_limit))
        except Exception as exc:
            snapshot["model"] = {"error": str(exc) or type(exc).__name__}
        try:
            snapshot["diagnostics"] = dict(await self._client.diagnostics())
        except Exception as exc:
            snapshot["diagnostics"] = {"error": str(exc) or type(exc).__name__}
        return snapshot


__all__ = [
    "MAX_CHUNK_SIZE",
    "RECOVERY_NEXT_STEP",
    "MutationClient",
    "ChunkRecord",
    "ApplyResult",
    "ChunkedApplier",
    "split_chunks",
    "summarize",
]

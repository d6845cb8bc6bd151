# SPDX-License-Identifier: Apache-2.0
"""
Mutation Conformance — Chunking orchestrator.

Asserts:
  • Batches split into ordered chunks of at most 8, submitted sequentially
  • Temp ids resolved by earlier chunks are substituted into later ones
  • Throttled submissions are retried with the server's hint
  • The first failing chunk stops the run with a partial_error result,
    a one-line summary and a targeted recovery snapshot
  • Direction mismatches are rejected before submission
  • Chunk idempotency keys make a rerun replay instead of re-applying
  • Temp ids must be unique across the whole batch, not just per chunk
  • A chunk the server timed out after committing still yields its ids
  • The resolved temp id map does not depend on the chunk size
"""
import pytest

from mutation_sdk.batch.batch_base import ResourceExhausted
from mutation_sdk.batch.orchestrator import (
    MAX_CHUNK_SIZE,
    RECOVERY_NEXT_STEP,
    ChunkedApplier,
    split_chunks,
    summarize,
)
from mutation_sdk.batch.retry import RetryPolicy
from mutation_sdk.batch.service import MutationService
from mutation_sdk.mock_model_store import InMemoryModelStore

pytestmark = pytest.mark.asyncio

FAST_RETRY = RetryPolicy(max_attempts=4, base_ms=1, max_ms=2, use_jitter=False)


def _nodes(n, prefix="N"):
    return [
        {"op": "create_node", "kind": "actor", "name": f"{prefix}{i}", "temp_id": f"t{i}"}
        for i in range(n)
    ]


def _applier(client, **kw):
    kw.setdefault("poll_interval_ms", 1)
    kw.setdefault("poll_timeout_ms", 2_000)
    kw.setdefault("retry_policy", FAST_RETRY)
    return ChunkedApplier(client, **kw)


class ThrottlingClient:
    """Answers ResourceExhausted a fixed number of times, then completes."""

    def __init__(self, throttles: int, *, status: str = "complete") -> None:
        self.throttles = throttles
        self.status = status
        self.applied = []

    async def apply(self, changes, *, idempotency_key=None, duplicate_strategy=None):
        if self.throttles:
            self.throttles -= 1
            raise ResourceExhausted("execution queue is full", retry_after_ms=1)
        self.applied.append(list(changes))
        return {"operation_id": f"op_{len(self.applied)}", "status": "queued"}

    async def get_status(self, operation_id):
        changes = self.applied[int(operation_id.split("_")[1]) - 1]
        results = [
            {"op": c["op"], "index": i, "temp_id": c.get("temp_id"), "id": f"id-{c.get('temp_id')}"}
            for i, c in enumerate(changes)
        ]
        return {"operation_id": operation_id, "status": self.status, "result": {"results": results}}

    async def model_summary(self, sample_limit=10):
        return {"summary": {"nodes": 0}}

    async def diagnostics(self):
        raise RuntimeError("diagnostics unavailable")

    async def get_node(self, node_id):
        return {"id": node_id}

    async def get_edge(self, edge_id):
        return {"id": edge_id}

    async def get_diagram(self, diagram_id):
        return {"id": diagram_id, "placements": []}


def test_orchestrator_split_and_summary():
    assert [len(c) for c in split_chunks(list(range(17)), 8)] == [8, 8, 1]
    assert summarize(0, 0, None) == "no changes to apply"
    assert summarize(3, 3, None) == "chunks 1-3 of 3 succeeded"
    assert summarize(1, 1, None) == "chunk 1 of 1 succeeded"
    assert (
        summarize(3, 2, {"chunk": 3, "operation_number": 4})
        == "chunks 1-2 of 3 succeeded; chunk 3 failed at operation 4"
    )
    assert summarize(2, 0, {"chunk": 1, "operation_number": None}) == "chunk 1 of 2 failed"


def test_orchestrator_chunk_size_ceiling():
    assert ChunkedApplier(None, chunk_size=50).chunk_size == MAX_CHUNK_SIZE
    assert ChunkedApplier(None, chunk_size=3).chunk_size == 3


async def test_orchestrator_two_chunks_in_order(service, store):
    result = await _applier(service).apply(_nodes(9))

    assert result.ok
    assert result.status == "complete"
    assert result.chunks_submitted == 2
    assert result.chunks_completed == 2
    assert [c.operation_count for c in result.chunks] == [8, 1]
    assert [r["temp_id"] for r in result.results] == [f"t{i}" for i in range(9)]
    assert len(result.temp_id_map) == 9
    assert len(store.export()["nodes"]) == 9
    assert result.summary == "chunks 1-2 of 2 succeeded"
    assert result.failure is None and result.recovery is None


async def test_orchestrator_later_chunk_uses_earlier_temp_ids(service, store):
    changes = _nodes(8) + [
        {"op": "create_edge", "kind": "association", "source_id": "t0", "target_id": "t1", "temp_id": "e"},
        {"op": "set_property", "id": "t2", "key": "owner", "value": "ops"},
    ]
    result = await _applier(service).apply(changes)
    assert result.status == "complete"
    edge = store.get_edge(result.temp_id_map["e"])
    assert edge["source_id"] == result.temp_id_map["t0"]
    assert edge["target_id"] == result.temp_id_map["t1"]
    assert store.get_node(result.temp_id_map["t2"])["properties"] == {"owner": "ops"}


async def test_orchestrator_partial_error_with_recovery(service, store):
    changes = _nodes(8) + [
        {"op": "create_node", "kind": "actor", "name": "Extra"},
        {"op": "update_node", "id": "ghost", "name": "Nope"},
    ]
    result = await _applier(service).apply(changes)

    assert result.status == "partial_error"
    assert result.chunks_completed == 1
    assert result.chunks_failed == 1
    assert result.summary == "chunk 1 of 2 succeeded; chunk 2 failed at operation 2"
    assert result.failure["chunk"] == 2
    assert result.failure["operation_index"] == 9
    assert result.failure["operation_number"] == 2
    assert result.failure["code"] == "UNRESOLVED_REFERENCE"
    assert result.chunks[1].error_details["reference"] == "ghost"

    recovery = result.recovery
    assert recovery["mode"] == "targeted_recovery"
    assert recovery["failed_chunk"] == 2
    assert recovery["chunks_completed"] == 1
    assert recovery["resolved_temp_ids"] == 8
    assert recovery["next_step"] == RECOVERY_NEXT_STEP
    assert recovery["model"]["summary"]["nodes"] == 8
    assert "counts" in recovery["diagnostics"]
    # the failed chunk applied nothing
    assert len(store.export()["nodes"]) == 8


async def test_orchestrator_runtime_failure_in_first_chunk(service, store):
    store.fail_on("create_node", "disk full")
    result = await _applier(service).apply(_nodes(3))

    assert result.status == "error"
    assert result.chunks_submitted == 1
    assert result.chunks[0].status == "error"
    assert result.chunks[0].operation_id is not None
    assert result.chunks[0].error_code == "STORE_ERROR"
    assert result.failure["operation_index"] == 0
    assert result.summary == "chunk 1 of 1 failed at operation 1"
    assert store.export()["nodes"] == []


async def test_orchestrator_direction_mismatch_blocks_submission(service, store):
    a = store.create_node(kind="actor", name="A")
    s = store.create_node(kind="service", name="S")
    c = store.create_node(kind="actor", name="C")
    edge = store.create_edge(kind="serving", source_id=s, target_id=a)
    diagram = store.create_diagram(name="D")
    ps = store.add_node_to_diagram(diagram, s, x=0, y=0, width=120, height=55)
    pc = store.add_node_to_diagram(diagram, c, x=200, y=0, width=120, height=55)

    result = await _applier(service).apply([
        {"op": "add_edge_to_diagram", "diagram_id": diagram, "edge_id": edge,
         "source_placement_id": ps, "target_placement_id": pc},
    ])
    assert result.status == "error"
    assert result.chunks_submitted == 0
    assert result.failure["code"] == "DIRECTION_MISMATCH"
    assert result.cross_validation["failed"] == 1
    assert (await service.queue_stats())["total"] == 0


async def test_orchestrator_swaps_reversed_connection(service, store):
    changes = [
        {"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"},
        {"op": "create_node", "kind": "service", "name": "S", "temp_id": "s"},
        {"op": "create_edge", "kind": "serving", "source_id": "s", "target_id": "a", "temp_id": "e"},
        {"op": "create_diagram", "name": "D", "temp_id": "d"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "a", "temp_id": "pa"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "s", "temp_id": "ps"},
        {"op": "add_edge_to_diagram", "diagram_id": "d", "edge_id": "e",
         "source_placement_id": "pa", "target_placement_id": "ps", "temp_id": "c"},
    ]
    result = await _applier(service).apply(changes)
    assert result.status == "complete"
    assert result.cross_validation["swapped"] == 1
    connection = store.get_connection(result.temp_id_map["c"])
    assert connection["source_placement_id"] == result.temp_id_map["ps"]


async def test_orchestrator_connection_across_chunks(service, store):
    changes = [
        {"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"},
        {"op": "create_node", "kind": "service", "name": "S", "temp_id": "s"},
        {"op": "create_edge", "kind": "serving", "source_id": "s", "target_id": "a", "temp_id": "e"},
        {"op": "create_diagram", "name": "D", "temp_id": "d"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "a", "temp_id": "pa"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "s", "temp_id": "ps"},
        {"op": "add_edge_to_diagram", "diagram_id": "d", "edge_id": "e", "temp_id": "c"},
    ]
    result = await _applier(service, chunk_size=6).apply(changes)
    assert result.status == "complete"
    assert result.chunks[1].auto_resolved["resolved"] == 1
    connection = store.get_connection(result.temp_id_map["c"])
    assert connection["source_placement_id"] == result.temp_id_map["ps"]
    assert connection["target_placement_id"] == result.temp_id_map["pa"]


async def test_orchestrator_retries_throttled_submission():
    client = ThrottlingClient(throttles=2)
    result = await _applier(client).apply(_nodes(3))
    assert result.status == "complete"
    assert result.chunks[0].attempts == 3
    assert result.temp_id_map == {"t0": "id-t0", "t1": "id-t1", "t2": "id-t2"}


async def test_orchestrator_throttle_exhausted_is_reported():
    client = ThrottlingClient(throttles=10)
    result = await _applier(client).apply(_nodes(3))
    assert result.status == "error"
    assert result.chunks[0].attempts == FAST_RETRY.max_attempts
    assert result.failure["code"] == "RESOURCE_EXHAUSTED"
    assert result.recovery["model"] == {"summary": {"nodes": 0}}
    assert result.recovery["diagnostics"] == {"error": "diagnostics unavailable"}


async def test_orchestrator_poll_timeout():
    client = ThrottlingClient(throttles=0, status="processing")
    result = await _applier(client, poll_timeout_ms=5).apply(_nodes(2))
    record = result.chunks[0]
    assert record.status == "timeout"
    assert record.timed_out is True
    assert record.error == "Polling timed out after 5ms"
    assert record.polls >= 1
    assert set(record.status_history) == {"processing"}
    assert result.status == "error"


async def test_orchestrator_rerun_with_key_replays(service, store):
    applier = _applier(service)
    first = await applier.apply(_nodes(9), idempotency_key="bulk-7")
    second = await applier.apply(_nodes(9), idempotency_key="bulk-7")
    assert second.status == "complete"
    assert second.temp_id_map == first.temp_id_map
    assert len(store.export()["nodes"]) == 9
    assert [c.operation_id for c in second.chunks] == [c.operation_id for c in first.chunks]


async def test_orchestrator_over_wire_client(wire_client, store):
    result = await _applier(wire_client).apply(_nodes(10))
    assert result.status == "complete"
    assert result.chunks_submitted == 2
    assert len(store.export()["nodes"]) == 10


async def test_orchestrator_empty_batch(service):
    result = await _applier(service).apply([])
    assert result.status == "complete"
    assert result.summary == "no changes to apply"
    assert result.to_dict()["chunks"] == []


class ConflictingMapClient(ThrottlingClient):
    """Completes every chunk but reports chunk 2 as binding 't0' again."""

    async def get_status(self, operation_id):
        view = await super().get_status(operation_id)
        if operation_id == "op_2":
            view["result"]["temp_id_map"] = {"t0": "somewhere-else"}
        return view


async def test_orchestrator_duplicate_temp_id_across_chunks(service, store):
    changes = _nodes(8) + [{"op": "create_node", "kind": "actor", "name": "Again", "temp_id": "t0"}]
    result = await _applier(service).apply(changes)

    assert result.status == "error"
    assert result.chunks_submitted == 0
    assert result.failure["chunk"] == 2
    assert result.failure["operation_index"] == 8
    assert result.failure["operation_number"] == 1
    assert result.failure["code"] == "SCHEMA_VIOLATION"
    assert result.chunks[0].error_details["batch_index"] == 8
    assert result.summary == "chunk 2 of 2 failed at operation 1"
    assert result.recovery["mode"] == "targeted_recovery"
    assert store.export()["nodes"] == []


async def test_orchestrator_conflicting_temp_id_map_is_reported():
    client = ConflictingMapClient(throttles=0)
    result = await _applier(client).apply(_nodes(9))

    assert result.status == "partial_error"
    assert result.chunks[1].status == "error"
    assert result.failure["chunk"] == 2
    assert result.failure["code"] == "TEMP_ID_CONFLICT"
    assert result.temp_id_map["t0"] == "id-t0"
    # chunk 2 committed; its results are still reported
    assert [r["temp_id"] for r in result.results][-1] == "t8"
    assert result.recovery["failed_chunk"] == 2


async def test_orchestrator_duplicate_node_from_earlier_chunk(service, store):
    changes = _nodes(8) + [{"op": "create_node", "kind": "actor", "name": "N3"}]
    result = await _applier(service).apply(changes)
    assert result.status == "partial_error"
    assert result.failure["code"] == "DUPLICATE_ENTITY"
    assert result.failure["operation_index"] == 8
    assert result.chunks[1].error_details["existing_id"] == result.temp_id_map["t3"]
    assert len(store.export()["nodes"]) == 8


async def test_orchestrator_duplicate_edge_from_earlier_chunk(service, store):
    changes = [
        {"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"},
        {"op": "create_node", "kind": "actor", "name": "B", "temp_id": "b"},
        {"op": "create_edge", "kind": "association", "source_id": "a", "target_id": "b", "temp_id": "e1"},
        {"op": "create_edge", "kind": "association", "source_id": "a", "target_id": "b", "temp_id": "e2"},
    ]
    result = await _applier(service, chunk_size=3).apply(changes)
    assert result.status == "partial_error"
    assert result.failure["chunk"] == 2
    assert result.failure["operation_index"] == 3
    assert result.failure["code"] == "DUPLICATE_ENTITY"
    assert result.chunks[1].error_details["existing_id"] == result.temp_id_map["e1"]
    assert len(store.export()["edges"]) == 1


@pytest.mark.slow
async def test_orchestrator_uses_result_of_chunk_committed_before_timeout(make_config):
    config = make_config(operation_timeout_ms=5, timeout_sweep_interval_ms=1, snapshot_refresh_delay_ms=100)
    store = InMemoryModelStore()
    async with MutationService(store, config=config) as svc:
        applier = _applier(svc)
        change = [{"op": "create_node", "kind": "actor", "name": "A", "temp_id": "a"}]
        result = await applier.apply(change, idempotency_key="slow-1")

        assert result.status == "complete"
        assert result.chunks[0].committed_after_timeout is True
        assert result.chunks[0].status_history[-1] == "error"
        node_id = result.temp_id_map["a"]
        assert store.get_node(node_id)["name"] == "A"

        rerun = await applier.apply(change, idempotency_key="slow-1")
        assert rerun.status == "complete"
        assert rerun.temp_id_map == {"a": node_id}
        assert len(store.export()["nodes"]) == 1


def _mixed_batch():
    changes = _nodes(6, prefix="M")
    changes += [
        {"op": "create_edge", "kind": "association", "source_id": f"t{i}", "target_id": f"t{i + 1}", "temp_id": f"e{i}"}
        for i in (0, 2, 4)
    ]
    changes += [
        {"op": "create_diagram", "name": "D", "temp_id": "d"},
        {"op": "add_node_to_diagram", "diagram_id": "d", "node_id": "t0", "temp_id": "p0"},
    ]
    return changes


async def test_orchestrator_temp_id_map_independent_of_chunk_size(make_config):
    outcomes = []
    for size in (3, 8):
        store = InMemoryModelStore()
        async with MutationService(store, config=make_config()) as svc:
            result = await _applier(svc, chunk_size=size).apply(_mixed_batch())
        assert result.status == "complete"
        names = {}
        for temp_id, durable in result.temp_id_map.items():
            if temp_id.startswith("e"):
                edge = store.get_edge(durable)
                names[temp_id] = (
                    store.get_node(edge["source_id"])["name"],
                    store.get_node(edge["target_id"])["name"],
                )
            elif temp_id.startswith("t"):
                names[temp_id] = store.get_node(durable)["name"]
        outcomes.append((len(result.chunks), sorted(result.temp_id_map), names))

    (chunks_small, keys_small, names_small), (chunks_large, keys_large, names_large) = outcomes
    assert (chunks_small, chunks_large) == (4, 2)
    assert keys_small == keys_large
    assert len(keys_small) == 11
    assert names_small == names_large
    assert names_small["e2"] == ("M2", "M3")

# SPDX-License-Identifier: Apache-2.0
"""
Pytest plugin + shared fixtures for mutation protocol conformance.

Fixtures build every component per test (no shared queue, no shared store),
so tests can run in any order. Queue timings are shrunk so a full
submit → execute → refresh cycle settles in a few milliseconds.

The terminal summary groups outcomes by protocol area (derived from the
test module name) and points at the area that failed first.
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Any, Dict, List, Optional

import pytest

from mutation_sdk.batch import (
    BatchConfig,
    MutationService,
    WireMutationClient,
    WireMutationHandler,
)
from mutation_sdk.mock_model_store import InMemoryModelStore


# ---------------------------------------------------------------------------
# Protocol areas
# ---------------------------------------------------------------------------

AREAS: Dict[str, str] = {
    "operations": "Change Operation Model",
    "tempids": "Temp Id Phases",
    "validation": "Preflight Validation",
    "snapshot": "Model Snapshot",
    "executor": "Transactional Executor",
    "queue": "Execution Queue",
    "service": "Service & Idempotency",
    "wire": "Wire Envelopes",
    "retry": "Throttle Retry",
    "cross_validation": "Connection Cross-Validation",
    "orchestrator": "Chunking Orchestrator",
    "config": "Configuration",
}


def _area_of(nodeid: str) -> Optional[str]:
    module = nodeid.split("::", 1)[0].rsplit("/", 1)[-1]
    if not module.startswith("test_"):
        return None
    stem = module[len("test_"):].rsplit(".", 1)[0]
    for key in sorted(AREAS, key=len, reverse=True):
        if stem.startswith(key):
            return key
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def fast_config(**overrides: Any) -> BatchConfig:
    """Queue timings small enough for unit tests."""
    values: Dict[str, Any] = dict(
        processor_interval_ms=1,
        timeout_sweep_interval_ms=5,
        snapshot_refresh_delay_ms=0,
        operation_timeout_ms=5_000,
    )
    values.update(overrides)
    return BatchConfig(**values)


class RecordingMetrics:
    """MetricsSink that keeps every observation and counter."""

    def __init__(self) -> None:
        self.observations: List[Dict[str, Any]] = []
        self.counters: Counter = Counter()

    def observe(self, *, component, op, ms, ok, code="OK", extra=None) -> None:
        self.observations.append(
            {"component": component, "op": op, "ms": ms, "ok": ok, "code": code, "extra": extra}
        )

    def counter(self, *, component, name, value=1, extra=None) -> None:
        self.counters[name] += value


@pytest.fixture
def store() -> InMemoryModelStore:
    return InMemoryModelStore()


@pytest.fixture
def config() -> BatchConfig:
    return fast_config()


@pytest.fixture
def make_config():
    """Factory for fast configs with per-test overrides."""
    return fast_config


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
async def service(store, config, metrics):
    """Started MutationService over the per-test store."""
    svc = MutationService(store, config=config, metrics=metrics)
    await svc.start()
    try:
        yield svc
    finally:
        await svc.close()


@pytest.fixture
def wire_handler(service) -> WireMutationHandler:
    return WireMutationHandler(service)


@pytest.fixture
def wire_client(wire_handler) -> WireMutationClient:
    return WireMutationClient(wire_handler, ctx={"request_id": "t_wire", "tenant": "t"})


# ---------------------------------------------------------------------------
# Terminal summary
# ---------------------------------------------------------------------------

class MutationProtocolPlugin:
    """Per-area pass/fail summary printed after the run."""

    def __init__(self) -> None:
        self.start_time: Optional[float] = None

    def pytest_sessionstart(self, session: pytest.Session) -> None:
        self.start_time = time.time()

    def pytest_terminal_summary(self, terminalreporter, exitstatus, config) -> None:
        passed: Counter = Counter()
        failed: Counter = Counter()
        first_failure: Optional[str] = None
        for key, bucket in (("passed", passed), ("failed", failed), ("error", failed)):
            for report in terminalreporter.stats.get(key, []):
                if getattr(report, "when", "call") != "call" and key == "passed":
                    continue
                area = _area_of(getattr(report, "nodeid", ""))
                if area is None:
                    continue
                bucket[area] += 1
                if bucket is failed and first_failure is None:
                    first_failure = report.nodeid

        if not passed and not failed:
            return

        duration = time.time() - self.start_time if self.start_time else 0.0
        terminalreporter.write_sep("=", "Mutation Protocol V1.0 conformance")
        for area, title in AREAS.items():
            ok, bad = passed.get(area, 0), failed.get(area, 0)
            if not ok and not bad:
                continue
            mark = "PASS" if not bad else "FAIL"
            terminalreporter.write_line(f"  [{mark}] {title:<32} {ok} passed, {bad} failed")
        terminalreporter.write_line(f"  completed in {duration:.2f}s")
        if first_failure:
            terminalreporter.write_line(f"  first failure: {first_failure}")


mutation_protocol_plugin = MutationProtocolPlugin()


def pytest_sessionstart(session: pytest.Session) -> None:
    mutation_protocol_plugin.pytest_sessionstart(session)


def pytest_terminal_summary(terminalreporter, exitstatus, config) -> None:
    mutation_protocol_plugin.pytest_terminal_summary(terminalreporter, exitstatus, config)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    markers = [
        "batch: Server-side mutation pipeline tests",
        "client: Client-side orchestrator tests",
        "wire: Wire envelope conformance tests",
        "slow: Tests that wait on real queue timers (skip with -m 'not slow')",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)

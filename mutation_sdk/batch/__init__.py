# mutation_sdk/batch/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Batch Mutation Protocol V1 - Public API

This module provides the public interface for the batched mutation protocol.
All public types, the service facade, wire handlers and the client-side
orchestrator are re-exported here for clean imports.
"""

from mutation_sdk.batch.batch_base import (
    # Protocol version
    MUTATION_PROTOCOL_VERSION,
    MUTATION_PROTOCOL_ID,

    # Descriptor lifecycle
    STATUS_QUEUED,
    STATUS_PROCESSING,
    STATUS_COMPLETE,
    STATUS_ERROR,
    DUPLICATE_STRATEGIES,

    # Error types
    MutationError,
    BadRequest,
    SchemaViolation,
    DuplicateConflict,
    UnresolvedReference,
    PhaseConflictError,
    DirectionMismatch,
    IdempotencyConflict,
    OperationNotFound,
    StoreError,
    EntityNotFound,
    ResourceExhausted,
    Unavailable,
    NotSupported,
    DeadlineExceeded,

    # Context, metrics, configuration
    OperationContext,
    MetricsSink,
    NoopMetrics,
    BatchConfig,

    # Store boundary
    ModelStore,
)
from mutation_sdk.batch.vocabulary import DEFAULT_VOCABULARY, Vocabulary, normalize_kind
from mutation_sdk.batch.operations import (
    OP_TYPES,
    ChangeOperation,
    normalize_change,
    parse_change,
    parse_changes,
)
from mutation_sdk.batch.tempids import (
    TempIdMap,
    PhaseConflict,
    find_phase_conflict,
    substitute_changes,
    extract_temp_id_mappings,
)
from mutation_sdk.batch.snapshot import ModelSnapshot
from mutation_sdk.batch.validation import PreflightReport, PreflightValidator
from mutation_sdk.batch.executor import BatchExecutor
from mutation_sdk.batch.queue import ExecutionQueue, OperationDescriptor
from mutation_sdk.batch.service import (
    MutationService,
    WireMutationHandler,
    WireMutationClient,
)
from mutation_sdk.batch.retry import RetryPolicy, retry_async
from mutation_sdk.batch.cross_validation import CrossValidationSummary, CrossValidator
from mutation_sdk.batch.orchestrator import ApplyResult, ChunkedApplier, ChunkRecord

__all__ = [
    # Protocol version
    "MUTATION_PROTOCOL_VERSION",
    "MUTATION_PROTOCOL_ID",

    # Descriptor lifecycle
    "STATUS_QUEUED",
    "STATUS_PROCESSING",
    "STATUS_COMPLETE",
    "STATUS_ERROR",
    "DUPLICATE_STRATEGIES",

    # Error types
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

    # Context, metrics, configuration
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",
    "BatchConfig",
    "ModelStore",

    # Operation model
    "Vocabulary",
    "DEFAULT_VOCABULARY",
    "normalize_kind",
    "OP_TYPES",
    "ChangeOperation",
    "normalize_change",
    "parse_change",
    "parse_changes",

    # Temp ids
    "TempIdMap",
    "PhaseConflict",
    "find_phase_conflict",
    "substitute_changes",
    "extract_temp_id_mappings",

    # Server side
    "ModelSnapshot",
    "PreflightReport",
    "PreflightValidator",
    "BatchExecutor",
    "ExecutionQueue",
    "OperationDescriptor",
    "MutationService",
    "WireMutationHandler",
    "WireMutationClient",

    # Client side
    "RetryPolicy",
    "retry_async",
    "CrossValidator",
    "CrossValidationSummary",
    "ChunkedApplier",
    "ChunkRecord",
    "ApplyResult",
]

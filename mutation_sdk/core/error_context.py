# mutation_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities for the mutation pipeline.

Layers of the pipeline (executor, queue, orchestrator) attach structured
context to exceptions as they propagate, without touching the exception's
type or message. The execution queue reads that context back when it turns a
runtime failure into a structured error descriptor: the executor records
which operation was running, the queue records which queued operation owned
it.

Typical usage
-------------

    from mutation_sdk.core.error_context import attach_context

    try:
        store.delete_node(node_id)
    except Exception as exc:
        attach_context(exc, component="executor", op_index=3, op="delete_node")
        raise

Later:

    ctx = get_context(exc)
    ctx.get("op_index")   # -> 3

Two attributes are written:

* ``__mutation_context__`` (canonical), merged across layers.
* ``__<component>_context__`` for discoverability in debuggers.

Context attachment is best-effort and never masks the original exception.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

logger = logging.getLogger(__name__)

_CANONICAL_ATTR = "__mutation_context__"


def attach_context(
    exc: BaseException,
    component: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    Existing context (from an inner layer) is merged, not replaced; keys
    already present are kept so the innermost layer's facts win. The
    ``component`` key records the first layer that attached context.

    Avoid passing PII: tenants should be hashed before they get here.
    """
    try:
        merged: MutableMapping[str, Any] = {}
        existing = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(existing, Mapping):
            merged.update(existing)

        merged.setdefault("component", component)
        for key, value in context.items():
            merged.setdefault(key, value)

        setattr(exc, _CANONICAL_ATTR, merged)
        setattr(exc, f"__{component}_context__", merged)
    except Exception as attachment_error:  # noqa: BLE001
        # Never interfere with exception propagation.
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
            extra={"component": component},
        )


def get_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> Mapping[str, Any]:
    """
    Retrieve attached context, or an empty mapping.

    When ``component`` is given, that component's attribute is consulted
    first before falling back to the canonical context.
    """
    try:
        if component:
            ctx = getattr(exc, f"__{component}_context__", None)
            if isinstance(ctx, Mapping):
                return ctx
        ctx = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(ctx, Mapping):
            return ctx
    except Exception as retrieval_error:  # noqa: BLE001
        logger.debug(
            "Failed to retrieve error context from %s: %s",
            type(exc).__name__,
            retrieval_error,
        )
    return {}


__all__ = ["attach_context", "get_context"]

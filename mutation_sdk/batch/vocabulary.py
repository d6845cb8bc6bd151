# mutation_sdk/batch/vocabulary.py
# SPDX-License-Identifier: Apache-2.0
"""
Node/edge kind vocabulary and kind-name normalization.

Callers spell kinds loosely ("BusinessActor", "business_actor",
"Business Actor", "--business--actor-"). Everything is folded to a canonical
hyphenated lowercase form before it is checked against the vocabulary.
The concrete set of kinds belongs to the deployment; DEFAULT_VOCABULARY is a
small general-purpose set used by the reference store and the tests.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[\s_\-]+")

ACCESS_TYPES = ("write", "read", "access", "readwrite")
DEFAULT_ACCESS_TYPE = "write"


def normalize_kind(raw: str) -> str:
    """
    Fold a kind name to hyphenated lowercase.

        >>> normalize_kind("BusinessActor")
        'business-actor'
        >>> normalize_kind("  data__object ")
        'data-object'
        >>> normalize_kind("HTTPServer")
        'http-server'
    """
    text = _ACRONYM_BOUNDARY.sub(r"\1-\2", raw.strip())
    text = _CAMEL_BOUNDARY.sub(r"\1-\2", text)
    text = _SEPARATORS.sub("-", text)
    return text.strip("-").lower()


@dataclass(frozen=True)
class Vocabulary:
    """
    Valid node and edge kinds.

    Attributes:
        node_kinds: Canonical node kind names.
        edge_kinds: Canonical edge kind names.
        qualified_edge_kinds: Edge kinds that accept an access qualifier.
    """
    node_kinds: FrozenSet[str]
    edge_kinds: FrozenSet[str]
    qualified_edge_kinds: FrozenSet[str] = frozenset({"access"})

    def __post_init__(self) -> None:
        for name in ("node_kinds", "edge_kinds", "qualified_edge_kinds"):
            values = getattr(self, name)
            object.__setattr__(self, name, frozenset(normalize_kind(v) for v in values))
        stray = self.qualified_edge_kinds - self.edge_kinds
        if stray:
            raise ValueError(f"qualified edge kinds not in edge_kinds: {sorted(stray)}")

    def node_kind(self, raw: str) -> Optional[str]:
        """Canonical node kind, or None when not in the vocabulary."""
        kind = normalize_kind(raw)
        return kind if kind in self.node_kinds else None

    def edge_kind(self, raw: str) -> Optional[str]:
        kind = normalize_kind(raw)
        return kind if kind in self.edge_kinds else None

    def accepts_access_type(self, edge_kind: str) -> bool:
        return normalize_kind(edge_kind) in self.qualified_edge_kinds

    def access_qualifier(self, edge_kind: str, access_type: Optional[str]) -> Optional[str]:
        """
        Access qualifier as it participates in edge identity.

        Qualified kinds default to ``write``; other kinds never carry one.
        """
        if not self.accepts_access_type(edge_kind):
            return None
        return access_type or DEFAULT_ACCESS_TYPE

    @classmethod
    def of(cls, node_kinds: Iterable[str], edge_kinds: Iterable[str], **kw) -> "Vocabulary":
        return cls(node_kinds=frozenset(node_kinds), edge_kinds=frozenset(edge_kinds), **kw)


DEFAULT_VOCABULARY = Vocabulary.of(
    node_kinds=(
        "actor",
        "role",
        "process",
        "function",
        "event",
        "service",
        "interface",
        "component",
        "application-component",
        "data-object",
        "node",
        "device",
        "system-software",
        "artifact",
        "capability",
        "goal",
        "requirement",
        "location",
        "grouping",
    ),
    edge_kinds=(
        "composition",
        "aggregation",
        "assignment",
        "realization",
        "serving",
        "access",
        "influence",
        "triggering",
        "flow",
        "specialization",
        "association",
    ),
)


__all__ = [
    "ACCESS_TYPES",
    "DEFAULT_ACCESS_TYPE",
    "normalize_kind",
    "Vocabulary",
    "DEFAULT_VOCABULARY",
]

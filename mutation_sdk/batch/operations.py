# mutation_sdk/batch/operations.py
# SPDX-License-Identifier: Apache-2.0
"""
Change Operation Model.

Every change record is one of a closed set of operation kinds. Each kind is a
frozen dataclass registered in OP_TYPES under its wire name; its fields carry
their JSON schema in dataclass metadata, so the per-kind schema (checked with
jsonschema, Draft 2020-12) and the Python type can never drift apart.

Wire form (snake_case keys, no unknown fields):

    {"op": "create_edge", "kind": "serving", "source_id": "t1",
     "target_id": "id-4f2a...", "temp_id": "e1"}

Class attributes per kind:

    OP        wire name
    PHASE     execution phase (1 = node creation, 2 = everything else,
              3 = deletion)
    DECLARES  whether the kind may declare a temp id
    ANY_OF    at least one of these fields must be present
"""

from __future__ import annotations

import re
from dataclasses import MISSING, dataclass, field, fields, replace
from typing import (
    Any,
    ClassVar,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
)

from jsonschema import Draft202012Validator

from mutation_sdk.batch.batch_base import (
    DUPLICATE_STRATEGIES,
    SchemaViolation,
    op_error_details,
)
from mutation_sdk.batch.vocabulary import ACCESS_TYPES

# ---------------------------------------------------------------------------
# Field schema fragments
# ---------------------------------------------------------------------------

_ID = {"type": "string", "minLength": 1}
_NAME = {"type": "string", "minLength": 1}
_TEXT = {"type": "string"}
_COORD = {"type": "number"}
_SIZE = {"type": "number", "minimum": 1}
_BOOL = {"type": "boolean"}
_PROPS = {"type": "object", "additionalProperties": {"type": "string"}}
_STRATEGY = {"enum": list(DUPLICATE_STRATEGIES)}
_ACCESS = {"enum": list(ACCESS_TYPES)}
_COLOR = {"type": "string", "pattern": "^#?[0-9A-Fa-f]{6}$"}
_OPACITY = {"type": "integer", "minimum": 0, "maximum": 255}
_FONT_SIZE = {"type": "integer", "minimum": 1}


def _obj(**props: Any) -> Dict[str, Any]:
    return {"type": "object", "properties": props, "additionalProperties": False}


def _required(schema: Mapping[str, Any], *, ref: bool = False) -> Any:
    return field(metadata={"schema": schema, "ref": ref})


def _optional(schema: Mapping[str, Any], *, ref: bool = False) -> Any:
    return field(default=None, metadata={"schema": schema, "ref": ref})


# ---------------------------------------------------------------------------
# Base + registry
# ---------------------------------------------------------------------------

OP_TYPES: Dict[str, Type["ChangeOperation"]] = {}


def register(cls: Type["ChangeOperation"]) -> Type["ChangeOperation"]:
    if not cls.OP or cls.OP in OP_TYPES:
        raise ValueError(f"operation kind must be unique and non-empty: {cls.OP!r}")
    OP_TYPES[cls.OP] = cls
    return cls


@dataclass(frozen=True)
class ChangeOperation:
    """Base for all change records. Never instantiated directly."""

    OP: ClassVar[str] = ""
    PHASE: ClassVar[int] = 2
    DECLARES: ClassVar[bool] = False
    ANY_OF: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def reference_fields(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.metadata.get("ref"))

    @classmethod
    def json_schema(cls) -> Dict[str, Any]:
        props: Dict[str, Any] = {"op": {"const": cls.OP}}
        required = ["op"]
        for f in fields(cls):
            props[f.name] = dict(f.metadata["schema"])
            if f.default is MISSING and f.default_factory is MISSING:
                required.append(f.name)
        return {
            "$schema": "https://json-schema.org/draft/2020-12/schema",
            "$id": f"https://mutation-sdk/schemas/changes/{cls.OP}.json",
            "type": "object",
            "properties": props,
            "required": required,
            "additionalProperties": False,
        }

    @property
    def temp_id(self) -> Optional[str]:  # overridden by a field on declaring kinds
        return None

    def references(self) -> Iterator[Tuple[str, str]]:
        """Yield (field, value) for each populated reference field."""
        for name in self.reference_fields():
            value = getattr(self, name)
            if isinstance(value, str) and value:
                yield name, value

    def with_references(self, mapping: Mapping[str, str]) -> "ChangeOperation":
        """Copy with every reference bound in ``mapping`` substituted."""
        changes = {name: mapping[value] for name, value in self.references() if value in mapping}
        return replace(self, **changes) if changes else self

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"op": self.OP}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.name] = dict(value) if isinstance(value, Mapping) else value
        return out


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

@register
@dataclass(frozen=True, kw_only=True)
class CreateNode(ChangeOperation):
    OP = "create_node"
    PHASE = 1
    DECLARES = True

    kind: str = _required(_NAME)
    name: str = _required(_NAME)
    documentation: Optional[str] = _optional(_TEXT)
    properties: Optional[Mapping[str, str]] = _optional(_PROPS)
    folder_id: Optional[str] = _optional(_ID, ref=True)
    temp_id: Optional[str] = _optional(_ID)
    on_duplicate: Optional[str] = _optional(_STRATEGY)


@register
@dataclass(frozen=True, kw_only=True)
class CreateOrGetNode(ChangeOperation):
    """Bind temp_id to the node matching (kind, name), creating it if absent."""
    OP = "create_or_get_node"
    PHASE = 1
    DECLARES = True

    kind: str = _required(_NAME)
    name: str = _required(_NAME)
    create: Optional[Mapping[str, Any]] = _optional(
        _obj(documentation=_TEXT, properties=_PROPS, folder_id=_ID)
    )
    temp_id: Optional[str] = _optional(_ID)

    def references(self) -> Iterator[Tuple[str, str]]:
        folder_id = (self.create or {}).get("folder_id")
        if isinstance(folder_id, str) and folder_id:
            yield "create.folder_id", folder_id

    def with_references(self, mapping: Mapping[str, str]) -> "ChangeOperation":
        folder_id = (self.create or {}).get("folder_id")
        if folder_id in mapping:
            return replace(self, create={**self.create, "folder_id": mapping[folder_id]})
        return self


@register
@dataclass(frozen=True, kw_only=True)
class UpdateNode(ChangeOperation):
    OP = "update_node"
    ANY_OF = ("name", "documentation", "properties")

    id: str = _required(_ID, ref=True)
    name: Optional[str] = _optional(_NAME)
    documentation: Optional[str] = _optional(_TEXT)
    properties: Optional[Mapping[str, str]] = _optional(_PROPS)


@register
@dataclass(frozen=True, kw_only=True)
class DeleteNode(ChangeOperation):
    OP = "delete_node"
    PHASE = 3

    id: str = _required(_ID, ref=True)
    cascade: Optional[bool] = _optional(_BOOL)


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

@register
@dataclass(frozen=True, kw_only=True)
class CreateEdge(ChangeOperation):
    OP = "create_edge"
    DECLARES = True

    kind: str = _required(_NAME)
    source_id: str = _required(_ID, ref=True)
    target_id: str = _required(_ID, ref=True)
    name: Optional[str] = _optional(_TEXT)
    documentation: Optional[str] = _optional(_TEXT)
    access_type: Optional[str] = _optional(_ACCESS)
    properties: Optional[Mapping[str, str]] = _optional(_PROPS)
    temp_id: Optional[str] = _optional(_ID)
    on_duplicate: Optional[str] = _optional(_STRATEGY)


@register
@dataclass(frozen=True, kw_only=True)
class CreateOrGetEdge(ChangeOperation):
    OP = "create_or_get_edge"
    DECLARES = True

    kind: str = _required(_NAME)
    source_id: str = _required(_ID, ref=True)
    target_id: str = _required(_ID, ref=True)
    access_type: Optional[str] = _optional(_ACCESS)
    create: Optional[Mapping[str, Any]] = _optional(
        _obj(name=_TEXT, documentation=_TEXT, properties=_PROPS)
    )
    temp_id: Optional[str] = _optional(_ID)


@register
@dataclass(frozen=True, kw_only=True)
class UpdateEdge(ChangeOperation):
    OP = "update_edge"
    ANY_OF = ("name", "documentation", "properties")

    id: str = _required(_ID, ref=True)
    name: Optional[str] = _optional(_TEXT)
    documentation: Optional[str] = _optional(_TEXT)
    properties: Optional[Mapping[str, str]] = _optional(_PROPS)


@register
@dataclass(frozen=True, kw_only=True)
class DeleteEdge(ChangeOperation):
    OP = "delete_edge"
    PHASE = 3

    id: str = _required(_ID, ref=True)


# ---------------------------------------------------------------------------
# Properties + folders
# ---------------------------------------------------------------------------

@register
@dataclass(frozen=True, kw_only=True)
class SetProperty(ChangeOperation):
    OP = "set_property"

    id: str = _required(_ID, ref=True)
    key: str = _required(_NAME)
    value: str = _required(_TEXT)


@register
@dataclass(frozen=True, kw_only=True)
class MoveToFolder(ChangeOperation):
    OP = "move_to_folder"

    id: str = _required(_ID, ref=True)
    folder_id: str = _required(_ID, ref=True)


@register
@dataclass(frozen=True, kw_only=True)
class CreateFolder(ChangeOperation):
    OP = "create_folder"
    DECLARES = True

    name: str = _required(_NAME)
    parent_id: str = _required(_ID, ref=True)
    temp_id: Optional[str] = _optional(_ID)


# ---------------------------------------------------------------------------
# Diagrams
# ---------------------------------------------------------------------------

@register
@dataclass(frozen=True, kw_only=True)
class CreateDiagram(ChangeOperation):
    OP = "create_diagram"
    DECLARES = True

    name: str = _required(_NAME)
    folder_id: Optional[str] = _optional(_ID, ref=True)
    documentation: Optional[str] = _optional(_TEXT)
    temp_id: Optional[str] = _optional(_ID)


@register
@dataclass(frozen=True, kw_only=True)
class DeleteDiagram(ChangeOperation):
    OP = "delete_diagram"
    PHASE = 3

    diagram_id: str = _required(_ID, ref=True)


@register
@dataclass(frozen=True, kw_only=True)
class AddNodeToDiagram(ChangeOperation):
    OP = "add_node_to_diagram"
    DECLARES = True

    diagram_id: str = _required(_ID, ref=True)
    node_id: str = _required(_ID, ref=True)
    x: Optional[float] = _optional(_COORD)
    y: Optional[float] = _optional(_COORD)
    width: Optional[float] = _optional(_SIZE)
    height: Optional[float] = _optional(_SIZE)
    parent_placement_id: Optional[str] = _optional(_ID, ref=True)
    temp_id: Optional[str] = _optional(_ID)


@register
@dataclass(frozen=True, kw_only=True)
class AddEdgeToDiagram(ChangeOperation):
    OP = "add_edge_to_diagram"
    DECLARES = True

    diagram_id: str = _required(_ID, ref=True)
    edge_id: str = _required(_ID, ref=True)
    source_placement_id: str = _required(_ID, ref=True)
    target_placement_id: str = _required(_ID, ref=True)
    temp_id: Optional[str] = _optional(_ID)


@register
@dataclass(frozen=True, kw_only=True)
class NestInDiagram(ChangeOperation):
    OP = "nest_in_diagram"

    diagram_id: str = _required(_ID, ref=True)
    placement_id: str = _required(_ID, ref=True)
    parent_placement_id: str = _required(_ID, ref=True)
    x: Optional[float] = _optional(_COORD)
    y: Optional[float] = _optional(_COORD)


@register
@dataclass(frozen=True, kw_only=True)
class MoveDiagramObject(ChangeOperation):
    OP = "move_diagram_object"
    ANY_OF = ("x", "y", "width", "height")

    placement_id: str = _required(_ID, ref=True)
    x: Optional[float] = _optional(_COORD)
    y: Optional[float] = _optional(_COORD)
    width: Optional[float] = _optional(_SIZE)
    height: Optional[float] = _optional(_SIZE)


@register
@dataclass(frozen=True, kw_only=True)
class StyleDiagramObject(ChangeOperation):
    OP = "style_diagram_object"

    placement_id: str = _required(_ID, ref=True)
    fill_color: Optional[str] = _optional(_COLOR)
    line_color: Optional[str] = _optional(_COLOR)
    font_color: Optional[str] = _optional(_COLOR)
    font_size: Optional[int] = _optional(_FONT_SIZE)
    opacity: Optional[int] = _optional(_OPACITY)


@register
@dataclass(frozen=True, kw_only=True)
class StyleConnection(ChangeOperation):
    OP = "style_connection"

    connection_id: str = _required(_ID, ref=True)
    line_color: Optional[str] = _optional(_COLOR)
    line_width: Optional[int] = _optional({"type": "integer", "minimum": 1, "maximum": 3})
    font_color: Optional[str] = _optional(_COLOR)


@register
@dataclass(frozen=True, kw_only=True)
class DeleteConnectionFromDiagram(ChangeOperation):
    OP = "delete_connection_from_diagram"
    PHASE = 3

    diagram_id: str = _required(_ID, ref=True)
    connection_id: str = _required(_ID, ref=True)


@register
@dataclass(frozen=True, kw_only=True)
class CreateNote(ChangeOperation):
    OP = "create_note"
    DECLARES = True

    diagram_id: str = _required(_ID, ref=True)
    content: str = _required(_TEXT)
    x: Optional[float] = _optional(_COORD)
    y: Optional[float] = _optional(_COORD)
    width: Optional[float] = _optional(_SIZE)
    height: Optional[float] = _optional(_SIZE)
    temp_id: Optional[str] = _optional(_ID)


@register
@dataclass(frozen=True, kw_only=True)
class CreateGroup(ChangeOperation):
    OP = "create_group"
    DECLARES = True

    diagram_id: str = _required(_ID, ref=True)
    name: str = _required(_NAME)
    x: Optional[float] = _optional(_COORD)
    y: Optional[float] = _optional(_COORD)
    width: Optional[float] = _optional(_SIZE)
    height: Optional[float] = _optional(_SIZE)
    temp_id: Optional[str] = _optional(_ID)


NODE_CREATE_OPS = frozenset({CreateNode.OP, CreateOrGetNode.OP})
EDGE_CREATE_OPS = frozenset({CreateEdge.OP, CreateOrGetEdge.OP})
DELETE_OPS = frozenset(cls.OP for cls in OP_TYPES.values() if cls.PHASE == 3)
REFERENCE_FIELDS: Tuple[str, ...] = tuple(
    sorted({name for cls in OP_TYPES.values() for name in cls.reference_fields()})
)

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_VALIDATORS: Dict[str, Draft202012Validator] = {}
_QUOTED = re.compile(r"'([^']+)'")


def _validator_for(cls: Type[ChangeOperation]) -> Draft202012Validator:
    validator = _VALIDATORS.get(cls.OP)
    if validator is None:
        schema = cls.json_schema()
        Draft202012Validator.check_schema(schema)
        validator = Draft202012Validator(schema)
        _VALIDATORS[cls.OP] = validator
    return validator


def _field_of(error: Any) -> Optional[str]:
    if error.validator in {"required", "additionalProperties"}:
        m = _QUOTED.search(error.message)
        if m:
            prefix = ".".join(str(p) for p in error.absolute_path)
            return f"{prefix}.{m.group(1)}" if prefix else m.group(1)
    path = ".".join(str(p) for p in error.absolute_path)
    return path or None


def parse_change(raw: Any, index: int) -> ChangeOperation:
    """
    Validate one raw change record and return its typed operation.

    Raises:
        SchemaViolation: not an object, unknown op, or schema mismatch.
    """
    if not isinstance(raw, Mapping):
        raise SchemaViolation(
            f"change at /changes/{index} must be an object",
            details=op_error_details(index, None, hint=f"got {type(raw).__name__}"),
        )
    op = raw.get("op")
    if not isinstance(op, str) or not op:
        raise SchemaViolation(
            f"change at /changes/{index} is missing 'op'",
            details=op_error_details(index, None, field="op"),
        )
    cls = OP_TYPES.get(op)
    if cls is None:
        raise SchemaViolation(
            f"unknown op '{op}' at /changes/{index}",
            details=op_error_details(
                index, op, field="op", hint=f"supported ops: {', '.join(sorted(OP_TYPES))}"
            ),
        )

    errors = sorted(
        _validator_for(cls).iter_errors(dict(raw)),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    if errors:
        first = errors[0]
        raise SchemaViolation(
            f"{op} at /changes/{index}: {first.message}",
            details=op_error_details(index, op, field=_field_of(first), hint=first.message),
        )

    if cls.ANY_OF and all(raw.get(name) is None for name in cls.ANY_OF):
        wanted = ", ".join(cls.ANY_OF)
        raise SchemaViolation(
            f"{op} at /changes/{index} requires at least one of: {wanted}",
            details=op_error_details(index, op, field=cls.ANY_OF[0], hint=f"set one of {wanted}"),
        )

    return cls(**{k: v for k, v in raw.items() if k != "op"})


def parse_changes(changes: Sequence[Any]) -> List[ChangeOperation]:
    return [parse_change(raw, i) for i, raw in enumerate(changes)]


# ---------------------------------------------------------------------------
# Client-side key normalization
# ---------------------------------------------------------------------------

_CAMEL = re.compile(r"(?<=[a-z0-9])([A-Z])")

_KEY_ALIASES = {
    "type": "kind",
    "view_id": "diagram_id",
    "view_connection_id": "connection_id",
    "visual_id": "placement_id",
    "view_object_id": "placement_id",
    "source_visual_id": "source_placement_id",
    "target_visual_id": "target_placement_id",
    "parent_visual_id": "parent_placement_id",
    "element_id": "node_id",
    "relationship_id": "edge_id",
}

# Ops whose subject is addressed through plain "id".
_ID_SUBJECT_OPS = frozenset(
    {"update_node", "delete_node", "update_edge", "delete_edge", "set_property", "move_to_folder"}
)
_ID_ALIASES = ("element_id", "relationship_id", "node_id", "edge_id")


def _snake(key: str) -> str:
    return _CAMEL.sub(r"_\1", key).lower()


def normalize_change(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fold a loosely written change record into canonical wire keys.

    camelCase keys and op names become snake_case, and common aliases
    (``type``, ``view_id``, ``visual_id``, ``element_id``) map onto the
    canonical field. A canonical key already present is never overwritten.
    """
    if not isinstance(raw, Mapping):
        return raw  # left for parse_change to reject
    snake = {_snake(k): v for k, v in raw.items()}
    op = snake.get("op")
    if isinstance(op, str):
        op = _snake(op)
        snake["op"] = op

    out: Dict[str, Any] = {}
    for key, value in snake.items():
        target = key
        if op in _ID_SUBJECT_OPS and key in _ID_ALIASES:
            target = "id"
        elif key in _KEY_ALIASES:
            target = _KEY_ALIASES[key]
        if target != key and (target in snake or target in out):
            target = key
        out[target] = value

    # Numeric access codes: write=0, read=1, access=2, readwrite=3
    access = out.get("access_type")
    if isinstance(access, int) and not isinstance(access, bool) and 0 <= access < len(ACCESS_TYPES):
        out["access_type"] = ACCESS_TYPES[access]
    return out


__all__ = [
    "OP_TYPES",
    "ChangeOperation",
    "CreateNode",
    "CreateOrGetNode",
    "UpdateNode",
    "DeleteNode",
    "CreateEdge",
    "CreateOrGetEdge",
    "UpdateEdge",
    "DeleteEdge",
    "SetProperty",
    "MoveToFolder",
    "CreateFolder",
    "CreateDiagram",
    "DeleteDiagram",
    "AddNodeToDiagram",
    "AddEdgeToDiagram",
    "NestInDiagram",
    "MoveDiagramObject",
    "StyleDiagramObject",
    "StyleConnection",
    "DeleteConnectionFromDiagram",
    "CreateNote",
    "CreateGroup",
    "NODE_CREATE_OPS",
    "EDGE_CREATE_OPS",
    "DELETE_OPS",
    "REFERENCE_FIELDS",
    "parse_change",
    "parse_changes",
    "normalize_change",
]

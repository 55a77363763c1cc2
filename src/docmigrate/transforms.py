"""
Transform capability and declarative field mappings.

The engine never inspects document shape itself. Everything it knows
about the old and new shapes comes from a DocumentTransform injected when
the job is configured:

- forward(data): source shape -> target shape, raising TransformError for
  a document it cannot convert
- inverse(data): target shape -> source shape, used by rollback
- dual_write(data): a representation valid under both shapes, used by the
  compatibility shim while the cutover window is open

The engine's own bookkeeping lives in a reserved ``_migration`` marker on
each document it writes in the target shape; the helpers at the bottom of
this module stamp, strip and test that marker.

Usage:
    >>> transform = FieldMappingTransform(
    ...     source_version="1",
    ...     target_version="2",
    ...     operations=[
    ...         FieldOperation(OperationType.RENAME_FIELD, "mail", new_field="email"),
    ...         FieldOperation(OperationType.TRANSFORM_FIELD, "email", transform="normalize_email"),
    ...     ],
    ... )
    >>> new = transform.forward({"mail": " A@X.io "})
    >>> transform.inverse(new)
    {'mail': ' A@X.io '}
"""

from __future__ import annotations

import copy
import importlib
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from docmigrate.exceptions import InvalidConfigError, TransformError

logger = logging.getLogger(__name__)

MARKER_FIELD = "_migration"
UNDO_FIELD = "_migration_undo"

Document = dict[str, Any]


class DocumentTransform(ABC):
    """
    Capability interface for a per-document shape change.

    Implementations must be pure per document: the result may depend only
    on the document passed in.

    Attributes:
        source_version: Shape version documents are migrated from.
        target_version: Shape version documents are migrated to.
        estimated_index_updates: Index entries touched per written document,
            counted against the per-transaction operation ceiling.
    """

    source_version: str = "1"
    target_version: str = "2"
    estimated_index_updates: int = 0

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def forward(self, data: Document) -> Document:
        """Convert a source-shape document to the target shape."""

    @abstractmethod
    def inverse(self, data: Document) -> Document:
        """Convert a target-shape document back to the source shape."""

    def dual_write(self, data: Document) -> Document:
        """
        Merge a target-shape document with its source-shape rendering.

        The result carries every field either shape expects, so both
        ``forward`` and ``inverse`` remain applicable to it.
        """
        try:
            legacy = self.inverse(copy.deepcopy(data))
        except TransformError:
            logger.debug("%s: no source-shape rendering for dual write", self.name)
            return dict(data)
        merged = dict(legacy)
        merged.update(data)
        return merged


class CallableTransform(DocumentTransform):
    """
    Adapts a pair of plain functions to the DocumentTransform interface.

    Example:
        >>> transform = CallableTransform(
        ...     forward=lambda d: {**d, "v": 2},
        ...     inverse=lambda d: {k: v for k, v in d.items() if k != "v"},
        ... )
    """

    def __init__(
        self,
        forward: Callable[[Document], Document],
        inverse: Callable[[Document], Document],
        *,
        source_version: str = "1",
        target_version: str = "2",
        estimated_index_updates: int = 0,
        name: str | None = None,
    ) -> None:
        self._forward = forward
        self._inverse = inverse
        self.source_version = source_version
        self.target_version = target_version
        self.estimated_index_updates = estimated_index_updates
        self._name = name or getattr(forward, "__name__", "CallableTransform")

    @property
    def name(self) -> str:
        return self._name

    def forward(self, data: Document) -> Document:
        return self._forward(data)

    def inverse(self, data: Document) -> Document:
        return self._inverse(data)


# =============================================================================
# Named value transforms and validations
# =============================================================================

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def timestamp_to_iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC).isoformat()
    return value


def normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def sanitize_html(value: Any) -> Any:
    if isinstance(value, str):
        return _SCRIPT_RE.sub("", value)
    return value


def array_deduplicate(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    result: list[Any] = []
    for item in value:
        if item not in result:
            result.append(item)
    return result


VALUE_TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "timestamp_to_iso": timestamp_to_iso,
    "normalize_email": normalize_email,
    "sanitize_html": sanitize_html,
    "array_deduplicate": array_deduplicate,
}

VALIDATIONS: dict[str, Callable[[Any], bool]] = {
    "required": lambda value: value is not None and value != "",
    "email": lambda value: isinstance(value, str) and bool(_EMAIL_RE.match(value)),
    "array_not_empty": lambda value: isinstance(value, list) and len(value) > 0,
    "positive_number": lambda value: (
        isinstance(value, int | float) and not isinstance(value, bool) and value > 0
    ),
}

CUSTOM_OPERATIONS: dict[str, Callable[[Document], Document]] = {}


def register_custom_operation(name: str, func: Callable[[Document], Document]) -> None:
    """Make ``func`` available to ``custom`` field operations under ``name``."""
    CUSTOM_OPERATIONS[name] = func


# =============================================================================
# Declarative field mapping
# =============================================================================


class OperationType(Enum):
    ADD_FIELD = "add_field"
    REMOVE_FIELD = "remove_field"
    RENAME_FIELD = "rename_field"
    TRANSFORM_FIELD = "transform_field"
    VALIDATE_FIELD = "validate_field"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FieldOperation:
    """
    One declarative step of a FieldMappingTransform.

    Attributes:
        type: The operation to apply.
        field: Top-level field the operation reads or writes.
        new_field: Destination name for ``rename_field``.
        default_value: Value for ``add_field``.
        transform: Named value transform, or custom operation name.
        validation: Named validation for ``validate_field``.
        conditions: Field equality checks that must all hold for the step to run.
    """

    type: OperationType
    field: str
    new_field: str | None = None
    default_value: Any = None
    transform: str | None = None
    validation: str | None = None
    conditions: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type == OperationType.RENAME_FIELD and not self.new_field:
            raise InvalidConfigError(f"rename_field on '{self.field}' needs new_field")
        if self.type == OperationType.TRANSFORM_FIELD and self.transform not in VALUE_TRANSFORMS:
            raise InvalidConfigError(f"Unknown value transform: {self.transform!r}")
        if self.type == OperationType.VALIDATE_FIELD and self.validation not in VALIDATIONS:
            raise InvalidConfigError(f"Unknown validation: {self.validation!r}")
        if self.type == OperationType.CUSTOM and not self.transform:
            raise InvalidConfigError(f"custom operation on '{self.field}' needs transform")

    def applies_to(self, data: Document) -> bool:
        return all(data.get(name) == expected for name, expected in self.conditions.items())

    def apply(self, data: Document, key: str | None = None) -> Document:
        if not self.applies_to(data):
            return data

        if self.type == OperationType.ADD_FIELD:
            if self.field not in data:
                data[self.field] = copy.deepcopy(self.default_value)
        elif self.type == OperationType.REMOVE_FIELD:
            data.pop(self.field, None)
        elif self.type == OperationType.RENAME_FIELD:
            if self.field in data:
                data[self.new_field] = data.pop(self.field)  # type: ignore[index]
        elif self.type == OperationType.TRANSFORM_FIELD:
            if self.field in data:
                data[self.field] = VALUE_TRANSFORMS[self.transform](data[self.field])  # type: ignore[index]
        elif self.type == OperationType.VALIDATE_FIELD:
            if not VALIDATIONS[self.validation](data.get(self.field)):  # type: ignore[index]
                raise TransformError(
                    f"Field '{self.field}' failed '{self.validation}' validation",
                    key=key,
                )
        elif self.type == OperationType.CUSTOM:
            func = CUSTOM_OPERATIONS.get(self.transform or "")
            if func is None:
                raise TransformError(f"Custom operation not registered: {self.transform}", key=key)
            data = func(data)
        return data

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.value, "field": self.field}
        if self.new_field is not None:
            result["new_field"] = self.new_field
        if self.default_value is not None:
            result["default_value"] = self.default_value
        if self.transform is not None:
            result["transform"] = self.transform
        if self.validation is not None:
            result["validation"] = self.validation
        if self.conditions:
            result["conditions"] = dict(self.conditions)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldOperation:
        try:
            op_type = OperationType(data["type"])
        except (KeyError, ValueError) as e:
            raise InvalidConfigError(f"Invalid field operation type in {dict(data)!r}") from e
        return cls(
            type=op_type,
            field=data["field"],
            new_field=data.get("new_field"),
            default_value=data.get("default_value"),
            transform=data.get("transform"),
            validation=data.get("validation"),
            conditions=dict(data.get("conditions") or {}),
        )


class FieldMappingTransform(DocumentTransform):
    """
    Transform built from a list of FieldOperations.

    Forward records an undo log of every top-level field it changed, plus
    the original key order, under ``_migration_undo``. Inverse replays the
    log, so a forward/inverse round trip reproduces the document exactly.
    Documents without an undo log (written through the compatibility shim)
    are inverted structurally: renames are reversed, other steps are kept.
    """

    def __init__(
        self,
        operations: list[FieldOperation],
        *,
        source_version: str = "1",
        target_version: str = "2",
        estimated_index_updates: int = 0,
    ) -> None:
        if not operations:
            raise InvalidConfigError("FieldMappingTransform needs at least one operation")
        self.operations = list(operations)
        self.source_version = source_version
        self.target_version = target_version
        self.estimated_index_updates = estimated_index_updates

    def forward(self, data: Document, key: str | None = None) -> Document:
        original = copy.deepcopy(data)
        result = copy.deepcopy(data)
        for operation in self.operations:
            result = operation.apply(result, key)

        changes = []
        for name in list(original) + [k for k in result if k not in original]:
            before_present = name in original
            after_present = name in result
            if before_present != after_present or (
                before_present and original[name] != result[name]
            ):
                changes.append(
                    {"field": name, "present": before_present, "value": original.get(name)}
                )
        result[UNDO_FIELD] = {"keys": list(original), "changes": changes}
        return result

    def inverse(self, data: Document) -> Document:
        result = copy.deepcopy(data)
        undo = result.pop(UNDO_FIELD, None)
        if undo is None:
            for operation in reversed(self.operations):
                if operation.type == OperationType.RENAME_FIELD and operation.new_field in result:
                    result[operation.field] = result.pop(operation.new_field)  # type: ignore[arg-type]
            return result

        for change in reversed(undo["changes"]):
            if change["present"]:
                result[change["field"]] = change["value"]
            else:
                result.pop(change["field"], None)

        order = undo["keys"]
        ordered = {name: result[name] for name in order if name in result}
        ordered.update({name: value for name, value in result.items() if name not in ordered})
        return ordered

    def dual_write(self, data: Document) -> Document:
        merged = dict(data)
        merged.pop(UNDO_FIELD, None)
        for operation in self.operations:
            if operation.type == OperationType.RENAME_FIELD and operation.new_field in merged:
                merged.setdefault(operation.field, merged[operation.new_field])
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_version": self.source_version,
            "target_version": self.target_version,
            "estimated_index_updates": self.estimated_index_updates,
            "operations": [operation.to_dict() for operation in self.operations],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldMappingTransform:
        return cls(
            [FieldOperation.from_dict(item) for item in data.get("operations", [])],
            source_version=str(data.get("source_version", "1")),
            target_version=str(data.get("target_version", "2")),
            estimated_index_updates=int(data.get("estimated_index_updates", 0)),
        )


def load_transform(spec: str | Mapping[str, Any] | DocumentTransform) -> DocumentTransform:
    """
    Resolve a transform from configuration.

    Accepts a DocumentTransform instance, a ``"module:attribute"`` path to a
    transform or a zero-argument factory, a mapping with a ``factory`` key,
    or a declarative mapping with an ``operations`` list.

    Raises:
        InvalidConfigError: If the value cannot be resolved to a transform.
    """
    if isinstance(spec, DocumentTransform):
        return spec
    if isinstance(spec, Mapping):
        if "factory" in spec:
            return load_transform(str(spec["factory"]))
        if "operations" in spec:
            return FieldMappingTransform.from_dict(spec)
        raise InvalidConfigError("Transform config needs either 'factory' or 'operations'")

    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise InvalidConfigError(f"Transform path must look like 'module:attribute', got {spec!r}")
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise InvalidConfigError(f"Cannot import transform {spec!r}: {e}") from e

    if isinstance(target, DocumentTransform):
        return target
    if isinstance(target, type) and issubclass(target, DocumentTransform):
        return target()
    if callable(target):
        result = target()
        if isinstance(result, DocumentTransform):
            return result
    raise InvalidConfigError(f"{spec!r} did not resolve to a DocumentTransform")


# =============================================================================
# Engine marker helpers
# =============================================================================


def stamp_marker(data: Document, job_id: UUID, shape: str) -> Document:
    """Return a copy of ``data`` marked as written in ``shape`` by ``job_id``."""
    stamped = dict(data)
    stamped[MARKER_FIELD] = {"job_id": str(job_id), "shape": shape}
    return stamped


def strip_marker(data: Document) -> Document:
    return {name: value for name, value in data.items() if name != MARKER_FIELD}


def marker_job_id(data: Document) -> str | None:
    marker = data.get(MARKER_FIELD)
    if isinstance(marker, dict):
        return marker.get("job_id")
    return None


def is_marked_by(data: Document, job_id: UUID) -> bool:
    return marker_job_id(data) == str(job_id)


def apply_forward(transform: DocumentTransform, data: Document, key: str) -> Document:
    """
    Run ``transform.forward`` with engine metadata removed.

    Any exception from the transform is reported as a TransformError for
    ``key`` so one bad document never aborts its batch.
    """
    body = strip_marker(data)
    try:
        if isinstance(transform, FieldMappingTransform):
            return transform.forward(body, key)
        return transform.forward(body)
    except TransformError as e:
        if e.key is None:
            e.key = key
        raise
    except Exception as e:
        raise TransformError(f"{transform.name} failed: {e}", key=key) from e


__all__ = [
    "MARKER_FIELD",
    "UNDO_FIELD",
    "DocumentTransform",
    "CallableTransform",
    "OperationType",
    "FieldOperation",
    "FieldMappingTransform",
    "VALUE_TRANSFORMS",
    "VALIDATIONS",
    "register_custom_operation",
    "load_transform",
    "stamp_marker",
    "strip_marker",
    "marker_job_id",
    "is_marked_by",
    "apply_forward",
    "timestamp_to_iso",
    "normalize_email",
    "sanitize_html",
    "array_deduplicate",
]

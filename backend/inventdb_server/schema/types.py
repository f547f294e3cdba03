"""
Core type definitions for InventDB collection schemas.

This module defines the types each collection declares its records with:
- FieldKind: Value type of a field
- FieldDef: Individual field within a collection
- CollectionDef: Definition of one collection (its record schema)

Invariants:
    - Field names are unique within a collection
    - enum_values are append-only; old snapshots must still validate
    - Reserved fields (id, created_at, updated_at) are owned by the store

How to change safely:
    - Add new fields as optional
    - Add new enum values at the end of enum_values
    - Never make an existing optional field required

Example:
    >>> Employees = CollectionDef(
    ...     name="employees",
    ...     fields=(
    ...         field("name", "str", required=True),
    ...         field("department", "str", required=True),
    ...         field("email", "str"),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

RESERVED_FIELDS = frozenset({"id", "created_at", "updated_at"})


class FieldKind(Enum):
    """Supported field types in a collection schema."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    ENUM = "enum"  # Enumerated string values
    JSON = "json"  # Arbitrary JSON value (lists, objects)

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


_VALIDATORS = {
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldKind.FLOAT: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.ENUM: lambda v: isinstance(v, str),
    FieldKind.JSON: lambda _: True,
}


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field within a collection.

    Attributes:
        name: Field name as stored in the record payload
        kind: The data type of the field
        required: Whether the field must be present and non-blank on create
        default: Value applied on create when the field is absent
        enum_values: Valid values if kind is ENUM (append-only)
        strict_empty: Whether blank values ("", 0) differ from "no value"
            when diffing
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    strict_empty: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name in RESERVED_FIELDS:
            raise ValueError(f"Field name '{self.name}' is reserved")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None or (value == "" and self.kind != FieldKind.JSON):
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        if not _VALIDATORS[self.kind](value):
            return False, f"Field '{self.name}' expects {self.kind.value}, got {type(value).__name__}"

        if self.kind == FieldKind.ENUM and value not in self.enum_values:
            return False, (
                f"Field '{self.name}' must be one of {list(self.enum_values)}, got '{value}'"
            )

        return True, None


def field(
    name: str,
    kind: str,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    strict_empty: bool = False,
    description: str = "",
) -> FieldDef:
    """Shorthand for building a FieldDef from a kind string."""
    return FieldDef(
        name=name,
        kind=FieldKind.from_str(kind),
        required=required,
        default=default,
        enum_values=enum_values,
        strict_empty=strict_empty,
        description=description,
    )


@dataclass(frozen=True)
class CollectionDef:
    """Record schema of one collection.

    Attributes:
        name: Collection name (URL segment and snapshot key)
        fields: Field definitions in display order
        description: Human-readable description
    """

    name: str
    fields: tuple[FieldDef, ...]
    description: str = ""

    def __post_init__(self) -> None:
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field names in collection '{self.name}'")

    def get_field(self, name: str) -> FieldDef | None:
        """Look up a field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields if f.required)

    def clean(self, data: dict[str, Any]) -> dict[str, Any]:
        """Drop store-owned fields from an incoming payload."""
        return {k: v for k, v in data.items() if k not in RESERVED_FIELDS}

    def apply_defaults(self, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of data with defaults filled for absent fields."""
        result = dict(data)
        for f in self.fields:
            if f.default is not None and result.get(f.name) is None:
                result[f.name] = f.default
        return result

    def validate(self, data: dict[str, Any], partial: bool = False) -> list[str]:
        """Validate a payload against this schema.

        Args:
            data: Payload without reserved fields
            partial: If True, absent required fields are allowed (update);
                present ones must still be non-blank

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        for key in data:
            if self.get_field(key) is None:
                errors.append(f"Unknown field '{key}' for collection '{self.name}'")

        for f in self.fields:
            if partial and f.name not in data:
                continue
            valid, error = f.validate_value(data.get(f.name))
            if not valid:
                errors.append(error)

        return errors

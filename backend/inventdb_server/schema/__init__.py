"""
Schema module for InventDB.

This module provides the record schemas of every collection:
- FieldDef / FieldKind: Field definitions and value types
- CollectionDef: One collection's record schema
- COLLECTIONS: Registry of all collections keyed by name

Invariants:
    - Collections are fixed at import time
    - Schemas only grow (new optional fields, appended enum values)
"""

from .collections import (
    ALL_COLLECTIONS,
    COLLECTIONS,
    HISTORY,
    collection_names,
    get_collection,
)
from .types import RESERVED_FIELDS, CollectionDef, FieldDef, FieldKind, field

__all__ = [
    "ALL_COLLECTIONS",
    "COLLECTIONS",
    "HISTORY",
    "RESERVED_FIELDS",
    "CollectionDef",
    "FieldDef",
    "FieldKind",
    "collection_names",
    "field",
    "get_collection",
]

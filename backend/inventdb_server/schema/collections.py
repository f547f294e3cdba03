"""
Collection definitions for the inventory store.

Each collection is an independent namespace with its own record schema.
Cross-collection references (a device's ``user``, a storage item's
``responsible_person``) are plain strings; the store does not join them.

The audit log is exposed to callers under the name ``history`` and the
wildcard ``all`` is used by events that touch every collection.
"""

from __future__ import annotations

from ..errors import ValidationFailedError
from .types import CollectionDef, field

HISTORY = "history"
ALL_COLLECTIONS = "all"

EQUIPMENT_STATUSES = ("in_use", "storage", "broken", "personal_use", "repair")
NETWORK_STATUSES = ("online", "offline", "broken", "personal_use", "repair")

Devices = CollectionDef(
    name="devices",
    description="Workstations and laptops",
    fields=(
        field("name", "str", required=True),
        field("inventory_number", "str"),
        field("model", "str", required=True),
        field("serial_number", "str"),
        field("user", "str"),
        field("department", "str"),
        field(
            "status",
            "enum",
            enum_values=EQUIPMENT_STATUSES,
            default="storage",
            strict_empty=True,
        ),
        field("category", "str"),
        field("office", "str"),
        field("location", "str"),
        field("cpu", "str"),
        field("ram", "str"),
        field("drives", "str"),
        field("gpu", "str"),
        field("monitor", "str"),
        field("monitor2", "str"),
        field("monitor_price", "float"),
        field("monitor2_price", "float"),
        field("price", "float"),
        field("os", "str"),
    ),
)

NetworkDevices = CollectionDef(
    name="networkDevices",
    description="Switches, routers and access points",
    fields=(
        field("name", "str", required=True),
        field("inventory_number", "str"),
        field("model", "str"),
        field("serial_number", "str"),
        field("ip_address", "str"),
        field("mac_address", "str"),
        field(
            "status",
            "enum",
            enum_values=NETWORK_STATUSES,
            default="offline",
            strict_empty=True,
        ),
        field("location", "str"),
        field("department", "str"),
    ),
)

StorageItems = CollectionDef(
    name="storageItems",
    description="Consumables and spare parts kept in storage",
    fields=(
        field("name", "str", required=True),
        field("inventory_number", "str"),
        field("category", "str", required=True),
        field("quantity", "int", default=0, strict_empty=True),
        field("price", "float"),
        field("last_check_date", "str"),
        field("responsible_person", "str"),
        field("image_url", "str"),
    ),
)

Employees = CollectionDef(
    name="employees",
    description="Staff that equipment can be assigned to",
    fields=(
        field("name", "str", required=True),
        field("department", "str", required=True),
        field("position", "str"),
        field("email", "str"),
        field("phone", "str"),
    ),
)

Mfu = CollectionDef(
    name="mfu",
    description="Multi-function printers and copiers",
    fields=(
        field("name", "str"),
        field("inventory_number", "str"),
        field("model", "str", required=True),
        field("serial_number", "str"),
        field("user", "str"),
        field("department", "str"),
        field(
            "status",
            "enum",
            enum_values=EQUIPMENT_STATUSES,
            default="storage",
            strict_empty=True,
        ),
        field("category", "str"),
        field("price", "float"),
    ),
)

ServerEquipment = CollectionDef(
    name="serverEquipment",
    description="Servers and their disk sets",
    fields=(
        field("name", "str"),
        field("inventory_number", "str"),
        field("model", "str", required=True),
        field("serial_number", "str"),
        field("user", "str"),
        field("department", "str"),
        field(
            "status",
            "enum",
            enum_values=EQUIPMENT_STATUSES,
            default="storage",
            strict_empty=True,
        ),
        field("category", "str"),
        field("price", "float"),
        field("hard_disk_size", "float"),
        field("hard_disk_count", "int", strict_empty=True),
        field("hard_disk_price", "float"),
        field("hard_disks_details", "json"),
        field("location", "str"),
    ),
)

COLLECTIONS: dict[str, CollectionDef] = {
    c.name: c for c in (Devices, NetworkDevices, StorageItems, Employees, Mfu, ServerEquipment)
}


def collection_names() -> tuple[str, ...]:
    """Names of all record collections (excluding history)."""
    return tuple(COLLECTIONS)


def get_collection(name: str) -> CollectionDef:
    """Look up a collection definition by name.

    Raises:
        ValidationFailedError: If the collection is unknown
    """
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise ValidationFailedError(
            f"Unknown collection '{name}'",
            errors=[f"Valid collections: {sorted(COLLECTIONS)}"],
            collection=name,
        ) from None

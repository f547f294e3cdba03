"""
Dashboard statistics computed from the live store.

Statistics are recomputed on demand from one consistent capture of the
store and never persisted. Collections keep their price components in
different fields, so each has its own cost rule:

    devices          price + monitor_price + monitor2_price
    mfu              price
    serverEquipment  price + sum(count * price) over hard_disks_details,
                     else price + hard_disk_count * hard_disk_price
    storageItems     price * quantity

Invariants:
    - Never mutates the store
    - Missing or malformed numbers count as zero
    - compute() never raises; a failed capture yields an all-zero result
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from ..schema.collections import COLLECTIONS
from ..store.collection_store import CollectionStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = {
    "devices": "Devices",
    "mfu": "MFU",
    "serverEquipment": "Server equipment",
    "storageItems": "Storage",
}


def _num(value: Any) -> float:
    """Coerce a field value to a number, zero if it isn't one."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return 0.0
    return 0.0


def device_cost(record: dict[str, Any]) -> float:
    return _num(record.get("price")) + _num(record.get("monitor_price")) + _num(
        record.get("monitor2_price")
    )


def mfu_cost(record: dict[str, Any]) -> float:
    return _num(record.get("price"))


def server_cost(record: dict[str, Any]) -> float:
    total = _num(record.get("price"))
    disks = record.get("hard_disks_details")
    if isinstance(disks, list) and disks:
        for disk in disks:
            if isinstance(disk, dict):
                total += _num(disk.get("count")) * _num(disk.get("price"))
    else:
        total += _num(record.get("hard_disk_count")) * _num(record.get("hard_disk_price"))
    return total


def storage_cost(record: dict[str, Any]) -> float:
    return _num(record.get("price")) * _num(record.get("quantity"))


COST_RULES = {
    "devices": device_cost,
    "mfu": mfu_cost,
    "serverEquipment": server_cost,
    "storageItems": storage_cost,
}


@dataclass
class Statistics:
    """Computed dashboard figures.

    Attributes:
        counts: Records per collection
        by_status: Per collection, record counts per status value
        storage_categories: Distinct storage item categories
        total_value: Summed cost over all priced collections
        value_by_category: Summed cost per category
        store_version: Store version the figures were computed at
    """

    counts: dict[str, int] = field(default_factory=lambda: {name: 0 for name in COLLECTIONS})
    by_status: dict[str, dict[str, int]] = field(default_factory=dict)
    storage_categories: int = 0
    total_value: float = 0.0
    value_by_category: dict[str, float] = field(default_factory=dict)
    store_version: int | None = None

    def status_count(self, collection: str, status: str) -> int:
        return self.by_status.get(collection, {}).get(status, 0)

    def to_dict(self) -> dict[str, Any]:
        """Structured figures plus the flat keys the dashboard reads."""
        return {
            "counts": self.counts,
            "by_status": self.by_status,
            "storage_categories": self.storage_categories,
            "total_value": round(self.total_value, 2),
            "value_by_category": {k: round(v, 2) for k, v in self.value_by_category.items()},
            "store_version": self.store_version,
            "total_devices": self.counts.get("devices", 0),
            "devices_in_use": self.status_count("devices", "in_use"),
            "devices_in_storage": self.status_count("devices", "storage"),
            "devices_personal_use": self.status_count("devices", "personal_use"),
            "devices_repair": self.status_count("devices", "repair"),
            "devices_broken": self.status_count("devices", "broken"),
            "total_mfu": self.counts.get("mfu", 0),
            "mfu_in_use": self.status_count("mfu", "in_use"),
            "mfu_in_storage": self.status_count("mfu", "storage"),
            "total_server": self.counts.get("serverEquipment", 0),
            "server_in_use": self.status_count("serverEquipment", "in_use"),
            "server_in_storage": self.status_count("serverEquipment", "storage"),
            "total_network_devices": self.counts.get("networkDevices", 0),
            "network_devices_online": self.status_count("networkDevices", "online"),
            "total_storage_items": self.counts.get("storageItems", 0),
            "total_employees": self.counts.get("employees", 0),
        }


def compute_statistics(
    collections: dict[str, list[dict[str, Any]]],
    store_version: int | None = None,
) -> Statistics:
    """Compute statistics from plain record dicts. Inputs are not modified."""
    stats = Statistics(store_version=store_version)

    for name in COLLECTIONS:
        records = collections.get(name) or []
        stats.counts[name] = len(records)

        statuses = Counter(
            r["status"] for r in records if isinstance(r.get("status"), str) and r["status"]
        )
        if statuses:
            stats.by_status[name] = dict(statuses)

        rule = COST_RULES.get(name)
        if rule is None:
            continue
        for record in records:
            cost = rule(record)
            stats.total_value += cost
            category = record.get("category")
            if not isinstance(category, str) or not category.strip():
                category = DEFAULT_CATEGORIES[name]
            stats.value_by_category[category] = stats.value_by_category.get(category, 0.0) + cost

    stats.storage_categories = len(
        {
            r["category"]
            for r in collections.get("storageItems") or []
            if isinstance(r.get("category"), str) and r["category"].strip()
        }
    )
    return stats


class StatisticsAggregator:
    """Computes Statistics from the store on demand.

    Example:
        >>> aggregator = StatisticsAggregator(store)
        >>> stats = await aggregator.compute()
        >>> stats.total_value
    """

    def __init__(self, store: CollectionStore) -> None:
        self.store = store

    async def compute(self) -> Statistics:
        """Current statistics; all-zero if the store cannot be read."""
        try:
            image = await self.store.capture(include_history=False)
        except Exception as e:
            logger.error(f"Failed to read store for statistics: {e}", exc_info=True)
            return Statistics()
        return compute_statistics(image.collections, image.store_version)

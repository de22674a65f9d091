"""Inventory lookups used to snapshot stock status onto order items.

The ledger never decrements stock; it only records what the inventory said
when the order was created.
"""

from abc import ABC, abstractmethod

IN_STOCK = "In Stock"
LOW_STOCK = "Low Stock"
OUT_OF_STOCK = "Out of Stock"
UNKNOWN = "Unknown"

# Fewer than this many units on hand reads as low stock
LOW_STOCK_THRESHOLD = 5


def status_for_level(level: int) -> str:
    if level <= 0:
        return OUT_OF_STOCK
    if level < LOW_STOCK_THRESHOLD:
        return LOW_STOCK
    return IN_STOCK


class InventoryPort(ABC):
    """Abstract interface for inventory sources."""

    @abstractmethod
    def stock_status(self, item_id: str) -> str:
        """Return the current stock status label for an item."""
        ...


class StaticInventory(InventoryPort):
    """Inventory backed by a fixed mapping of item ID to units on hand."""

    def __init__(self, levels: dict[str, int] | None = None):
        self.levels = dict(levels or {})

    def set_level(self, item_id: str, level: int) -> None:
        self.levels[item_id] = level

    def stock_status(self, item_id: str) -> str:
        level = self.levels.get(item_id)
        if level is None:
            return UNKNOWN
        return status_for_level(level)

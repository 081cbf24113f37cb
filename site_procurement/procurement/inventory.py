from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StockLevel:
    quantity: float
    unit: str | None = None


class InventoryOracle(Protocol):
    def stock_for(self, item_name: str) -> StockLevel | None:
        ...


class SqlInventoryOracle:
    """Reads central stock from ``inventory_items``; never writes."""

    def __init__(self, db, *, tenant_id: str) -> None:
        from site_procurement.contexts.procurement.infrastructure.repositories.inventory_repository import (
            InventoryRepository,
        )

        self._db = db
        self._repository = InventoryRepository(tenant_id=tenant_id)

    def stock_for(self, item_name: str) -> StockLevel | None:
        row = self._repository.find_by_name(self._db, item_name)
        if not row:
            return None
        return StockLevel(quantity=float(row.get("central_stock") or 0), unit=row.get("unit"))

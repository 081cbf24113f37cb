from __future__ import annotations

from site_procurement.infrastructure.repositories.base import BaseRepository


class InventoryRepository(BaseRepository):
    def find_by_name(self, db, item_name: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, item_name, unit, central_stock, tenant_id
            FROM inventory_items
            WHERE LOWER(item_name) = LOWER(?) AND tenant_id = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (str(item_name or "").strip(), self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def set_stock(self, db, *, item_name: str, central_stock: float, unit: str | None = None) -> int:
        existing = self.find_by_name(db, item_name)
        if existing:
            db.execute(
                """
                UPDATE inventory_items
                SET central_stock = ?, unit = COALESCE(?, unit), updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND tenant_id = ?
                """,
                (central_stock, unit, existing["id"], self.tenant_id),
            )
            return int(existing["id"])
        cursor = db.execute(
            """
            INSERT INTO inventory_items (item_name, unit, central_stock, tenant_id)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (item_name, unit, central_stock, self.tenant_id),
        )
        return self.returned_id(cursor)

from __future__ import annotations

from site_procurement.infrastructure.repositories.base import BaseRepository


class VendorRepository(BaseRepository):
    def get_active(self, db, vendor_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, active, tenant_id
            FROM vendors
            WHERE id = ? AND active = 1 AND tenant_id = ?
            LIMIT 1
            """,
            (vendor_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def create(self, db, *, name: str, active: bool = True) -> int:
        cursor = db.execute(
            """
            INSERT INTO vendors (name, active, tenant_id)
            VALUES (?, ?, ?)
            RETURNING id
            """,
            (name, 1 if active else 0, self.tenant_id),
        )
        return self.returned_id(cursor)

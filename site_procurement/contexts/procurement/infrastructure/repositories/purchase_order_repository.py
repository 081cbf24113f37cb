from __future__ import annotations

from typing import Iterable

from site_procurement.infrastructure.repositories.base import BaseRepository


LIVE_LINE_STATUSES = ("sign_pending", "approved")


class PurchaseOrderRepository(BaseRepository):
    def list_by_number(self, db, po_number: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM purchase_orders
            WHERE po_number = ? AND tenant_id = ?
            ORDER BY id ASC
            """,
            (po_number, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def create_line(
        self,
        db,
        *,
        po_number: str,
        vendor_id: int,
        request_item_id: int,
        quantity: float,
        unit: str | None,
        unit_price: float,
        created_by: str,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO purchase_orders (
                po_number, vendor_id, request_item_id, quantity, unit, unit_price, total_price,
                status, created_by, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'sign_pending', ?, ?)
            RETURNING id
            """,
            (
                po_number,
                vendor_id,
                request_item_id,
                quantity,
                unit,
                unit_price,
                round(float(quantity) * float(unit_price), 2),
                created_by,
                self.tenant_id,
            ),
        )
        return self.returned_id(cursor)

    def has_live_line(self, db, request_item_id: int) -> bool:
        row = db.execute(
            f"""
            SELECT 1
            FROM purchase_orders
            WHERE request_item_id = ? AND status IN ({self.placeholders(len(LIVE_LINE_STATUSES))})
              AND tenant_id = ?
            LIMIT 1
            """,
            (request_item_id, *LIVE_LINE_STATUSES, self.tenant_id),
        ).fetchone()
        return row is not None

    def latest_number_for_item(self, db, request_item_id: int, statuses: Iterable[str]) -> str | None:
        wanted = tuple(statuses)
        row = db.execute(
            f"""
            SELECT po_number
            FROM purchase_orders
            WHERE request_item_id = ? AND status IN ({self.placeholders(len(wanted))}) AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (request_item_id, *wanted, self.tenant_id),
        ).fetchone()
        if not row:
            return None
        return str(row["po_number"] if isinstance(row, dict) else row[0])

    def update_status_guarded(
        self,
        db,
        po_number: str,
        *,
        expected_status: str,
        to_status: str,
        rejection_reason: str | None = None,
        signed_by: str | None = None,
        signed_at: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            UPDATE purchase_orders
            SET status = ?, rejection_reason = ?, signed_by = COALESCE(?, signed_by),
                signed_at = COALESCE(?, signed_at), updated_at = CURRENT_TIMESTAMP
            WHERE po_number = ? AND status = ? AND tenant_id = ?
            """,
            (to_status, rejection_reason, signed_by, signed_at, po_number, expected_status, self.tenant_id),
        )
        return int(cursor.rowcount)

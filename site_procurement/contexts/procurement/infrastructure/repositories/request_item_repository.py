from __future__ import annotations

from typing import Any, Iterable

from site_procurement.infrastructure.repositories.base import BaseRepository


DETAIL_COLUMNS = (
    "item_name",
    "quantity",
    "unit",
    "description",
    "specs",
    "brand",
    "is_urgent",
    "required_by",
    "site_id",
)

WORKFLOW_COLUMNS = (
    "rejection_reason",
    "direct_action",
    "is_split_approved",
    "approved_by",
    "approved_at",
    "delivery_marked_at",
)

_UPDATABLE_COLUMNS = frozenset(DETAIL_COLUMNS + WORKFLOW_COLUMNS)


class RequestItemRepository(BaseRepository):
    def get_by_id(self, db, item_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM request_items
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (item_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_many(self, db, item_ids: Iterable[int]) -> dict[int, dict]:
        ids = [int(item_id) for item_id in item_ids]
        if not ids:
            return {}
        rows = db.execute(
            f"""
            SELECT *
            FROM request_items
            WHERE id IN ({self.placeholders(len(ids))}) AND tenant_id = ?
            """,
            self.scoped_params(ids),
        ).fetchall()
        return {int(row["id"]): dict(row) for row in rows}

    def list_group(self, db, request_number: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM request_items
            WHERE request_number = ? AND tenant_id = ?
            ORDER BY item_order ASC, id ASC
            """,
            (request_number, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def next_item_order(self, db, request_number: str) -> int:
        row = db.execute(
            """
            SELECT COALESCE(MAX(item_order), 0) + 1 AS next_order
            FROM request_items
            WHERE request_number = ? AND tenant_id = ?
            """,
            (request_number, self.tenant_id),
        ).fetchone()
        if not row:
            return 1
        return int(row["next_order"] if isinstance(row, dict) else row[0])

    def create(
        self,
        db,
        *,
        request_number: str,
        item_order: int,
        item_name: str,
        quantity: float,
        unit: str | None,
        created_by: str,
        status: str = "draft",
        description: str | None = None,
        specs: str | None = None,
        brand: str | None = None,
        is_urgent: bool = False,
        required_by: str | None = None,
        site_id: str | None = None,
        direct_action: str | None = None,
        is_split_approved: int = 0,
        split_from_id: int | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO request_items (
                request_number, item_order, item_name, quantity, unit, description, specs, brand,
                is_urgent, required_by, site_id, status, direct_action, is_split_approved,
                split_from_id, created_by, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                request_number,
                item_order,
                item_name,
                quantity,
                unit,
                description,
                specs,
                brand,
                1 if is_urgent else 0,
                required_by,
                site_id,
                status,
                direct_action,
                is_split_approved,
                split_from_id,
                created_by,
                self.tenant_id,
            ),
        )
        return self.returned_id(cursor)

    def update_guarded(
        self,
        db,
        item_id: int,
        *,
        expected_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
        expected_ledger: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set on status (and optionally the ledger columns).

        Returns False when no row matched, meaning another writer got there first.
        """
        fields = dict(fields or {})
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"columns not updatable: {sorted(unknown)}")

        assignments = ["status = ?"] + [f"{column} = ?" for column in fields]
        params: list[Any] = [to_status, *fields.values()]
        guards = ["id = ?", "tenant_id = ?", "status = ?"]
        params.extend([item_id, self.tenant_id, expected_status])
        if expected_ledger is not None:
            direct_action = expected_ledger.get("direct_action")
            if direct_action is None:
                guards.append("direct_action IS NULL")
            else:
                guards.append("direct_action = ?")
                params.append(direct_action)
            guards.append("is_split_approved = ?")
            params.append(int(expected_ledger.get("is_split_approved") or 0))

        cursor = db.execute(
            f"""
            UPDATE request_items
            SET {", ".join(assignments)}, updated_at = CURRENT_TIMESTAMP
            WHERE {" AND ".join(guards)}
            """,
            tuple(params),
        )
        return cursor.rowcount == 1

    def update_group_status(self, db, request_number: str, *, expected_status: str, to_status: str) -> list[int]:
        rows = db.execute(
            """
            UPDATE request_items
            SET status = ?, updated_at = CURRENT_TIMESTAMP
            WHERE request_number = ? AND status = ? AND tenant_id = ?
            RETURNING id
            """,
            (to_status, request_number, expected_status, self.tenant_id),
        ).fetchall()
        return sorted(int(row["id"] if isinstance(row, dict) else row[0]) for row in rows)

    def delete_guarded(self, db, item_id: int, *, expected_status: str) -> bool:
        cursor = db.execute(
            "DELETE FROM request_items WHERE id = ? AND status = ? AND tenant_id = ?",
            (item_id, expected_status, self.tenant_id),
        )
        return cursor.rowcount == 1

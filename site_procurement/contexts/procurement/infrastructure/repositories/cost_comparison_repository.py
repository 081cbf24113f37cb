from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from site_procurement.infrastructure.repositories.base import BaseRepository


_UPDATABLE_COLUMNS = frozenset(
    {
        "vendor_quotes",
        "is_direct_delivery",
        "selected_vendor_id",
        "manager_notes",
        "reviewed_by",
        "approved_at",
        "rejected_at",
    }
)


def _quotes_loads(value: str | None) -> List[Dict[str, Any]]:
    raw = str(value or "").strip()
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [quote for quote in parsed if isinstance(quote, dict)] if isinstance(parsed, list) else []


def _quotes_dumps(quotes: Iterable[Dict[str, Any]]) -> str:
    return json.dumps(list(quotes), separators=(",", ":"), ensure_ascii=True)


class CostComparisonRepository(BaseRepository):
    def _hydrate(self, row) -> dict | None:
        result = self.row_to_dict(row)
        if result is not None:
            result["vendor_quotes"] = _quotes_loads(result.get("vendor_quotes"))
        return result

    def get_for_item(self, db, request_item_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM cost_comparisons
            WHERE request_item_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (request_item_id, self.tenant_id),
        ).fetchone()
        return self._hydrate(row)

    def create(
        self,
        db,
        *,
        request_item_id: int,
        vendor_quotes: Iterable[Dict[str, Any]],
        is_direct_delivery: bool,
        created_by: str,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO cost_comparisons (request_item_id, vendor_quotes, is_direct_delivery, status, created_by, tenant_id)
            VALUES (?, ?, ?, 'draft', ?, ?)
            RETURNING id
            """,
            (request_item_id, _quotes_dumps(vendor_quotes), 1 if is_direct_delivery else 0, created_by, self.tenant_id),
        )
        return self.returned_id(cursor)

    def update_guarded(
        self,
        db,
        comparison_id: int,
        *,
        expected_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set on the comparison status. Returns False on a guard miss."""
        fields = dict(fields or {})
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"columns not updatable: {sorted(unknown)}")
        if "vendor_quotes" in fields:
            fields["vendor_quotes"] = _quotes_dumps(fields["vendor_quotes"])
        if "is_direct_delivery" in fields:
            fields["is_direct_delivery"] = 1 if fields["is_direct_delivery"] else 0

        assignments = ["status = ?"] + [f"{column} = ?" for column in fields]
        cursor = db.execute(
            f"""
            UPDATE cost_comparisons
            SET {", ".join(assignments)}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = ? AND tenant_id = ?
            """,
            (to_status, *fields.values(), comparison_id, expected_status, self.tenant_id),
        )
        return cursor.rowcount == 1

    def approved_vendors_for_items(self, db, request_item_ids: Iterable[int]) -> dict[int, int]:
        ids = [int(item_id) for item_id in request_item_ids]
        if not ids:
            return {}
        rows = db.execute(
            f"""
            SELECT request_item_id, selected_vendor_id
            FROM cost_comparisons
            WHERE request_item_id IN ({self.placeholders(len(ids))})
              AND status = 'cc_approved' AND selected_vendor_id IS NOT NULL AND tenant_id = ?
            """,
            (*ids, self.tenant_id),
        ).fetchall()
        return {int(row["request_item_id"]): int(row["selected_vendor_id"]) for row in self.rows_to_dicts(rows)}

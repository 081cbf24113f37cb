from __future__ import annotations

from site_procurement.infrastructure.repositories.base import BaseRepository


REQUEST_NUMBER_COUNTER = "request_number"
PO_NUMBER_COUNTER = "po_number"


class DocumentCounterRepository(BaseRepository):
    def next_value(self, db, name: str) -> int:
        row = db.execute(
            """
            INSERT INTO document_counters (tenant_id, name, value)
            VALUES (?, ?, 1)
            ON CONFLICT (tenant_id, name) DO UPDATE SET value = document_counters.value + 1
            RETURNING value
            """,
            (self.tenant_id, name),
        ).fetchall()[0]
        return int(row["value"] if isinstance(row, dict) else row[0])

    def next_request_number(self, db) -> str:
        return f"{self.next_value(db, REQUEST_NUMBER_COUNTER):03d}"

    def next_po_number(self, db) -> str:
        return f"PO-{self.next_value(db, PO_NUMBER_COUNTER)}"

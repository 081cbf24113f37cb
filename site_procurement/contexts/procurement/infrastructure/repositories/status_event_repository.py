from __future__ import annotations

from site_procurement.infrastructure.repositories.base import BaseRepository


class StatusEventRepository(BaseRepository):
    def add_event(
        self,
        db,
        *,
        entity: str,
        entity_id: int | str,
        from_status: str | None,
        to_status: str | None,
        reason: str | None,
        actor_id: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO status_events (entity, entity_id, from_status, to_status, reason, actor_id, tenant_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (entity, str(entity_id), from_status, to_status, reason, actor_id, self.tenant_id),
        )
        return self.returned_id(cursor)

    def list_for_entity(self, db, *, entity: str, entity_id: int | str, limit: int = 120) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, entity, entity_id, from_status, to_status, reason, actor_id, occurred_at, tenant_id
            FROM status_events
            WHERE entity = ? AND entity_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (entity, str(entity_id), self.tenant_id, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)

from __future__ import annotations

from site_procurement.infrastructure.repositories.base import BaseRepository


class ActorRepository(BaseRepository):
    def get_by_id(self, db, actor_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, display_name, role, active, tenant_id
            FROM actors
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (actor_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def upsert(self, db, *, actor_id: str, role: str, display_name: str | None = None, active: bool = True) -> None:
        db.execute(
            """
            INSERT INTO actors (id, display_name, role, active, tenant_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id, tenant_id) DO UPDATE SET
                display_name = excluded.display_name,
                role = excluded.role,
                active = excluded.active
            """,
            (actor_id, display_name, role, 1 if active else 0, self.tenant_id),
        )

from __future__ import annotations

from site_procurement.contexts.procurement.infrastructure.repositories.actor_repository import ActorRepository
from site_procurement.domain.contracts import Actor
from site_procurement.errors import Unauthorized
from site_procurement.policies import normalize_role


class ActorDirectory:
    """Resolves a caller identity to its role within one tenant."""

    def __init__(self, db, *, tenant_id: str) -> None:
        self._db = db
        self._repository = ActorRepository(tenant_id=tenant_id)

    def resolve(self, actor_id: str | None) -> Actor:
        normalized = str(actor_id or "").strip()
        if not normalized:
            raise Unauthorized(code="actor_required", message_key="actor_required")
        row = self._repository.get_by_id(self._db, normalized)
        if not row or not int(row.get("active") or 0):
            raise Unauthorized(code="actor_not_found", message_key="actor_not_found", payload={"actor_id": normalized})
        role = normalize_role(row.get("role"))
        if not role:
            raise Unauthorized(payload={"actor_id": normalized, "role": row.get("role")})
        return Actor(id=normalized, role=role, display_name=row.get("display_name"))

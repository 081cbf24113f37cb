from __future__ import annotations

from typing import Iterable, Set

from site_procurement.errors import Unauthorized


VALID_ROLES: Set[str] = {"site_engineer", "manager", "purchase_officer"}


def normalize_role(role: str | None, default: str = "") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role, default="")
        if normalized:
            allowed.add(normalized)
    return allowed


def has_any_role(role: str | None, allowed_roles: Iterable[str]) -> bool:
    normalized_role = normalize_role(role)
    allowed = normalize_allowed_roles(allowed_roles)
    return bool(normalized_role) and (not allowed or normalized_role in allowed)


def require_roles(*allowed_roles: str, role: str | None, action: str | None = None) -> str:
    normalized_role = normalize_role(role)
    if has_any_role(normalized_role, allowed_roles):
        return normalized_role
    raise Unauthorized(
        payload={
            "role": normalized_role or None,
            "action": action,
            "allowed_roles": sorted(normalize_allowed_roles(allowed_roles)),
        },
    )

from __future__ import annotations

from site_procurement.contexts.procurement.infrastructure.repositories.actor_repository import ActorRepository
from site_procurement.contexts.procurement.infrastructure.repositories.inventory_repository import InventoryRepository
from site_procurement.contexts.procurement.infrastructure.repositories.vendor_repository import VendorRepository
from site_procurement.domain.contracts import Actor, DraftItemInput, RequestGroupInput


TENANT_ID = "tenant-1"

ENGINEER = Actor(id="eng-1", role="site_engineer", display_name="Site Engineer")
OTHER_ENGINEER = Actor(id="eng-2", role="site_engineer", display_name="Other Engineer")
MANAGER = Actor(id="mgr-1", role="manager", display_name="Manager")
OFFICER = Actor(id="po-1", role="purchase_officer", display_name="Purchase Officer")

ALL_ACTORS = (ENGINEER, OTHER_ENGINEER, MANAGER, OFFICER)


def seed_actors(db, tenant_id: str = TENANT_ID) -> None:
    actors = ActorRepository(tenant_id=tenant_id)
    for actor in ALL_ACTORS:
        actors.upsert(db, actor_id=actor.id, role=actor.role, display_name=actor.display_name)


def seed_vendor(db, name: str = "Acme Supplies", tenant_id: str = TENANT_ID, active: bool = True) -> int:
    return VendorRepository(tenant_id=tenant_id).create(db, name=name, active=active)


def set_stock(db, item_name: str, quantity: float, tenant_id: str = TENANT_ID) -> None:
    InventoryRepository(tenant_id=tenant_id).set_stock(db, item_name=item_name, central_stock=quantity, unit="bag")


def group_input(*items, submit: bool = True) -> RequestGroupInput:
    drafts = [
        DraftItemInput(item_name=name, quantity=float(quantity), unit="bag")
        for name, quantity in (items or (("Cement", 10),))
    ]
    return RequestGroupInput(items=drafts, submit=submit)

import os
import sys

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from site_procurement import create_app
from site_procurement.contexts.procurement.infrastructure.repositories.actor_repository import ActorRepository
from site_procurement.contexts.procurement.infrastructure.repositories.inventory_repository import InventoryRepository
from site_procurement.contexts.procurement.infrastructure.repositories.vendor_repository import VendorRepository
from site_procurement.db import get_db, init_db


DEMO_ACTORS = (
    ("eng-demo", "site_engineer", "Site Engineer"),
    ("mgr-demo", "manager", "Project Manager"),
    ("po-demo", "purchase_officer", "Purchase Officer"),
)

DEMO_STOCK = (
    ("Cement", 40.0, "bag"),
    ("Rebar 12mm", 120.0, "bar"),
)


def seed_demo(db, tenant_id: str) -> None:
    actors = ActorRepository(tenant_id=tenant_id)
    inventory = InventoryRepository(tenant_id=tenant_id)
    with db.transaction():
        for actor_id, role, display_name in DEMO_ACTORS:
            actors.upsert(db, actor_id=actor_id, role=role, display_name=display_name)
        for item_name, quantity, unit in DEMO_STOCK:
            inventory.set_stock(db, item_name=item_name, central_stock=quantity, unit=unit)
        VendorRepository(tenant_id=tenant_id).create(db, name="Demo Building Supplies")


if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        init_db()
        if os.environ.get("SEED_DEMO", "0").strip().lower() in {"1", "true", "yes"}:
            seed_demo(get_db(), app.config.get("DEFAULT_TENANT_ID", "tenant-demo"))

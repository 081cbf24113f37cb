from __future__ import annotations

from typing import Any, Dict, Tuple

from flask import request

from site_procurement.contexts.procurement.application.actor_directory import ActorDirectory
from site_procurement.contexts.procurement.application.cost_comparison_service import CostComparisonService
from site_procurement.contexts.procurement.application.fulfillment_service import RequestFulfillmentService
from site_procurement.contexts.procurement.application.purchase_order_service import PurchaseOrderService
from site_procurement.db import get_db
from site_procurement.domain.contracts import Actor
from site_procurement.errors import ValidationError
from site_procurement.tenant import scoped_tenant_id


PURCHASE_ORDER_SERVICE = PurchaseOrderService()
COST_COMPARISON_SERVICE = CostComparisonService()
FULFILLMENT_SERVICE = RequestFulfillmentService(
    purchase_orders=PURCHASE_ORDER_SERVICE,
    cost_comparisons=COST_COMPARISON_SERVICE,
)


def request_scope() -> Tuple[Any, str, Actor]:
    db = get_db()
    tenant_id = scoped_tenant_id()
    actor = ActorDirectory(db, tenant_id=tenant_id).resolve(request.headers.get("X-Actor-Id"))
    return db, tenant_id, actor


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(payload={"field": "body"})
    return payload

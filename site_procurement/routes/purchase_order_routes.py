from __future__ import annotations

from flask import Blueprint, jsonify

from site_procurement.domain.contracts import PurchaseOrderLineInput
from site_procurement.errors import ValidationError
from site_procurement.routes.common import PURCHASE_ORDER_SERVICE, json_body, request_scope
from site_procurement.ui_strings import success_message


purchase_order_bp = Blueprint("purchase_orders", __name__)


@purchase_order_bp.route("/api/purchase-orders", methods=["POST"])
def create_purchase_order():
    db, tenant_id, actor = request_scope()
    payload = json_body()
    raw_lines = payload.get("lines")
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError(code="lines_required")
    lines = [PurchaseOrderLineInput.from_payload(line if isinstance(line, dict) else {}) for line in raw_lines]
    vendor_id = None
    if payload.get("vendor_id") not in (None, ""):
        try:
            vendor_id = int(payload.get("vendor_id"))
        except (TypeError, ValueError):
            raise ValidationError(code="vendor_not_found", payload={"field": "vendor_id"}) from None

    po_number = PURCHASE_ORDER_SERVICE.create_purchase_order(
        db,
        tenant_id=tenant_id,
        vendor_id=vendor_id,
        lines=lines,
        actor=actor,
    )
    view = PURCHASE_ORDER_SERVICE.get_purchase_order(db, tenant_id=tenant_id, po_number=po_number)
    return jsonify({"message": success_message("purchase_order_created"), **view.to_payload()}), 201


@purchase_order_bp.route("/api/purchase-orders/<string:po_number>", methods=["GET"])
def get_purchase_order(po_number: str):
    db, tenant_id, _actor = request_scope()
    view = PURCHASE_ORDER_SERVICE.get_purchase_order(db, tenant_id=tenant_id, po_number=po_number)
    return jsonify(view.to_payload())


@purchase_order_bp.route("/api/purchase-orders/<string:po_number>/sign", methods=["POST"])
def sign_purchase_order(po_number: str):
    db, tenant_id, actor = request_scope()
    view = PURCHASE_ORDER_SERVICE.sign_purchase_order(db, tenant_id=tenant_id, po_number=po_number, actor=actor)
    return jsonify({"message": success_message("purchase_order_signed"), **view.to_payload()})


@purchase_order_bp.route("/api/purchase-orders/<string:po_number>/reject", methods=["POST"])
def reject_purchase_order(po_number: str):
    db, tenant_id, actor = request_scope()
    view = PURCHASE_ORDER_SERVICE.reject_purchase_order(
        db,
        tenant_id=tenant_id,
        po_number=po_number,
        reason=json_body().get("reason"),
        actor=actor,
    )
    return jsonify({"message": success_message("purchase_order_rejected"), **view.to_payload()})

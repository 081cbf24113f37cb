from __future__ import annotations

from flask import Blueprint, jsonify

from site_procurement.domain.contracts import VendorQuoteInput
from site_procurement.errors import ValidationError
from site_procurement.routes.common import COST_COMPARISON_SERVICE, json_body, request_scope
from site_procurement.ui_strings import success_message


cost_comparison_bp = Blueprint("cost_comparisons", __name__)


def _optional_vendor_id(payload) -> int | None:
    raw = payload.get("selected_vendor_id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(code="vendor_not_in_quotes", payload={"field": "selected_vendor_id"}) from None


@cost_comparison_bp.route("/api/request-items/<int:item_id>/cost-comparison", methods=["GET"])
def get_cost_comparison(item_id: int):
    db, tenant_id, _actor = request_scope()
    view = COST_COMPARISON_SERVICE.get_cost_comparison(db, tenant_id=tenant_id, item_id=item_id)
    return jsonify(view.to_payload())


@cost_comparison_bp.route("/api/request-items/<int:item_id>/cost-comparison", methods=["PUT"])
def save_cost_comparison(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    view = COST_COMPARISON_SERVICE.upsert_cost_comparison(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        quotes=VendorQuoteInput.list_from_payload(payload.get("vendor_quotes")),
        actor=actor,
        is_direct_delivery=bool(payload.get("is_direct_delivery")),
    )
    return jsonify({"message": success_message("cost_comparison_saved"), **view.to_payload()})


@cost_comparison_bp.route("/api/request-items/<int:item_id>/cost-comparison/submit", methods=["POST"])
def submit_cost_comparison(item_id: int):
    db, tenant_id, actor = request_scope()
    view = COST_COMPARISON_SERVICE.submit_cost_comparison(db, tenant_id=tenant_id, item_id=item_id, actor=actor)
    return jsonify({"message": success_message("cost_comparison_submitted"), **view.to_payload()})


@cost_comparison_bp.route("/api/request-items/<int:item_id>/cost-comparison/review", methods=["POST"])
def review_cost_comparison(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    view = COST_COMPARISON_SERVICE.review_cost_comparison(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        decision=str(payload.get("decision") or ""),
        actor=actor,
        selected_vendor_id=_optional_vendor_id(payload),
        notes=payload.get("notes"),
    )
    return jsonify({"message": success_message("cost_comparison_reviewed"), **view.to_payload()})


@cost_comparison_bp.route("/api/request-items/<int:item_id>/cost-comparison/resubmit", methods=["POST"])
def resubmit_cost_comparison(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    quotes = None
    if "vendor_quotes" in payload:
        quotes = VendorQuoteInput.list_from_payload(payload.get("vendor_quotes"))
    is_direct_delivery = payload.get("is_direct_delivery")
    view = COST_COMPARISON_SERVICE.resubmit_cost_comparison(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        actor=actor,
        quotes=quotes,
        is_direct_delivery=None if is_direct_delivery is None else bool(is_direct_delivery),
    )
    return jsonify({"message": success_message("cost_comparison_submitted"), **view.to_payload()})

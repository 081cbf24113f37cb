from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from site_procurement.contexts.procurement.application.batch_operator import BatchOperator
from site_procurement.db import connection_factory
from site_procurement.domain.contracts import RequestGroupInput
from site_procurement.errors import PartialBatchFailure, ValidationError
from site_procurement.routes.common import FULFILLMENT_SERVICE, json_body, request_scope
from site_procurement.ui_strings import success_message, template_bundle


fulfillment_bp = Blueprint("fulfillment", __name__)


@fulfillment_bp.route("/api/requests", methods=["POST"])
def submit_request_group():
    db, tenant_id, actor = request_scope()
    group_input = RequestGroupInput.from_payload(json_body())
    request_number = FULFILLMENT_SERVICE.submit_draft_group(
        db,
        tenant_id=tenant_id,
        actor=actor,
        group_input=group_input,
    )
    view = FULFILLMENT_SERVICE.get_group_view(db, tenant_id=tenant_id, request_number=request_number, role=actor.role)
    return jsonify({"message": success_message("request_submitted"), **view.to_payload()}), 201


@fulfillment_bp.route("/api/requests/<string:request_number>", methods=["GET"])
def get_request_group(request_number: str):
    db, tenant_id, actor = request_scope()
    view = FULFILLMENT_SERVICE.get_group_view(db, tenant_id=tenant_id, request_number=request_number, role=actor.role)
    return jsonify(view.to_payload())


@fulfillment_bp.route("/api/request-items/<int:item_id>/transitions", methods=["POST"])
def transition_request_item(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    action = str(payload.get("action") or "").strip()
    if not action:
        raise ValidationError(code="action_invalid")
    intents = payload.get("intents") or []
    if not isinstance(intents, list):
        raise ValidationError(code="intent_invalid")
    status = FULFILLMENT_SERVICE.transition_item(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        action=action,
        actor=actor,
        reason=payload.get("reason"),
        intents=intents,
    )
    return jsonify(
        {
            "message": success_message("item_transitioned"),
            "item_id": item_id,
            "action": action,
            "status": status,
        }
    )


@fulfillment_bp.route("/api/request-items/batch-transitions", methods=["POST"])
def batch_transition_request_items():
    _db, tenant_id, actor = request_scope()
    payload = json_body()
    item_ids = payload.get("item_ids") or []
    if not isinstance(item_ids, list):
        raise ValidationError(code="no_items_selected")
    operator = BatchOperator(
        FULFILLMENT_SERVICE,
        connection_factory(current_app),
        max_workers=int(current_app.config.get("BATCH_MAX_WORKERS", 4)),
    )
    outcome = operator.run(
        tenant_id=tenant_id,
        item_ids=item_ids,
        action=str(payload.get("action") or ""),
        actor=actor,
        reason=payload.get("reason"),
        reasons=payload.get("reasons") if isinstance(payload.get("reasons"), dict) else None,
        intents=payload.get("intents") if isinstance(payload.get("intents"), dict) else None,
    )
    if outcome.has_failures:
        raise PartialBatchFailure(payload=outcome.to_payload())
    return jsonify({"message": success_message("batch_completed"), **outcome.to_payload()})


@fulfillment_bp.route("/api/request-items/<int:item_id>/permissions", methods=["POST"])
def grant_request_item_permission(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    outcome = FULFILLMENT_SERVICE.grant_permission(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        capability=str(payload.get("capability") or ""),
        actor=actor,
    )
    return jsonify({"message": success_message(outcome.code), **outcome.to_payload()})


@fulfillment_bp.route("/api/request-items/<int:item_id>/split", methods=["POST"])
def split_request_item(item_id: int):
    db, tenant_id, actor = request_scope()
    payload = json_body()
    outcome = FULFILLMENT_SERVICE.split_item(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        quantity=payload.get("quantity"),
        actor=actor,
    )
    return jsonify({"message": success_message("item_split"), **outcome.to_payload()}), 201


@fulfillment_bp.route("/api/request-items/<int:item_id>", methods=["PATCH"])
def update_request_item(item_id: int):
    db, tenant_id, actor = request_scope()
    item = FULFILLMENT_SERVICE.update_item_details(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        changes=json_body(),
        actor=actor,
    )
    return jsonify({"message": success_message("item_transitioned"), "item": item})


@fulfillment_bp.route("/api/request-items/<int:item_id>/delivery", methods=["POST"])
def mark_request_item_delivered(item_id: int):
    db, tenant_id, actor = request_scope()
    status = FULFILLMENT_SERVICE.mark_delivered(db, tenant_id=tenant_id, item_id=item_id, actor=actor)
    return jsonify({"message": success_message("item_delivered"), "item_id": item_id, "status": status})


@fulfillment_bp.route("/api/flow-policy", methods=["GET"])
def flow_policy_bundle():
    return jsonify(template_bundle())

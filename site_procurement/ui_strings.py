from __future__ import annotations

from typing import Dict, List

from site_procurement.procurement.flow_policy import frontend_bundle as flow_frontend_bundle


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Site Procurement",
    "request_item": "Request item",
    "request_group": "Request",
    "cost_comparison": "Cost comparison",
    "purchase_order": "Purchase order",
    "vendor": "Vendor",
    "delivery": "Delivery",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "request_item": [
        {"key": "draft", "label": "Draft", "description": "Site engineer is still editing the request."},
        {"key": "pending", "label": "Pending", "description": "Submitted and waiting for a manager decision."},
        {"key": "approved", "label": "Approved", "description": "Approved without a direct route."},
        {"key": "rejected", "label": "Rejected", "description": "Rejected by a manager."},
        {
            "key": "recheck",
            "label": "Recheck",
            "description": "Manager must grant PO, delivery or split permissions before routing.",
        },
        {"key": "ready_for_cc", "label": "Ready for CC", "description": "Waiting for a cost comparison."},
        {"key": "cc_pending", "label": "CC pending", "description": "Cost comparison awaiting review."},
        {"key": "cc_approved", "label": "CC approved", "description": "Cost comparison approved."},
        {"key": "cc_rejected", "label": "CC rejected", "description": "Cost comparison rejected."},
        {"key": "ready_for_po", "label": "Ready for PO", "description": "Cleared for purchase order creation."},
        {"key": "pending_po", "label": "Ordered", "description": "Ordered from the vendor."},
        {"key": "sign_pending", "label": "Sign pending", "description": "Purchase order awaiting sign-off."},
        {"key": "sign_rejected", "label": "Sign rejected", "description": "Purchase order sign-off rejected."},
        {"key": "rejected_po", "label": "PO rejected", "description": "Purchase order rejected; needs re-planning."},
        {"key": "direct_po", "label": "Direct PO", "description": "Routed straight to purchase order."},
        {"key": "delivery_stage", "label": "Delivery", "description": "Delivered from inventory stock."},
        {"key": "ready_for_delivery", "label": "Ready for delivery", "description": "Goods ready to dispatch."},
        {"key": "out_for_delivery", "label": "Out for delivery", "description": "Goods on the way to site."},
        {"key": "delivered", "label": "Delivered", "description": "Receipt confirmed by the site engineer."},
    ],
    "purchase_order": [
        {"key": "sign_pending", "label": "Sign pending", "description": "Awaiting manager sign-off."},
        {"key": "sign_rejected", "label": "Sign rejected", "description": "Sign-off rejected."},
        {"key": "approved", "label": "Signed", "description": "Signed and active."},
    ],
    "cost_comparison": [
        {"key": "draft", "label": "Draft", "description": "Purchase officer is collecting vendor quotes."},
        {"key": "cc_pending", "label": "Under review", "description": "Quotes submitted for manager review."},
        {"key": "cc_approved", "label": "Approved", "description": "Manager selected a vendor."},
        {"key": "cc_rejected", "label": "Rejected", "description": "Returned with manager notes."},
    ],
}


GROUP_STATUS_LABELS: Dict[str, str] = {
    "partially_processed": "Partially processed",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "request_submitted": "Request submitted.",
        "item_transitioned": "Item updated.",
        "permission_granted": "Permission granted.",
        "permission_already_granted": "Permission was already granted.",
        "purchase_order_created": "Purchase order created.",
        "purchase_order_signed": "Purchase order signed.",
        "cost_comparison_saved": "Cost comparison saved.",
        "cost_comparison_submitted": "Cost comparison submitted for review.",
        "cost_comparison_reviewed": "Cost comparison reviewed.",
        "purchase_order_rejected": "Purchase order rejected.",
        "item_delivered": "Delivery confirmed.",
        "item_split": "Item split between inventory and purchase.",
        "batch_completed": "All selected items were updated.",
    },
    "error": {
        "action_invalid": "This action is not valid for the operation.",
        "actor_not_found": "Unknown or inactive user.",
        "actor_required": "Identify the acting user.",
        "capability_invalid": "Unknown permission.",
        "cost_comparison_exists": "A cost comparison is already under way for this item.",
        "cost_comparison_not_found": "Cost comparison not found.",
        "creator_only": "Only the user who raised the request can do this.",
        "insufficient_stock": "Not enough stock in inventory for this quantity.",
        "intent_invalid": "Unknown approval intent.",
        "invalid_transition": "This action is not allowed for the current status.",
        "item_not_found": "Request item not found.",
        "items_required": "Add at least one valid item.",
        "lines_required": "Add at least one purchase order line.",
        "no_changes": "No changes were provided.",
        "no_items_selected": "Select at least one item.",
        "not_found": "Record not found.",
        "partial_batch_failure": "Some selected items could not be updated.",
        "permission_denied": "You do not have permission to perform this action.",
        "permission_not_granted": "This route needs a permission that was not granted.",
        "purchase_order_not_found": "Purchase order not found.",
        "purchase_order_exists": "The item already belongs to an open purchase order.",
        "quantity_invalid": "Invalid quantity.",
        "quotes_required": "Add at least one vendor quote.",
        "reason_required": "A rejection reason is required.",
        "request_not_found": "Request not found.",
        "split_quantity_invalid": "Split quantity must be greater than zero and less than the requested quantity.",
        "status_changed": "The item changed while you were working on it. Reload and try again.",
        "unexpected_error": "The operation could not be completed. Try again shortly.",
        "unit_price_invalid": "Invalid unit price.",
        "validation_error": "The submitted data is invalid.",
        "vendor_not_found": "Vendor not found or inactive.",
        "vendor_not_in_quotes": "The selected vendor has no quote in this cost comparison.",
        "vendor_required": "Choose a vendor, or approve a cost comparison for every line first.",
        "vendor_selection_required": "Select the winning vendor to approve the cost comparison.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def build_status_labels() -> Dict[str, str]:
    labels = {item["key"]: item["label"] for item in STATUS_GROUPS["request_item"]}
    labels.update(GROUP_STATUS_LABELS)
    return labels


STATUS_LABELS = build_status_labels()


def status_label(status: str | None, default: str | None = None) -> str:
    key = str(status or "").strip()
    if key in STATUS_LABELS:
        return STATUS_LABELS[key]
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def template_bundle() -> Dict[str, object]:
    return {
        "ui_terms": FRIENDLY_TERMS,
        "ui_status_groups": STATUS_GROUPS,
        "ui_status_labels": STATUS_LABELS,
        "ui_messages": MESSAGES,
        "ui_frontend_bundle": flow_frontend_bundle(),
    }

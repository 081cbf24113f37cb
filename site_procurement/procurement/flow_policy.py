from __future__ import annotations

from typing import Dict, FrozenSet, List


ITEM_STATUSES: List[str] = [
    "draft",
    "pending",
    "approved",
    "rejected",
    "recheck",
    "ready_for_cc",
    "cc_pending",
    "cc_approved",
    "cc_rejected",
    "ready_for_po",
    "pending_po",
    "sign_pending",
    "sign_rejected",
    "rejected_po",
    "direct_po",
    "delivery_stage",
    "ready_for_delivery",
    "out_for_delivery",
    "delivered",
]

PARTIALLY_PROCESSED = "partially_processed"

REJECTED_STATUSES: FrozenSet[str] = frozenset({"rejected", "sign_rejected", "cc_rejected", "rejected_po"})
UNDECIDED_STATUSES: FrozenSet[str] = frozenset({"pending", "draft"})
PURCHASE_ORDER_SOURCE_STATUSES: FrozenSet[str] = frozenset({"ready_for_po", "pending_po", "direct_po"})
PURCHASE_ORDER_MEMBER_STATUSES: FrozenSet[str] = frozenset({"sign_pending", "sign_rejected"})
DELIVERABLE_STATUSES: FrozenSet[str] = frozenset({"delivery_stage", "ready_for_delivery", "out_for_delivery"})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"delivered", "rejected", "rejected_po"})

PURCHASE_ORDER_STATUSES: List[str] = ["sign_pending", "sign_rejected", "approved"]

COST_COMPARISON_STATUSES: List[str] = ["draft", "cc_pending", "cc_approved", "cc_rejected"]
# Only the cost comparison record stops here; its item moves straight on to ready_for_po.
COST_COMPARISON_ONLY_STATUSES: FrozenSet[str] = frozenset({"cc_approved"})


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": "request", "label": "Request"},
    {"key": "approval", "label": "Approval"},
    {"key": "cost_comparison", "label": "Cost comparison"},
    {"key": "purchase_order", "label": "Purchase order"},
    {"key": "delivery", "label": "Delivery"},
]


ACTION_LABELS: Dict[str, str] = {
    "send": "Send request",
    "delete": "Delete draft",
    "edit_item": "Edit draft item",
    "approve": "Approve",
    "reject": "Reject",
    "grant_permission": "Grant permission",
    "route_to_cc": "Send to cost comparison",
    "route_to_po": "Send to purchase order",
    "route_to_delivery": "Deliver from inventory",
    "split": "Split between inventory and purchase",
    "update_details": "Update item details",
    "quote_cc": "Record vendor quotes",
    "open_cc": "Open cost comparison",
    "approve_cc": "Approve cost comparison",
    "reject_cc": "Reject cost comparison",
    "resubmit_cc": "Resubmit cost comparison",
    "create_po": "Create purchase order",
    "mark_pending_po": "Await vendor order",
    "mark_ready_for_delivery": "Ready for delivery",
    "dispatch": "Dispatch",
    "mark_delivered": "Confirm delivery",
    "view_history": "View history",
}


ACTION_ROLES: Dict[str, FrozenSet[str]] = {
    "send": frozenset({"site_engineer"}),
    "delete": frozenset({"site_engineer"}),
    "edit_item": frozenset({"site_engineer"}),
    "approve": frozenset({"manager"}),
    "reject": frozenset({"manager"}),
    "grant_permission": frozenset({"manager"}),
    "route_to_cc": frozenset({"purchase_officer"}),
    "route_to_po": frozenset({"purchase_officer"}),
    "route_to_delivery": frozenset({"purchase_officer"}),
    "split": frozenset({"purchase_officer"}),
    "update_details": frozenset({"purchase_officer"}),
    "quote_cc": frozenset({"purchase_officer"}),
    "open_cc": frozenset({"manager", "purchase_officer"}),
    "approve_cc": frozenset({"manager"}),
    "reject_cc": frozenset({"manager"}),
    "resubmit_cc": frozenset({"manager", "purchase_officer"}),
    "create_po": frozenset({"purchase_officer"}),
    "mark_pending_po": frozenset({"purchase_officer"}),
    "mark_ready_for_delivery": frozenset({"purchase_officer"}),
    "dispatch": frozenset({"purchase_officer"}),
    "mark_delivered": frozenset({"site_engineer"}),
    "view_history": frozenset({"site_engineer", "manager", "purchase_officer"}),
}

CREATOR_ONLY_ACTIONS: FrozenSet[str] = frozenset({"send", "delete", "edit_item", "mark_delivered"})


FLOW_POLICY: Dict[str, Dict[str, object]] = {
    "draft": {
        "allowed_actions": ["send", "edit_item", "delete"],
        "primary_action": "send",
    },
    "pending": {
        "allowed_actions": ["approve", "reject"],
        "primary_action": "approve",
    },
    "approved": {
        "allowed_actions": ["route_to_cc", "route_to_po", "update_details"],
        "primary_action": "route_to_cc",
    },
    "rejected": {
        "allowed_actions": ["view_history"],
        "primary_action": "view_history",
    },
    "recheck": {
        "allowed_actions": [
            "grant_permission",
            "route_to_cc",
            "route_to_po",
            "route_to_delivery",
            "split",
            "update_details",
            "reject",
        ],
        "primary_action": "grant_permission",
    },
    "ready_for_cc": {
        "allowed_actions": ["quote_cc", "open_cc", "route_to_po", "route_to_delivery", "update_details"],
        "primary_action": "quote_cc",
    },
    "cc_pending": {
        "allowed_actions": ["approve_cc", "reject_cc", "quote_cc", "update_details"],
        "primary_action": "approve_cc",
    },
    "cc_rejected": {
        "allowed_actions": ["resubmit_cc"],
        "primary_action": "resubmit_cc",
    },
    "ready_for_po": {
        "allowed_actions": ["create_po", "mark_pending_po", "route_to_delivery"],
        "primary_action": "create_po",
    },
    "pending_po": {
        "allowed_actions": ["create_po", "mark_ready_for_delivery"],
        "primary_action": "mark_ready_for_delivery",
    },
    "direct_po": {
        "allowed_actions": ["create_po"],
        "primary_action": "create_po",
    },
    "sign_pending": {
        "allowed_actions": ["approve", "reject"],
        "primary_action": "approve",
    },
    "sign_rejected": {
        "allowed_actions": ["reject", "route_to_po"],
        "primary_action": "route_to_po",
    },
    "rejected_po": {
        "allowed_actions": ["route_to_po", "view_history"],
        "primary_action": "route_to_po",
    },
    "delivery_stage": {
        "allowed_actions": ["mark_delivered"],
        "primary_action": "mark_delivered",
    },
    "ready_for_delivery": {
        "allowed_actions": ["dispatch", "mark_delivered"],
        "primary_action": "dispatch",
    },
    "out_for_delivery": {
        "allowed_actions": ["mark_delivered"],
        "primary_action": "mark_delivered",
    },
    "delivered": {
        "allowed_actions": ["view_history"],
        "primary_action": "view_history",
    },
}


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "primary_action": None}


def status_policy(status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return FLOW_POLICY.get(str(status), _fallback_policy())


def allowed_actions(status: str | None) -> List[str]:
    actions = status_policy(status).get("allowed_actions") or []
    if not isinstance(actions, list):
        return []
    return [str(action) for action in actions]


def primary_action(status: str | None) -> str | None:
    action = status_policy(status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_allowed(status: str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(status))


def roles_for_action(action: str) -> FrozenSet[str]:
    return ACTION_ROLES.get(str(action or "").strip(), frozenset())


def actions_for_role(status: str | None, role: str | None) -> List[str]:
    return [action for action in allowed_actions(status) if role in roles_for_action(action)]


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(status: str | None, role: str | None = None) -> Dict[str, object]:
    actions = allowed_actions(status) if role is None else actions_for_role(status, role)
    primary = primary_action(status)
    if primary not in actions:
        primary = actions[0] if actions else None
    return {
        "stage": stage_for_item_status(status),
        "status": status,
        "allowed_actions": actions,
        "primary_action": primary,
    }


def stage_for_item_status(status: str | None) -> str:
    mapping = {
        "draft": "request",
        "pending": "approval",
        "approved": "approval",
        "rejected": "approval",
        "recheck": "approval",
        "ready_for_cc": "cost_comparison",
        "cc_pending": "cost_comparison",
        "cc_approved": "cost_comparison",
        "cc_rejected": "cost_comparison",
        "ready_for_po": "purchase_order",
        "pending_po": "purchase_order",
        "direct_po": "purchase_order",
        "sign_pending": "purchase_order",
        "sign_rejected": "purchase_order",
        "rejected_po": "purchase_order",
        "delivery_stage": "delivery",
        "ready_for_delivery": "delivery",
        "out_for_delivery": "delivery",
        "delivered": "delivery",
    }
    return mapping.get(str(status or "").strip(), "request")


def _stage_index(stage: str) -> int:
    for idx, item in enumerate(PROCESS_STAGES):
        if item["key"] == stage:
            return idx
    return 0


def build_process_steps(current_stage: str) -> List[Dict[str, object]]:
    current_idx = _stage_index(current_stage)
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append(
            {
                "key": stage["key"],
                "label": stage["label"],
                "state": state,
            }
        )
    return steps


def frontend_bundle() -> Dict[str, object]:
    return {
        "stages": PROCESS_STAGES,
        "policy": FLOW_POLICY,
        "action_labels": ACTION_LABELS,
    }

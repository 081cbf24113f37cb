"""Status transition engine for request items.

``decide`` is pure: it takes the current item snapshot, the requested command
and (when the route needs it) the inventory stock level, and returns a
``TransitionDecision`` describing the next state. It never touches storage.
Illegal moves raise one of the typed errors from ``site_procurement.errors``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable

from site_procurement.errors import (
    InsufficientStock,
    InvalidTransition,
    MissingReason,
    Unauthorized,
    ValidationError,
)
from site_procurement.policies import require_roles
from site_procurement.procurement.direct_action import Capability, LedgerState
from site_procurement.procurement.flow_policy import (
    CREATOR_ONLY_ACTIONS,
    ITEM_STATUSES,
    REJECTED_STATUSES,
    action_allowed,
    allowed_actions,
    primary_action,
    roles_for_action,
)
from site_procurement.procurement.inventory import StockLevel


ROUTE_ITEM = "item"
ROUTE_DELETE = "delete"
ROUTE_GROUP_SEND = "group_send"
ROUTE_PURCHASE_ORDER_SIGN = "purchase_order_sign"
ROUTE_PURCHASE_ORDER_REJECT = "purchase_order_reject"
ROUTE_COST_COMPARISON = "cost_comparison"

INTENT_DIRECT_PO = "direct_po"
INTENT_DIRECT_DELIVERY = "direct_delivery"
INTENT_SPLIT = "split"
APPROVAL_INTENTS: FrozenSet[str] = frozenset({INTENT_DIRECT_PO, INTENT_DIRECT_DELIVERY, INTENT_SPLIT})

TRANSITION_ACTIONS: FrozenSet[str] = frozenset(
    {
        "send",
        "delete",
        "approve",
        "reject",
        "route_to_cc",
        "route_to_po",
        "route_to_delivery",
        "open_cc",
        "approve_cc",
        "reject_cc",
        "resubmit_cc",
        "create_po",
        "mark_pending_po",
        "mark_ready_for_delivery",
        "dispatch",
        "mark_delivered",
    }
)

COST_COMPARISON_ACTIONS: FrozenSet[str] = frozenset({"open_cc", "approve_cc", "reject_cc", "resubmit_cc"})

_SIMPLE_TARGETS: Dict[str, str] = {
    "send": "pending",
    "route_to_cc": "ready_for_cc",
    "open_cc": "cc_pending",
    "approve_cc": "ready_for_po",
    "reject_cc": "cc_rejected",
    "resubmit_cc": "cc_pending",
    "create_po": "sign_pending",
    "mark_pending_po": "pending_po",
    "mark_ready_for_delivery": "ready_for_delivery",
    "dispatch": "out_for_delivery",
    "mark_delivered": "delivered",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ItemSnapshot:
    id: int
    status: str
    quantity: float
    created_by: str
    item_name: str = ""
    unit: str | None = None
    ledger: LedgerState = field(default_factory=LedgerState)

    @classmethod
    def from_row(cls, row: dict) -> "ItemSnapshot":
        return cls(
            id=int(row["id"]),
            status=str(row["status"]),
            quantity=float(row["quantity"]),
            created_by=str(row.get("created_by") or ""),
            item_name=str(row.get("item_name") or ""),
            unit=row.get("unit"),
            ledger=LedgerState.from_row(row),
        )


@dataclass(frozen=True)
class TransitionCommand:
    action: str
    actor_id: str
    actor_role: str
    reason: str | None = None
    intents: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", str(self.action or "").strip().lower())
        object.__setattr__(self, "reason", str(self.reason or "").strip() or None)
        object.__setattr__(self, "intents", normalize_intents(self.intents))


@dataclass(frozen=True)
class TransitionDecision:
    item_id: int
    action: str
    from_status: str
    to_status: str | None
    fields: Dict[str, Any]
    event_reason: str
    route: str = ROUTE_ITEM


def normalize_intents(intents: Iterable[str] | None) -> FrozenSet[str]:
    normalized = frozenset(str(intent or "").strip().lower() for intent in (intents or ()) if str(intent or "").strip())
    unknown = normalized - APPROVAL_INTENTS
    if unknown:
        raise ValidationError(
            code="intent_invalid",
            payload={"intents": sorted(unknown), "allowed_intents": sorted(APPROVAL_INTENTS)},
        )
    return normalized


def status_after_signing(ledger: LedgerState) -> str:
    if ledger.includes_delivery:
        return "ready_for_delivery"
    return "pending_po"


def requires_stock(command: TransitionCommand) -> bool:
    if command.action == "route_to_delivery":
        return True
    return command.action == "approve" and command.intents == frozenset({INTENT_DIRECT_DELIVERY})


def ensure_action_allowed(status: str, action: str) -> None:
    if status not in ITEM_STATUSES:
        raise InvalidTransition(code="status_unknown", message_key="invalid_transition", payload={"status": status})
    if not action_allowed(status, action):
        raise InvalidTransition(
            payload={
                "status": status,
                "action": action,
                "allowed_actions": allowed_actions(status),
                "primary_action": primary_action(status),
            },
        )


def authorize(item: ItemSnapshot, command: TransitionCommand) -> None:
    require_roles(*roles_for_action(command.action), role=command.actor_role, action=command.action)
    if command.action in CREATOR_ONLY_ACTIONS and command.actor_id != item.created_by:
        raise Unauthorized(code="creator_only", message_key="creator_only", payload={"item_id": item.id})


def require_stock(item: ItemSnapshot, stock: StockLevel | None, quantity: float | None = None) -> None:
    requested = float(item.quantity if quantity is None else quantity)
    available = float(stock.quantity) if stock is not None else 0.0
    if available < requested:
        raise InsufficientStock(
            payload={
                "item_id": item.id,
                "item_name": item.item_name,
                "requested_quantity": requested,
                "available_quantity": available,
            },
        )


def require_capability(item: ItemSnapshot, capability: Capability) -> None:
    if not item.ledger.has(capability):
        raise InvalidTransition(
            code="permission_not_granted",
            message_key="permission_not_granted",
            payload={
                "item_id": item.id,
                "capability": capability.value,
                "granted": item.ledger.locked_capabilities(),
            },
        )


def decide(
    item: ItemSnapshot,
    command: TransitionCommand,
    *,
    stock: StockLevel | None = None,
    now: str | None = None,
) -> TransitionDecision:
    action = command.action
    if action not in TRANSITION_ACTIONS:
        raise ValidationError(code="action_invalid", payload={"action": action})
    ensure_action_allowed(item.status, action)
    authorize(item, command)
    if command.intents and not (action == "approve" and item.status == "pending"):
        raise ValidationError(code="intent_invalid", payload={"action": action, "status": item.status})

    timestamp = now or utc_now_iso()
    route = ROUTE_ITEM
    fields: Dict[str, Any] = {}

    if action == "delete":
        return TransitionDecision(item.id, action, item.status, None, {}, "draft_deleted", route=ROUTE_DELETE)

    if action == "approve":
        if item.status == "sign_pending":
            to_status = status_after_signing(item.ledger)
            route = ROUTE_PURCHASE_ORDER_SIGN
        else:
            to_status, ledger = _approval_target(item, command.intents, stock)
            fields.update({"approved_by": command.actor_id, "approved_at": timestamp})
            if ledger is not None:
                fields.update(ledger.to_fields())
    elif action == "reject":
        if item.status == "sign_pending":
            to_status = "sign_rejected"
            route = ROUTE_PURCHASE_ORDER_REJECT
        elif item.status == "sign_rejected":
            to_status = "rejected_po"
            route = ROUTE_PURCHASE_ORDER_REJECT
        else:
            to_status = "rejected"
            if item.status == "pending":
                fields.update({"approved_by": command.actor_id, "approved_at": timestamp})
    elif action == "route_to_po":
        if item.status == "recheck":
            require_capability(item, Capability.PO)
        to_status = "ready_for_po"
    elif action == "route_to_delivery":
        if item.status == "recheck":
            require_capability(item, Capability.DELIVERY)
        require_stock(item, stock)
        to_status = "delivery_stage"
    else:
        to_status = _SIMPLE_TARGETS[action]
        if action == "send":
            route = ROUTE_GROUP_SEND
        elif action in COST_COMPARISON_ACTIONS:
            route = ROUTE_COST_COMPARISON
        elif action == "mark_delivered":
            fields["delivery_marked_at"] = timestamp

    fields["rejection_reason"] = _rejection_reason(to_status, command)
    return TransitionDecision(
        item_id=item.id,
        action=action,
        from_status=item.status,
        to_status=to_status,
        fields=fields,
        event_reason=f"item_{action}",
        route=route,
    )


def _rejection_reason(to_status: str, command: TransitionCommand) -> str | None:
    if to_status not in REJECTED_STATUSES:
        return None
    if not command.reason:
        raise MissingReason(payload={"action": command.action, "to_status": to_status})
    return command.reason


def _approval_target(
    item: ItemSnapshot,
    intents: FrozenSet[str],
    stock: StockLevel | None,
) -> tuple[str, LedgerState | None]:
    if not intents:
        return "approved", None
    if len(intents) > 1 or INTENT_SPLIT in intents:
        # Compound choices are settled later, one grant at a time, in recheck.
        return "recheck", None
    if INTENT_DIRECT_PO in intents:
        return "direct_po", LedgerState.encode({Capability.PO})
    require_stock(item, stock)
    return "delivery_stage", LedgerState.encode({Capability.DELIVERY})

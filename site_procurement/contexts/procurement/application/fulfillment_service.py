from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping

from site_procurement.contexts.procurement.application.cost_comparison_service import CostComparisonService
from site_procurement.contexts.procurement.application.purchase_order_service import (
    REQUEST_ITEM_ENTITY,
    PurchaseOrderService,
)
from site_procurement.contexts.procurement.infrastructure.repositories.counter_repository import (
    DocumentCounterRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.purchase_order_repository import (
    PurchaseOrderRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    DETAIL_COLUMNS,
    RequestItemRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.status_event_repository import (
    StatusEventRepository,
)
from site_procurement.core import (
    EventBus,
    PermissionGranted,
    RequestGroupSubmitted,
    RequestItemSplit,
    RequestItemTransitioned,
    get_event_bus,
)
from site_procurement.domain.contracts import (
    Actor,
    DraftItemInput,
    GrantOutcome,
    GroupView,
    RequestGroupInput,
    SplitOutcome,
)
from site_procurement.errors import AppError, InvalidTransition, NotFound, StaleStatus, ValidationError
from site_procurement.observability import observe_item_transition
from site_procurement.policies import require_roles
from site_procurement.procurement.direct_action import Capability
from site_procurement.procurement.flow_policy import flow_meta, roles_for_action
from site_procurement.procurement.group_status import derive_group_status
from site_procurement.procurement.inventory import InventoryOracle, SqlInventoryOracle
from site_procurement.procurement.transitions import (
    ROUTE_COST_COMPARISON,
    ROUTE_DELETE,
    ROUTE_GROUP_SEND,
    ROUTE_PURCHASE_ORDER_REJECT,
    ROUTE_PURCHASE_ORDER_SIGN,
    ItemSnapshot,
    TransitionCommand,
    authorize,
    decide,
    ensure_action_allowed,
    require_capability,
    require_stock,
    requires_stock,
)
from site_procurement.ui_strings import status_label


InventoryFactory = Callable[[Any, str], InventoryOracle]


def _sql_inventory(db, tenant_id: str) -> InventoryOracle:
    return SqlInventoryOracle(db, tenant_id=tenant_id)


class RequestFulfillmentService:
    def __init__(
        self,
        purchase_orders: PurchaseOrderService | None = None,
        event_bus: EventBus | None = None,
        inventory_factory: InventoryFactory | None = None,
        cost_comparisons: CostComparisonService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.purchase_orders = purchase_orders or PurchaseOrderService(event_bus=self.event_bus)
        self.cost_comparisons = cost_comparisons or CostComparisonService(event_bus=self.event_bus)
        self.inventory_factory = inventory_factory or _sql_inventory
        self._logger = logging.getLogger("site_procurement.fulfillment")

    def _publish_on_commit(self, db, event) -> None:
        db.on_commit(lambda: self.event_bus.publish(event))

    @staticmethod
    def _load_item(db, items: RequestItemRepository, item_id: int) -> dict:
        row = items.get_by_id(db, item_id)
        if not row:
            raise NotFound(code="item_not_found", payload={"item_id": item_id})
        return row

    def submit_draft_group(self, db, *, tenant_id: str, actor: Actor, group_input: RequestGroupInput) -> str:
        require_roles(*roles_for_action("send"), role=actor.role, action="send")
        if not group_input.items:
            raise ValidationError(code="items_required")
        status = "pending" if group_input.submit else "draft"
        items = RequestItemRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)

        with db.transaction():
            request_number = DocumentCounterRepository(tenant_id=tenant_id).next_request_number(db)
            item_ids = []
            for order, draft in enumerate(group_input.items, start=1):
                item_id = self._create_item(db, items, request_number, order, draft, status, actor.id)
                events.add_event(
                    db,
                    entity=REQUEST_ITEM_ENTITY,
                    entity_id=item_id,
                    from_status=None,
                    to_status=status,
                    reason="request_submitted" if group_input.submit else "draft_created",
                    actor_id=actor.id,
                )
                item_ids.append(item_id)
            self._publish_on_commit(
                db,
                RequestGroupSubmitted(
                    tenant_id=tenant_id,
                    request_numbers=(request_number,),
                    actor_id=actor.id,
                    item_ids=tuple(item_ids),
                ),
            )

        self._logger.info(
            "request_group_submitted",
            extra={"tenant_id": tenant_id, "request_number": request_number, "items": len(item_ids), "status": status},
        )
        return request_number

    @staticmethod
    def _create_item(
        db,
        items: RequestItemRepository,
        request_number: str,
        order: int,
        draft: DraftItemInput,
        status: str,
        created_by: str,
    ) -> int:
        return items.create(
            db,
            request_number=request_number,
            item_order=order,
            item_name=draft.item_name,
            quantity=draft.quantity,
            unit=draft.unit,
            created_by=created_by,
            status=status,
            description=draft.description,
            specs=draft.specs,
            brand=draft.brand,
            is_urgent=draft.is_urgent,
            required_by=draft.required_by,
            site_id=draft.site_id,
        )

    def transition_item(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        action: str,
        actor: Actor,
        reason: str | None = None,
        intents: Iterable[str] | None = None,
    ) -> str | None:
        command_action = str(action or "").strip().lower()
        try:
            command = TransitionCommand(command_action, actor.id, actor.role, reason=reason, intents=frozenset(intents or ()))
            new_status = self._apply_transition(db, tenant_id=tenant_id, item_id=item_id, command=command)
        except AppError as exc:
            observe_item_transition(command_action, exc.code)
            raise
        except Exception:
            observe_item_transition(command_action, "unexpected_error")
            raise
        observe_item_transition(command_action, "succeeded")
        return new_status

    def _apply_transition(self, db, *, tenant_id: str, item_id: int, command: TransitionCommand) -> str | None:
        items = RequestItemRepository(tenant_id=tenant_id)
        with db.transaction():
            row = self._load_item(db, items, item_id)
            item = ItemSnapshot.from_row(row)
            stock = None
            if requires_stock(command):
                stock = self.inventory_factory(db, tenant_id).stock_for(item.item_name)
            decision = decide(item, command, stock=stock)

            if decision.route in (ROUTE_PURCHASE_ORDER_SIGN, ROUTE_PURCHASE_ORDER_REJECT):
                return self._route_to_purchase_order(db, tenant_id, items, item, decision.route, command)
            if decision.route == ROUTE_COST_COMPARISON:
                return self.cost_comparisons.apply_item_action(db, tenant_id=tenant_id, item_id=item.id, command=command)

            request_number = str(row["request_number"])
            moved_ids = [item.id]
            if decision.route == ROUTE_DELETE:
                if not items.delete_guarded(db, item.id, expected_status=item.status):
                    raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
            elif decision.route == ROUTE_GROUP_SEND:
                moved_ids = items.update_group_status(
                    db, request_number, expected_status="draft", to_status=decision.to_status
                )
                if item.id not in moved_ids:
                    raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
            elif not items.update_guarded(
                db,
                item.id,
                expected_status=item.status,
                to_status=decision.to_status,
                fields=decision.fields,
            ):
                raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})

            events = StatusEventRepository(tenant_id=tenant_id)
            for moved_id in moved_ids:
                events.add_event(
                    db,
                    entity=REQUEST_ITEM_ENTITY,
                    entity_id=moved_id,
                    from_status=item.status,
                    to_status=decision.to_status,
                    reason=decision.fields.get("rejection_reason") or decision.event_reason,
                    actor_id=command.actor_id,
                )
                self._publish_on_commit(
                    db,
                    RequestItemTransitioned(
                        tenant_id=tenant_id,
                        request_numbers=(request_number,),
                        actor_id=command.actor_id,
                        item_id=moved_id,
                        action=command.action,
                        from_status=item.status,
                        to_status=decision.to_status,
                    ),
                )

        self._logger.info(
            "item_transitioned",
            extra={
                "tenant_id": tenant_id,
                "item_id": item.id,
                "action": command.action,
                "from_status": item.status,
                "to_status": decision.to_status,
                "items_moved": len(moved_ids),
            },
        )
        return decision.to_status

    def _route_to_purchase_order(
        self,
        db,
        tenant_id: str,
        items: RequestItemRepository,
        item: ItemSnapshot,
        route: str,
        command: TransitionCommand,
    ) -> str | None:
        po_number = PurchaseOrderRepository(tenant_id=tenant_id).latest_number_for_item(db, item.id, (item.status,))
        if not po_number:
            raise InvalidTransition(code="purchase_order_not_found", message_key="purchase_order_not_found", payload={"item_id": item.id})
        actor = Actor(id=command.actor_id, role=command.actor_role)
        if route == ROUTE_PURCHASE_ORDER_SIGN:
            self.purchase_orders.sign_purchase_order(db, tenant_id=tenant_id, po_number=po_number, actor=actor)
        else:
            self.purchase_orders.reject_purchase_order(
                db, tenant_id=tenant_id, po_number=po_number, reason=command.reason, actor=actor
            )
        return str(self._load_item(db, items, item.id)["status"])

    def grant_permission(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        capability: str | Capability,
        actor: Actor,
    ) -> GrantOutcome:
        try:
            granted = Capability.parse(capability)
        except ValueError:
            raise ValidationError(code="capability_invalid", payload={"capability": str(capability)}) from None

        items = RequestItemRepository(tenant_id=tenant_id)
        with db.transaction():
            row = self._load_item(db, items, item_id)
            item = ItemSnapshot.from_row(row)
            ensure_action_allowed(item.status, "grant_permission")
            authorize(item, TransitionCommand("grant_permission", actor.id, actor.role))

            if item.ledger.has(granted):
                return GrantOutcome(
                    item_id=item.id,
                    capability=granted.value,
                    code="permission_already_granted",
                    direct_action=item.ledger.direct_action,
                    is_split_approved=item.ledger.is_split_approved,
                )

            ledger = item.ledger.grant(granted)
            if not items.update_guarded(
                db,
                item.id,
                expected_status=item.status,
                to_status=item.status,
                fields=ledger.to_fields(),
                expected_ledger=item.ledger.to_fields(),
            ):
                raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity=REQUEST_ITEM_ENTITY,
                entity_id=item.id,
                from_status=item.status,
                to_status=item.status,
                reason=f"permission_granted:{granted.value}",
                actor_id=actor.id,
            )
            self._publish_on_commit(
                db,
                PermissionGranted(
                    tenant_id=tenant_id,
                    request_numbers=(str(row["request_number"]),),
                    actor_id=actor.id,
                    item_id=item.id,
                    capability=granted.value,
                    direct_action=ledger.direct_action,
                    is_split_approved=ledger.is_split_approved,
                ),
            )

        self._logger.info(
            "permission_granted",
            extra={
                "tenant_id": tenant_id,
                "item_id": item.id,
                "capability": granted.value,
                "direct_action": ledger.direct_action,
            },
        )
        return GrantOutcome(
            item_id=item.id,
            capability=granted.value,
            code="permission_granted",
            direct_action=ledger.direct_action,
            is_split_approved=ledger.is_split_approved,
        )

    def mark_delivered(self, db, *, tenant_id: str, item_id: int, actor: Actor) -> str | None:
        return self.transition_item(db, tenant_id=tenant_id, item_id=item_id, action="mark_delivered", actor=actor)

    def split_item(self, db, *, tenant_id: str, item_id: int, quantity: Any, actor: Actor) -> SplitOutcome:
        try:
            split_quantity = float(quantity)
        except (TypeError, ValueError):
            raise ValidationError(code="split_quantity_invalid", payload={"quantity": quantity}) from None

        items = RequestItemRepository(tenant_id=tenant_id)
        with db.transaction():
            row = self._load_item(db, items, item_id)
            item = ItemSnapshot.from_row(row)
            ensure_action_allowed(item.status, "split")
            authorize(item, TransitionCommand("split", actor.id, actor.role))
            require_capability(item, Capability.SPLIT)
            if not 0 < split_quantity < item.quantity:
                raise ValidationError(
                    code="split_quantity_invalid",
                    payload={"item_id": item.id, "quantity": split_quantity, "item_quantity": item.quantity},
                )
            require_stock(item, self.inventory_factory(db, tenant_id).stock_for(item.item_name), quantity=split_quantity)

            remaining = item.quantity - split_quantity
            if not items.update_guarded(
                db,
                item.id,
                expected_status=item.status,
                to_status=item.status,
                fields={"quantity": remaining},
                expected_ledger=item.ledger.to_fields(),
            ):
                raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})

            request_number = str(row["request_number"])
            new_item_id = items.create(
                db,
                request_number=request_number,
                item_order=items.next_item_order(db, request_number),
                item_name=item.item_name,
                quantity=split_quantity,
                unit=row.get("unit"),
                created_by=item.created_by,
                status="delivery_stage",
                description=row.get("description"),
                specs=row.get("specs"),
                brand=row.get("brand"),
                is_urgent=bool(row.get("is_urgent")),
                required_by=row.get("required_by"),
                site_id=row.get("site_id"),
                direct_action=Capability.DELIVERY.value,
                split_from_id=item.id,
            )
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity=REQUEST_ITEM_ENTITY,
                entity_id=new_item_id,
                from_status=None,
                to_status="delivery_stage",
                reason="item_split",
                actor_id=actor.id,
            )
            self._publish_on_commit(
                db,
                RequestItemSplit(
                    tenant_id=tenant_id,
                    request_numbers=(request_number,),
                    actor_id=actor.id,
                    item_id=item.id,
                    new_item_id=new_item_id,
                    quantity=split_quantity,
                ),
            )

        self._logger.info(
            "item_split",
            extra={"tenant_id": tenant_id, "item_id": item.id, "new_item_id": new_item_id, "split_quantity": split_quantity},
        )
        return SplitOutcome(
            item_id=item.id,
            new_item_id=new_item_id,
            remaining_quantity=remaining,
            split_quantity=split_quantity,
            request_number=request_number,
        )

    def update_item_details(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        changes: Mapping[str, Any],
        actor: Actor,
    ) -> dict:
        fields = self._normalize_detail_changes(changes)
        items = RequestItemRepository(tenant_id=tenant_id)
        with db.transaction():
            row = self._load_item(db, items, item_id)
            item = ItemSnapshot.from_row(row)
            action = "edit_item" if item.status == "draft" else "update_details"
            ensure_action_allowed(item.status, action)
            authorize(item, TransitionCommand(action, actor.id, actor.role))
            if not items.update_guarded(
                db,
                item.id,
                expected_status=item.status,
                to_status=item.status,
                fields=fields,
            ):
                raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
            self._publish_on_commit(
                db,
                RequestItemTransitioned(
                    tenant_id=tenant_id,
                    request_numbers=(str(row["request_number"]),),
                    actor_id=actor.id,
                    item_id=item.id,
                    action=action,
                    from_status=item.status,
                    to_status=item.status,
                ),
            )
            updated = self._load_item(db, items, item.id)
        return updated

    @staticmethod
    def _normalize_detail_changes(changes: Mapping[str, Any]) -> dict:
        fields = {key: value for key, value in dict(changes or {}).items() if key in DETAIL_COLUMNS}
        if not fields:
            raise ValidationError(code="no_changes")
        if "quantity" in fields:
            try:
                quantity = float(fields["quantity"])
            except (TypeError, ValueError):
                raise ValidationError(code="quantity_invalid", payload={"quantity": fields["quantity"]}) from None
            if quantity <= 0:
                raise ValidationError(code="quantity_invalid", payload={"quantity": quantity})
            fields["quantity"] = quantity
        if "item_name" in fields:
            name = str(fields["item_name"] or "").strip()
            if not name:
                raise ValidationError(payload={"field": "item_name"})
            fields["item_name"] = name
        if "is_urgent" in fields:
            fields["is_urgent"] = 1 if fields["is_urgent"] else 0
        return fields

    def get_group_view(self, db, *, tenant_id: str, request_number: str, role: str | None = None) -> GroupView:
        rows = RequestItemRepository(tenant_id=tenant_id).list_group(db, request_number)
        if not rows:
            raise NotFound(code="request_not_found", payload={"request_number": request_number})
        view_items = []
        for row in rows:
            item = ItemSnapshot.from_row(row)
            view_items.append(
                {
                    **row,
                    "is_urgent": bool(row.get("is_urgent")),
                    "is_split_approved": item.ledger.is_split_approved,
                    "granted_capabilities": item.ledger.locked_capabilities(),
                    "status_label": status_label(item.status),
                    "flow": flow_meta(item.status, role),
                }
            )
        return GroupView(
            request_number=request_number,
            group_status=derive_group_status(row["status"] for row in rows),
            items=view_items,
        )

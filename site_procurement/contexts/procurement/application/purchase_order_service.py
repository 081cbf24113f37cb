from __future__ import annotations

import logging
from typing import Iterable, Sequence

from site_procurement.contexts.procurement.infrastructure.repositories.cost_comparison_repository import (
    CostComparisonRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.counter_repository import (
    DocumentCounterRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.purchase_order_repository import (
    PurchaseOrderRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    RequestItemRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.status_event_repository import (
    StatusEventRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.vendor_repository import VendorRepository
from site_procurement.core import (
    EventBus,
    PurchaseOrderCreated,
    PurchaseOrderRejected,
    PurchaseOrderSigned,
    get_event_bus,
)
from site_procurement.domain.contracts import Actor, PurchaseOrderLineInput, PurchaseOrderView
from site_procurement.errors import InvalidTransition, MissingReason, NotFound, StaleStatus, ValidationError
from site_procurement.policies import require_roles
from site_procurement.procurement.flow_policy import PURCHASE_ORDER_STATUSES, roles_for_action
from site_procurement.procurement.transitions import (
    ItemSnapshot,
    TransitionCommand,
    decide,
    utc_now_iso,
)


PURCHASE_ORDER_ENTITY = "purchase_order"
REQUEST_ITEM_ENTITY = "request_item"


class PurchaseOrderService:
    """Purchase order aggregate: one ``po_number`` shared by one row per request item.

    Every operation touches all rows of a ``po_number`` together with their
    member items inside one transaction, so a PO is never half signed.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("site_procurement.purchase_orders")

    def _publish_on_commit(self, db, event) -> None:
        db.on_commit(lambda: self.event_bus.publish(event))

    def create_purchase_order(
        self,
        db,
        *,
        tenant_id: str,
        vendor_id: int | None,
        lines: Sequence[PurchaseOrderLineInput],
        actor: Actor,
    ) -> str:
        require_roles(*roles_for_action("create_po"), role=actor.role, action="create_po")
        if not lines:
            raise ValidationError(code="lines_required")
        item_ids = [line.request_item_id for line in lines]
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError(code="validation_error", payload={"field": "lines", "duplicate_item_ids": True})

        items = RequestItemRepository(tenant_id=tenant_id)
        orders = PurchaseOrderRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)

        with db.transaction():
            if vendor_id is None:
                vendor_id = self._approved_vendor(db, tenant_id, item_ids)
            vendor = VendorRepository(tenant_id=tenant_id).get_active(db, vendor_id)
            if not vendor:
                raise NotFound(code="vendor_not_found", payload={"vendor_id": vendor_id})
            po_number = DocumentCounterRepository(tenant_id=tenant_id).next_po_number(db)
            request_numbers = []
            for line in lines:
                row = items.get_by_id(db, line.request_item_id)
                if not row:
                    raise NotFound(code="item_not_found", payload={"item_id": line.request_item_id})
                item = ItemSnapshot.from_row(row)
                decision = decide(item, TransitionCommand("create_po", actor.id, actor.role))
                if orders.has_live_line(db, item.id):
                    raise InvalidTransition(code="purchase_order_exists", payload={"item_id": item.id})
                orders.create_line(
                    db,
                    po_number=po_number,
                    vendor_id=int(vendor["id"]),
                    request_item_id=item.id,
                    quantity=line.quantity,
                    unit=row.get("unit"),
                    unit_price=line.unit_price,
                    created_by=actor.id,
                )
                if not items.update_guarded(
                    db,
                    item.id,
                    expected_status=item.status,
                    to_status=decision.to_status,
                    fields=decision.fields,
                ):
                    raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
                events.add_event(
                    db,
                    entity=REQUEST_ITEM_ENTITY,
                    entity_id=item.id,
                    from_status=item.status,
                    to_status=decision.to_status,
                    reason="purchase_order_created",
                    actor_id=actor.id,
                )
                request_numbers.append(str(row["request_number"]))
            events.add_event(
                db,
                entity=PURCHASE_ORDER_ENTITY,
                entity_id=po_number,
                from_status=None,
                to_status="sign_pending",
                reason="purchase_order_created",
                actor_id=actor.id,
            )
            self._publish_on_commit(
                db,
                PurchaseOrderCreated(
                    tenant_id=tenant_id,
                    request_numbers=tuple(request_numbers),
                    actor_id=actor.id,
                    po_number=po_number,
                    vendor_id=int(vendor["id"]),
                    item_ids=tuple(item_ids),
                ),
            )

        self._logger.info(
            "purchase_order_created",
            extra={"tenant_id": tenant_id, "po_number": po_number, "vendor_id": vendor_id, "lines": len(lines)},
        )
        return po_number

    @staticmethod
    def _approved_vendor(db, tenant_id: str, item_ids: Sequence[int]) -> int:
        """Vendor picked by the approved cost comparisons of every line, when they agree."""
        approved = CostComparisonRepository(tenant_id=tenant_id).approved_vendors_for_items(db, item_ids)
        vendor_ids = {approved.get(item_id) for item_id in item_ids}
        if None in vendor_ids or len(vendor_ids) != 1:
            raise ValidationError(
                code="vendor_required",
                payload={
                    "item_ids_without_vendor": [item_id for item_id in item_ids if item_id not in approved],
                    "approved_vendor_ids": sorted(set(approved.values())),
                },
            )
        return int(vendor_ids.pop())

    def get_purchase_order(self, db, *, tenant_id: str, po_number: str) -> PurchaseOrderView:
        rows = PurchaseOrderRepository(tenant_id=tenant_id).list_by_number(db, po_number)
        if not rows:
            raise NotFound(code="purchase_order_not_found", payload={"po_number": po_number})
        return PurchaseOrderView(
            po_number=po_number,
            vendor_id=int(rows[0]["vendor_id"]),
            status=str(rows[0]["status"]),
            lines=rows,
        )

    def sign_purchase_order(self, db, *, tenant_id: str, po_number: str, actor: Actor) -> PurchaseOrderView:
        require_roles(*roles_for_action("approve"), role=actor.role, action="approve")
        orders = PurchaseOrderRepository(tenant_id=tenant_id)
        signed_at = utc_now_iso()

        with db.transaction():
            rows = self._locked_rows(db, orders, po_number, expected_status="sign_pending")
            members = self._members(db, tenant_id, rows)
            for row in members:
                if row["status"] != "sign_pending":
                    raise StaleStatus(payload={"item_id": row["id"], "expected_status": "sign_pending"})
                item = ItemSnapshot.from_row(row)
                decision = decide(item, TransitionCommand("approve", actor.id, actor.role), now=signed_at)
                self._move_member(db, tenant_id, item, decision.to_status, decision.fields, "purchase_order_signed", actor)
            updated = orders.update_status_guarded(
                db,
                po_number,
                expected_status="sign_pending",
                to_status="approved",
                signed_by=actor.id,
                signed_at=signed_at,
            )
            if updated != len(rows):
                raise StaleStatus(payload={"po_number": po_number, "expected_status": "sign_pending"})
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity=PURCHASE_ORDER_ENTITY,
                entity_id=po_number,
                from_status="sign_pending",
                to_status="approved",
                reason="purchase_order_signed",
                actor_id=actor.id,
            )
            self._publish_on_commit(
                db,
                PurchaseOrderSigned(
                    tenant_id=tenant_id,
                    request_numbers=tuple(str(row["request_number"]) for row in members),
                    actor_id=actor.id,
                    po_number=po_number,
                    item_ids=tuple(int(row["id"]) for row in members),
                ),
            )

        self._logger.info(
            "purchase_order_signed",
            extra={"tenant_id": tenant_id, "po_number": po_number, "items": len(members)},
        )
        return self.get_purchase_order(db, tenant_id=tenant_id, po_number=po_number)

    def reject_purchase_order(
        self,
        db,
        *,
        tenant_id: str,
        po_number: str,
        reason: str | None,
        actor: Actor,
    ) -> PurchaseOrderView:
        require_roles(*roles_for_action("reject"), role=actor.role, action="reject")
        reason = str(reason or "").strip()
        if not reason:
            raise MissingReason(payload={"po_number": po_number})
        orders = PurchaseOrderRepository(tenant_id=tenant_id)
        command = TransitionCommand("reject", actor.id, actor.role, reason=reason)

        with db.transaction():
            rows = orders.list_by_number(db, po_number)
            if not rows:
                raise NotFound(code="purchase_order_not_found", payload={"po_number": po_number})
            current = str(rows[0]["status"])
            members = self._members(db, tenant_id, rows, strict=False)
            if current == "sign_pending":
                targets = members
                if len(targets) != len(rows) or any(row["status"] != "sign_pending" for row in targets):
                    raise StaleStatus(payload={"po_number": po_number, "expected_status": "sign_pending"})
                to_status = "sign_rejected"
            elif current == "sign_rejected":
                # Members re-planned onto a newer purchase order belong to that order now.
                targets = [
                    row
                    for row in members
                    if row["status"] == "sign_rejected"
                    and orders.latest_number_for_item(db, int(row["id"]), PURCHASE_ORDER_STATUSES) == po_number
                ]
                if not targets:
                    raise InvalidTransition(payload={"po_number": po_number, "status": current})
                to_status = "rejected_po"
            else:
                raise InvalidTransition(payload={"po_number": po_number, "status": current})

            for row in targets:
                item = ItemSnapshot.from_row(row)
                decision = decide(item, command)
                self._move_member(db, tenant_id, item, decision.to_status, decision.fields, "purchase_order_rejected", actor)
            updated = orders.update_status_guarded(
                db,
                po_number,
                expected_status=current,
                to_status="sign_rejected",
                rejection_reason=reason,
            )
            if updated != len(rows):
                raise StaleStatus(payload={"po_number": po_number, "expected_status": current})
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity=PURCHASE_ORDER_ENTITY,
                entity_id=po_number,
                from_status=current,
                to_status="sign_rejected",
                reason=reason,
                actor_id=actor.id,
            )
            self._publish_on_commit(
                db,
                PurchaseOrderRejected(
                    tenant_id=tenant_id,
                    request_numbers=tuple(str(row["request_number"]) for row in targets),
                    actor_id=actor.id,
                    po_number=po_number,
                    to_status=to_status,
                    reason=reason,
                    item_ids=tuple(int(row["id"]) for row in targets),
                ),
            )

        self._logger.info(
            "purchase_order_rejected",
            extra={"tenant_id": tenant_id, "po_number": po_number, "items": len(targets), "to_status": to_status},
        )
        return self.get_purchase_order(db, tenant_id=tenant_id, po_number=po_number)

    @staticmethod
    def _locked_rows(db, orders: PurchaseOrderRepository, po_number: str, *, expected_status: str) -> list[dict]:
        rows = orders.list_by_number(db, po_number)
        if not rows:
            raise NotFound(code="purchase_order_not_found", payload={"po_number": po_number})
        current = str(rows[0]["status"])
        if current != expected_status:
            raise InvalidTransition(payload={"po_number": po_number, "status": current})
        return rows

    @staticmethod
    def _members(db, tenant_id: str, rows: Iterable[dict], *, strict: bool = True) -> list[dict]:
        item_ids = [int(row["request_item_id"]) for row in rows]
        found = RequestItemRepository(tenant_id=tenant_id).get_many(db, item_ids)
        missing = [item_id for item_id in item_ids if item_id not in found]
        if missing and strict:
            raise NotFound(code="item_not_found", payload={"item_ids": missing})
        return [found[item_id] for item_id in item_ids if item_id in found]

    @staticmethod
    def _move_member(db, tenant_id: str, item: ItemSnapshot, to_status: str, fields: dict, reason: str, actor: Actor) -> None:
        if not RequestItemRepository(tenant_id=tenant_id).update_guarded(
            db,
            item.id,
            expected_status=item.status,
            to_status=to_status,
            fields=fields,
        ):
            raise StaleStatus(payload={"item_id": item.id, "expected_status": item.status})
        StatusEventRepository(tenant_id=tenant_id).add_event(
            db,
            entity=REQUEST_ITEM_ENTITY,
            entity_id=item.id,
            from_status=item.status,
            to_status=to_status,
            reason=reason,
            actor_id=actor.id,
        )

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Sequence

from site_procurement.contexts.procurement.infrastructure.repositories.cost_comparison_repository import (
    CostComparisonRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    RequestItemRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.status_event_repository import (
    StatusEventRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.vendor_repository import VendorRepository
from site_procurement.core import EventBus, RequestItemTransitioned, get_event_bus
from site_procurement.domain.contracts import Actor, CostComparisonView, VendorQuoteInput
from site_procurement.errors import AppError, InvalidTransition, NotFound, StaleStatus, ValidationError
from site_procurement.observability import observe_item_transition
from site_procurement.procurement.transitions import (
    ItemSnapshot,
    TransitionCommand,
    TransitionDecision,
    authorize,
    decide,
    ensure_action_allowed,
    utc_now_iso,
)


COST_COMPARISON_ENTITY = "cost_comparison"
REQUEST_ITEM_ENTITY = "request_item"

REVIEW_ACTIONS: Dict[str, str] = {"approve": "approve_cc", "reject": "reject_cc"}
_QUOTABLE_STATUSES = ("draft", "cc_pending")


class CostComparisonService:
    """Vendor quotes for one request item, reviewed by a manager.

    The comparison record and its item always move together in one
    transaction, and the item move goes through ``decide`` so the flow policy,
    role checks and rejection-reason rules are the same as for any other
    transition.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("site_procurement.cost_comparisons")

    def _publish_on_commit(self, db, event) -> None:
        db.on_commit(lambda: self.event_bus.publish(event))

    @staticmethod
    def _observed(action: str, operation: Callable[[], Any]) -> Any:
        try:
            result = operation()
        except AppError as exc:
            observe_item_transition(action, exc.code)
            raise
        except Exception:
            observe_item_transition(action, "unexpected_error")
            raise
        observe_item_transition(action, "succeeded")
        return result

    @staticmethod
    def _load_item(db, tenant_id: str, item_id: int) -> dict:
        row = RequestItemRepository(tenant_id=tenant_id).get_by_id(db, item_id)
        if not row:
            raise NotFound(code="item_not_found", payload={"item_id": item_id})
        return row

    @staticmethod
    def _load_comparison(db, tenant_id: str, item_id: int) -> dict:
        comparison = CostComparisonRepository(tenant_id=tenant_id).get_for_item(db, item_id)
        if not comparison:
            raise NotFound(code="cost_comparison_not_found", payload={"item_id": item_id})
        return comparison

    @staticmethod
    def _quote_records(db, tenant_id: str, quotes: Sequence[VendorQuoteInput]) -> List[Dict[str, Any]]:
        vendor_ids = [quote.vendor_id for quote in quotes]
        if len(set(vendor_ids)) != len(vendor_ids):
            raise ValidationError(payload={"field": "vendor_quotes", "duplicate_vendor_ids": True})
        vendors = VendorRepository(tenant_id=tenant_id)
        for vendor_id in vendor_ids:
            if not vendors.get_active(db, vendor_id):
                raise NotFound(code="vendor_not_found", payload={"vendor_id": vendor_id})
        return [quote.to_record() for quote in quotes]

    def get_cost_comparison(self, db, *, tenant_id: str, item_id: int) -> CostComparisonView:
        item = self._load_item(db, tenant_id, item_id)
        comparison = self._load_comparison(db, tenant_id, item_id)
        return CostComparisonView.from_row(comparison, item_status=str(item["status"]))

    def upsert_cost_comparison(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        quotes: Sequence[VendorQuoteInput],
        actor: Actor,
        is_direct_delivery: bool = False,
    ) -> CostComparisonView:
        comparisons = CostComparisonRepository(tenant_id=tenant_id)
        with db.transaction():
            item = ItemSnapshot.from_row(self._load_item(db, tenant_id, item_id))
            ensure_action_allowed(item.status, "quote_cc")
            authorize(item, TransitionCommand("quote_cc", actor.id, actor.role))
            records = self._quote_records(db, tenant_id, quotes)

            current = comparisons.get_for_item(db, item.id)
            if current is None:
                comparisons.create(
                    db,
                    request_item_id=item.id,
                    vendor_quotes=records,
                    is_direct_delivery=is_direct_delivery,
                    created_by=actor.id,
                )
            else:
                status = str(current["status"])
                if status not in _QUOTABLE_STATUSES:
                    raise InvalidTransition(payload={"item_id": item.id, "cost_comparison_status": status})
                if not comparisons.update_guarded(
                    db,
                    int(current["id"]),
                    expected_status=status,
                    to_status=status,
                    fields={"vendor_quotes": records, "is_direct_delivery": is_direct_delivery},
                ):
                    raise StaleStatus(payload={"item_id": item.id, "expected_status": status})

        self._logger.info(
            "cost_comparison_saved",
            extra={"tenant_id": tenant_id, "item_id": item_id, "quotes": len(records)},
        )
        return self.get_cost_comparison(db, tenant_id=tenant_id, item_id=item_id)

    def submit_cost_comparison(self, db, *, tenant_id: str, item_id: int, actor: Actor) -> CostComparisonView:
        command = TransitionCommand("open_cc", actor.id, actor.role)
        self._observed(command.action, lambda: self._submit(db, tenant_id, item_id, command))
        return self.get_cost_comparison(db, tenant_id=tenant_id, item_id=item_id)

    def review_cost_comparison(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        decision: str,
        actor: Actor,
        selected_vendor_id: int | None = None,
        notes: str | None = None,
    ) -> CostComparisonView:
        action = REVIEW_ACTIONS.get(str(decision or "").strip().lower())
        if action is None:
            raise ValidationError(code="action_invalid", payload={"decision": decision, "allowed": sorted(REVIEW_ACTIONS)})
        command = TransitionCommand(action, actor.id, actor.role, reason=notes)
        self._observed(action, lambda: self._review(db, tenant_id, item_id, command, selected_vendor_id))
        return self.get_cost_comparison(db, tenant_id=tenant_id, item_id=item_id)

    def resubmit_cost_comparison(
        self,
        db,
        *,
        tenant_id: str,
        item_id: int,
        actor: Actor,
        quotes: Sequence[VendorQuoteInput] | None = None,
        is_direct_delivery: bool | None = None,
    ) -> CostComparisonView:
        command = TransitionCommand("resubmit_cc", actor.id, actor.role)
        self._observed(
            command.action,
            lambda: self._resubmit(db, tenant_id, item_id, command, quotes, is_direct_delivery),
        )
        return self.get_cost_comparison(db, tenant_id=tenant_id, item_id=item_id)

    def apply_item_action(self, db, *, tenant_id: str, item_id: int, command: TransitionCommand) -> str:
        """Run a plain item transition (open/approve/reject/resubmit) against the comparison."""
        if command.action == "open_cc":
            decision = self._submit(db, tenant_id, item_id, command)
        elif command.action in ("approve_cc", "reject_cc"):
            decision = self._review(db, tenant_id, item_id, command, None)
        elif command.action == "resubmit_cc":
            decision = self._resubmit(db, tenant_id, item_id, command, None, None)
        else:
            raise ValidationError(code="action_invalid", payload={"action": command.action})
        return str(decision.to_status)

    def _submit(self, db, tenant_id: str, item_id: int, command: TransitionCommand) -> TransitionDecision:
        with db.transaction():
            row = self._load_item(db, tenant_id, item_id)
            item = ItemSnapshot.from_row(row)
            decision = decide(item, command)
            comparison = CostComparisonRepository(tenant_id=tenant_id).get_for_item(db, item.id)
            if not comparison or not comparison["vendor_quotes"]:
                raise ValidationError(code="quotes_required", payload={"item_id": item.id})
            if comparison["status"] != "draft":
                raise InvalidTransition(payload={"item_id": item.id, "cost_comparison_status": comparison["status"]})
            self._advance(db, tenant_id, row, decision, comparison, "cc_pending", {}, command.actor_id)
        return decision

    def _review(
        self,
        db,
        tenant_id: str,
        item_id: int,
        command: TransitionCommand,
        selected_vendor_id: int | None,
    ) -> TransitionDecision:
        with db.transaction():
            row = self._load_item(db, tenant_id, item_id)
            item = ItemSnapshot.from_row(row)
            decision = decide(item, command)
            comparison = self._load_comparison(db, tenant_id, item.id)
            if comparison["status"] != "cc_pending":
                raise StaleStatus(payload={"item_id": item.id, "expected_status": "cc_pending"})
            reviewed_at = utc_now_iso()
            if command.action == "approve_cc":
                to_status = "cc_approved"
                fields = {
                    "selected_vendor_id": self._selected_vendor(comparison, selected_vendor_id),
                    "manager_notes": command.reason,
                    "reviewed_by": command.actor_id,
                    "approved_at": reviewed_at,
                }
            else:
                to_status = "cc_rejected"
                fields = {
                    "selected_vendor_id": None,
                    "manager_notes": command.reason,
                    "reviewed_by": command.actor_id,
                    "rejected_at": reviewed_at,
                }
            self._advance(db, tenant_id, row, decision, comparison, to_status, fields, command.actor_id)
        return decision

    def _resubmit(
        self,
        db,
        tenant_id: str,
        item_id: int,
        command: TransitionCommand,
        quotes: Sequence[VendorQuoteInput] | None,
        is_direct_delivery: bool | None,
    ) -> TransitionDecision:
        with db.transaction():
            row = self._load_item(db, tenant_id, item_id)
            item = ItemSnapshot.from_row(row)
            decision = decide(item, command)
            comparison = self._load_comparison(db, tenant_id, item.id)
            if comparison["status"] != "cc_rejected":
                raise StaleStatus(payload={"item_id": item.id, "expected_status": "cc_rejected"})
            # Manager notes stay so the next review sees what was asked for.
            fields: Dict[str, Any] = {"reviewed_by": None, "rejected_at": None}
            if quotes is not None:
                if not quotes:
                    raise ValidationError(code="quotes_required", payload={"item_id": item.id})
                fields["vendor_quotes"] = self._quote_records(db, tenant_id, quotes)
            if is_direct_delivery is not None:
                fields["is_direct_delivery"] = is_direct_delivery
            self._advance(db, tenant_id, row, decision, comparison, "cc_pending", fields, command.actor_id)
        return decision

    @staticmethod
    def _selected_vendor(comparison: dict, selected_vendor_id: int | None) -> int:
        quoted = [int(quote["vendor_id"]) for quote in comparison["vendor_quotes"]]
        if selected_vendor_id is None:
            if len(quoted) != 1:
                raise ValidationError(
                    code="vendor_selection_required",
                    payload={"item_id": comparison["request_item_id"], "quoted_vendor_ids": quoted},
                )
            return quoted[0]
        if int(selected_vendor_id) not in quoted:
            raise ValidationError(
                code="vendor_not_in_quotes",
                payload={"vendor_id": selected_vendor_id, "quoted_vendor_ids": quoted},
            )
        return int(selected_vendor_id)

    def _advance(
        self,
        db,
        tenant_id: str,
        row: dict,
        decision: TransitionDecision,
        comparison: dict,
        to_status: str,
        fields: Dict[str, Any],
        actor_id: str,
    ) -> None:
        from_status = str(comparison["status"])
        if not CostComparisonRepository(tenant_id=tenant_id).update_guarded(
            db,
            int(comparison["id"]),
            expected_status=from_status,
            to_status=to_status,
            fields=fields,
        ):
            raise StaleStatus(payload={"item_id": decision.item_id, "expected_status": from_status})
        items = RequestItemRepository(tenant_id=tenant_id)
        if not items.update_guarded(
            db,
            decision.item_id,
            expected_status=decision.from_status,
            to_status=decision.to_status,
            fields=decision.fields,
        ):
            raise StaleStatus(payload={"item_id": decision.item_id, "expected_status": decision.from_status})

        events = StatusEventRepository(tenant_id=tenant_id)
        events.add_event(
            db,
            entity=COST_COMPARISON_ENTITY,
            entity_id=int(comparison["id"]),
            from_status=from_status,
            to_status=to_status,
            reason=decision.event_reason,
            actor_id=actor_id,
        )
        events.add_event(
            db,
            entity=REQUEST_ITEM_ENTITY,
            entity_id=decision.item_id,
            from_status=decision.from_status,
            to_status=decision.to_status,
            reason=decision.fields.get("rejection_reason") or decision.event_reason,
            actor_id=actor_id,
        )
        request_number = str(row["request_number"])
        self._publish_on_commit(
            db,
            RequestItemTransitioned(
                tenant_id=tenant_id,
                request_numbers=(request_number,),
                actor_id=actor_id,
                item_id=decision.item_id,
                action=decision.action,
                from_status=decision.from_status,
                to_status=decision.to_status,
            ),
        )
        self._logger.info(
            "cost_comparison_moved",
            extra={
                "tenant_id": tenant_id,
                "item_id": decision.item_id,
                "action": decision.action,
                "from_status": from_status,
                "to_status": to_status,
                "item_status": decision.to_status,
            },
        )

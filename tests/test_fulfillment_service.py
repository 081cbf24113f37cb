import unittest

from site_procurement.contexts.procurement.application.fulfillment_service import RequestFulfillmentService
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    RequestItemRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.status_event_repository import (
    StatusEventRepository,
)
from site_procurement.core import (
    DomainEvent,
    EventBus,
    PermissionGranted,
    RequestGroupSubmitted,
    RequestItemSplit,
    RequestItemTransitioned,
)
from site_procurement.domain.contracts import VendorQuoteInput
from site_procurement.errors import (
    InsufficientStock,
    InvalidTransition,
    MissingReason,
    NotFound,
    StaleStatus,
    Unauthorized,
    ValidationError,
)
from site_procurement.observability import prometheus_metrics_text, reset_metrics_for_tests
from site_procurement.procurement.inventory import SqlInventoryOracle
from tests.helpers.seed import (
    ENGINEER,
    MANAGER,
    OFFICER,
    OTHER_ENGINEER,
    TENANT_ID,
    group_input,
    seed_actors,
    seed_vendor,
    set_stock,
)
from tests.helpers.temp_db import TempDbSandbox


class _FulfillmentTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="fulfillment_service")
        self.db = self._temp_db.create_schema()
        seed_actors(self.db)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(DomainEvent, self.events.append)
        self.service = RequestFulfillmentService(event_bus=self.bus)
        self.items = RequestItemRepository(tenant_id=TENANT_ID)

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _submit(self, *items, submit: bool = True, actor=ENGINEER) -> str:
        return self.service.submit_draft_group(
            self.db,
            tenant_id=TENANT_ID,
            actor=actor,
            group_input=group_input(*items, submit=submit),
        )

    def _group_ids(self, request_number: str) -> list:
        return [row["id"] for row in self.items.list_group(self.db, request_number)]

    def _status(self, item_id: int) -> str:
        return self.items.get_by_id(self.db, item_id)["status"]

    def _transition(self, item_id: int, action: str, actor=MANAGER, **kwargs):
        return self.service.transition_item(
            self.db, tenant_id=TENANT_ID, item_id=item_id, action=action, actor=actor, **kwargs
        )

    def _recheck_item(self, quantity: float = 10, intents=("split", "direct_po")) -> int:
        item_id = self._group_ids(self._submit(("Cement", quantity)))[0]
        self.assertEqual(self._transition(item_id, "approve", intents=list(intents)), "recheck")
        return item_id


class SubmitDraftGroupTest(_FulfillmentTestCase):
    def test_submit_allocates_sequential_request_numbers(self) -> None:
        first = self._submit(("Cement", 10), ("Sand", 2))
        second = self._submit(("Rebar", 5))

        self.assertEqual((first, second), ("001", "002"))
        rows = self.items.list_group(self.db, first)
        self.assertEqual([row["item_name"] for row in rows], ["Cement", "Sand"])
        self.assertEqual([row["item_order"] for row in rows], [1, 2])
        self.assertTrue(all(row["status"] == "pending" for row in rows))

        submitted = [event for event in self.events if isinstance(event, RequestGroupSubmitted)]
        self.assertEqual(len(submitted), 2)
        self.assertEqual(submitted[0].request_numbers, ("001",))
        self.assertEqual(submitted[0].item_ids, tuple(row["id"] for row in rows))

    def test_request_numbers_are_per_tenant(self) -> None:
        self._submit(("Cement", 10))
        other = self.service.submit_draft_group(
            self.db,
            tenant_id="tenant-2",
            actor=ENGINEER,
            group_input=group_input(("Cement", 1)),
        )
        self.assertEqual(other, "001")

    def test_only_site_engineers_submit(self) -> None:
        with self.assertRaises(Unauthorized):
            self._submit(("Cement", 10), actor=MANAGER)

    def test_draft_group_is_sent_as_a_whole_by_its_creator(self) -> None:
        request_number = self._submit(("Cement", 10), ("Sand", 3), submit=False)
        first, second = self._group_ids(request_number)
        self.assertEqual(self._status(first), "draft")

        with self.assertRaises(Unauthorized) as ctx:
            self._transition(first, "send", actor=OTHER_ENGINEER)
        self.assertEqual(ctx.exception.code, "creator_only")

        self.assertEqual(self._transition(first, "send", actor=ENGINEER), "pending")
        self.assertEqual(self._status(second), "pending")
        moved = [event.item_id for event in self.events if isinstance(event, RequestItemTransitioned)]
        self.assertEqual(sorted(moved), [first, second])

    def test_creator_deletes_draft_item(self) -> None:
        request_number = self._submit(("Cement", 10), ("Sand", 3), submit=False)
        first, second = self._group_ids(request_number)

        self.assertIsNone(self._transition(first, "delete", actor=ENGINEER))
        self.assertEqual(self._group_ids(request_number), [second])
        with self.assertRaises(NotFound):
            self._transition(first, "delete", actor=ENGINEER)


class ApprovalFlowTest(_FulfillmentTestCase):
    def test_plain_approval_records_audit(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]

        self.assertEqual(self._transition(item_id, "approve"), "approved")
        row = self.items.get_by_id(self.db, item_id)
        self.assertEqual(row["approved_by"], MANAGER.id)
        self.assertIsNone(row["direct_action"])

        history = StatusEventRepository(tenant_id=TENANT_ID).list_for_entity(
            self.db, entity="request_item", entity_id=item_id
        )
        self.assertEqual([(event["from_status"], event["to_status"]) for event in history][0], ("pending", "approved"))
        self.assertEqual(history[0]["actor_id"], MANAGER.id)

    def test_direct_delivery_checks_inventory(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        set_stock(self.db, "cement", 9)

        with self.assertRaises(InsufficientStock):
            self._transition(item_id, "approve", intents=["direct_delivery"])
        self.assertEqual(self._status(item_id), "pending")

        set_stock(self.db, "Cement", 10)
        self.assertEqual(self._transition(item_id, "approve", intents=["direct_delivery"]), "delivery_stage")
        self.assertEqual(self.items.get_by_id(self.db, item_id)["direct_action"], "delivery")

    def test_direct_po_locks_ledger(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        self.assertEqual(self._transition(item_id, "approve", intents=["direct_po"]), "direct_po")
        self.assertEqual(self.items.get_by_id(self.db, item_id)["direct_action"], "po")

    def test_reject_requires_reason_and_clears_on_exit(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        with self.assertRaises(MissingReason):
            self._transition(item_id, "reject")
        self.assertEqual(self._status(item_id), "pending")

        self.assertEqual(self._transition(item_id, "reject", reason="over budget"), "rejected")
        self.assertEqual(self.items.get_by_id(self.db, item_id)["rejection_reason"], "over budget")

    def test_cost_comparison_path(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        self._transition(item_id, "approve")
        self.assertEqual(self._transition(item_id, "route_to_cc", actor=OFFICER), "ready_for_cc")
        with self.assertRaises(ValidationError) as ctx:
            self._transition(item_id, "open_cc", actor=OFFICER)
        self.assertEqual(ctx.exception.code, "quotes_required")
        self.service.cost_comparisons.upsert_cost_comparison(
            self.db,
            tenant_id=TENANT_ID,
            item_id=item_id,
            quotes=[VendorQuoteInput(vendor_id=seed_vendor(self.db), unit_price=7.5)],
            actor=OFFICER,
        )
        self.assertEqual(self._transition(item_id, "open_cc", actor=OFFICER), "cc_pending")
        self.assertEqual(self._transition(item_id, "reject_cc", reason="too expensive"), "cc_rejected")
        self.assertEqual(self._transition(item_id, "resubmit_cc", actor=OFFICER), "cc_pending")
        self.assertIsNone(self.items.get_by_id(self.db, item_id)["rejection_reason"])
        self.assertEqual(self._transition(item_id, "approve_cc"), "ready_for_po")
        comparison = self.service.cost_comparisons.get_cost_comparison(self.db, tenant_id=TENANT_ID, item_id=item_id)
        self.assertEqual(comparison.status, "cc_approved")
        self.assertEqual(comparison.selected_vendor_id, comparison.vendor_quotes[0]["vendor_id"])

    def test_failed_transition_publishes_nothing(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        before = len(self.events)
        with self.assertRaises(InvalidTransition):
            self._transition(item_id, "mark_delivered", actor=ENGINEER)
        self.assertEqual(len(self.events), before)

    def test_concurrent_writer_raises_stale_status(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]

        def _racing_inventory(db, tenant_id):
            db.execute("UPDATE request_items SET status = 'approved' WHERE id = ?", (item_id,))
            return SqlInventoryOracle(db, tenant_id=tenant_id)

        set_stock(self.db, "Cement", 50)
        racing = RequestFulfillmentService(event_bus=self.bus, inventory_factory=_racing_inventory)
        with self.assertRaises(StaleStatus):
            racing.transition_item(
                self.db,
                tenant_id=TENANT_ID,
                item_id=item_id,
                action="approve",
                actor=MANAGER,
                intents=["direct_delivery"],
            )
        self.assertEqual(self._status(item_id), "pending")

    def test_unexpected_failure_is_counted_and_reraised(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]

        def _broken_inventory(db, tenant_id):
            raise RuntimeError("inventory offline")

        reset_metrics_for_tests()
        broken = RequestFulfillmentService(event_bus=self.bus, inventory_factory=_broken_inventory)
        with self.assertRaises(RuntimeError):
            broken.transition_item(
                self.db,
                tenant_id=TENANT_ID,
                item_id=item_id,
                action="approve",
                actor=MANAGER,
                intents=["direct_delivery"],
            )

        self.assertEqual(self._status(item_id), "pending")
        self.assertIn(
            'request_item_transition_total{action="approve",outcome="unexpected_error"} 1',
            prometheus_metrics_text(),
        )
        reset_metrics_for_tests()


class PermissionGrantTest(_FulfillmentTestCase):
    def _grant(self, item_id: int, capability: str, actor=MANAGER):
        return self.service.grant_permission(
            self.db, tenant_id=TENANT_ID, item_id=item_id, capability=capability, actor=actor
        )

    def test_grants_accumulate_and_regrant_is_idempotent(self) -> None:
        item_id = self._recheck_item()

        first = self._grant(item_id, "po")
        self.assertEqual((first.code, first.direct_action), ("permission_granted", "po"))
        self.assertTrue(first.changed)

        events_before = len(self.events)
        again = self._grant(item_id, "po")
        self.assertEqual(again.code, "permission_already_granted")
        self.assertFalse(again.changed)
        self.assertEqual(len(self.events), events_before)

        split = self._grant(item_id, "split")
        self.assertEqual((split.direct_action, split.is_split_approved), ("split_po", True))
        row = self.items.get_by_id(self.db, item_id)
        self.assertEqual((row["status"], row["direct_action"], row["is_split_approved"]), ("recheck", "split_po", 1))
        granted = [event for event in self.events if isinstance(event, PermissionGranted)]
        self.assertEqual([event.capability for event in granted], ["po", "split"])

    def test_grant_only_in_recheck_by_manager(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        with self.assertRaises(InvalidTransition):
            self._grant(item_id, "po")

        self._transition(item_id, "approve", intents=["split"])
        with self.assertRaises(Unauthorized):
            self._grant(item_id, "po", actor=OFFICER)
        with self.assertRaises(ValidationError) as ctx:
            self._grant(item_id, "teleport")
        self.assertEqual(ctx.exception.code, "capability_invalid")

    def test_routing_from_recheck_follows_grants(self) -> None:
        item_id = self._recheck_item()
        with self.assertRaises(InvalidTransition) as ctx:
            self._transition(item_id, "route_to_po", actor=OFFICER)
        self.assertEqual(ctx.exception.code, "permission_not_granted")

        self._grant(item_id, "po")
        self.assertEqual(self._transition(item_id, "route_to_po", actor=OFFICER), "ready_for_po")


class SplitItemTest(_FulfillmentTestCase):
    def _split(self, item_id: int, quantity, actor=OFFICER):
        return self.service.split_item(self.db, tenant_id=TENANT_ID, item_id=item_id, quantity=quantity, actor=actor)

    def test_split_moves_stocked_part_to_delivery(self) -> None:
        item_id = self._recheck_item(quantity=10, intents=("split", "direct_po"))
        self.service.grant_permission(self.db, tenant_id=TENANT_ID, item_id=item_id, capability="split", actor=MANAGER)
        set_stock(self.db, "Cement", 4)

        outcome = self._split(item_id, 3)

        self.assertEqual(outcome.remaining_quantity, 7)
        original = self.items.get_by_id(self.db, item_id)
        self.assertEqual((original["status"], original["quantity"]), ("recheck", 7))
        child = self.items.get_by_id(self.db, outcome.new_item_id)
        self.assertEqual(child["status"], "delivery_stage")
        self.assertEqual(child["quantity"], 3)
        self.assertEqual(child["direct_action"], "delivery")
        self.assertEqual(child["split_from_id"], item_id)
        self.assertEqual(child["request_number"], original["request_number"])
        self.assertEqual(child["item_order"], 2)
        self.assertEqual(child["created_by"], ENGINEER.id)
        self.assertTrue(any(isinstance(event, RequestItemSplit) for event in self.events))

    def test_split_guards(self) -> None:
        item_id = self._recheck_item(quantity=10)
        set_stock(self.db, "Cement", 2)

        with self.assertRaises(InvalidTransition) as ctx:
            self._split(item_id, 1)
        self.assertEqual(ctx.exception.code, "permission_not_granted")

        self.service.grant_permission(self.db, tenant_id=TENANT_ID, item_id=item_id, capability="split", actor=MANAGER)
        for quantity in (0, 10, 11, "abc"):
            with self.subTest(quantity=quantity):
                with self.assertRaises(ValidationError):
                    self._split(item_id, quantity)
        with self.assertRaises(InsufficientStock):
            self._split(item_id, 3)
        with self.assertRaises(Unauthorized):
            self._split(item_id, 1, actor=MANAGER)
        self.assertEqual(self.items.get_by_id(self.db, item_id)["quantity"], 10)


class DeliveryAndDetailsTest(_FulfillmentTestCase):
    def _delivery_stage_item(self) -> int:
        item_id = self._group_ids(self._submit(("Cement", 2)))[0]
        set_stock(self.db, "Cement", 5)
        self._transition(item_id, "approve", intents=["direct_delivery"])
        return item_id

    def test_creator_confirms_delivery(self) -> None:
        item_id = self._delivery_stage_item()
        with self.assertRaises(Unauthorized):
            self.service.mark_delivered(self.db, tenant_id=TENANT_ID, item_id=item_id, actor=OTHER_ENGINEER)

        status = self.service.mark_delivered(self.db, tenant_id=TENANT_ID, item_id=item_id, actor=ENGINEER)
        self.assertEqual(status, "delivered")
        self.assertTrue(self.items.get_by_id(self.db, item_id)["delivery_marked_at"])

    def test_officer_updates_details_without_moving_status(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10)))[0]
        self._transition(item_id, "approve")

        updated = self.service.update_item_details(
            self.db,
            tenant_id=TENANT_ID,
            item_id=item_id,
            changes={"quantity": "12", "brand": "Votoran", "status": "delivered"},
            actor=OFFICER,
        )
        self.assertEqual((updated["status"], updated["quantity"], updated["brand"]), ("approved", 12, "Votoran"))

        with self.assertRaises(ValidationError):
            self.service.update_item_details(
                self.db, tenant_id=TENANT_ID, item_id=item_id, changes={"quantity": -1}, actor=OFFICER
            )
        with self.assertRaises(ValidationError) as ctx:
            self.service.update_item_details(
                self.db, tenant_id=TENANT_ID, item_id=item_id, changes={"status": "delivered"}, actor=OFFICER
            )
        self.assertEqual(ctx.exception.code, "no_changes")

    def test_creator_edits_draft(self) -> None:
        item_id = self._group_ids(self._submit(("Cement", 10), submit=False))[0]
        with self.assertRaises(Unauthorized):
            self.service.update_item_details(
                self.db, tenant_id=TENANT_ID, item_id=item_id, changes={"item_name": "Lime"}, actor=OTHER_ENGINEER
            )
        updated = self.service.update_item_details(
            self.db, tenant_id=TENANT_ID, item_id=item_id, changes={"item_name": " Lime "}, actor=ENGINEER
        )
        self.assertEqual((updated["status"], updated["item_name"]), ("draft", "Lime"))


class GroupViewTest(_FulfillmentTestCase):
    def test_group_view_derives_status_and_flow(self) -> None:
        request_number = self._submit(("Cement", 10), ("Sand", 3))
        first, _second = self._group_ids(request_number)

        view = self.service.get_group_view(self.db, tenant_id=TENANT_ID, request_number=request_number)
        self.assertEqual(view.group_status, "pending")

        self._transition(first, "approve", intents=["split", "direct_po"])
        self.service.grant_permission(self.db, tenant_id=TENANT_ID, item_id=first, capability="po", actor=MANAGER)

        view = self.service.get_group_view(self.db, tenant_id=TENANT_ID, request_number=request_number, role="manager")
        self.assertEqual(view.group_status, "partially_processed")
        item = view.items[0]
        self.assertEqual(item["granted_capabilities"], ["po"])
        self.assertEqual(item["status_label"], "Recheck")
        self.assertEqual(item["flow"]["allowed_actions"], ["grant_permission", "reject"])
        self.assertEqual(view.to_payload()["request_number"], request_number)

    def test_unknown_group(self) -> None:
        with self.assertRaises(NotFound) as ctx:
            self.service.get_group_view(self.db, tenant_id=TENANT_ID, request_number="999")
        self.assertEqual(ctx.exception.code, "request_not_found")

    def test_groups_are_tenant_scoped(self) -> None:
        request_number = self._submit(("Cement", 10))
        with self.assertRaises(NotFound):
            self.service.get_group_view(self.db, tenant_id="tenant-2", request_number=request_number)


if __name__ == "__main__":
    unittest.main()

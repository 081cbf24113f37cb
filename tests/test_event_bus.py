import unittest

from site_procurement.contexts.procurement.application.fulfillment_service import RequestFulfillmentService
from site_procurement.contexts.procurement.application.group_view import (
    GroupViewNotifier,
    get_group_view_notifier,
)
from site_procurement.core import (
    DomainEvent,
    EventBus,
    PurchaseOrderSigned,
    RequestGroupSubmitted,
    RequestItemTransitioned,
    get_event_bus,
    reset_event_bus_for_tests,
)
from tests.helpers.seed import ENGINEER, MANAGER, TENANT_ID, group_input, seed_actors
from tests.helpers.temp_db import TempDbSandbox


def _transitioned(request_number: str = "001", tenant_id: str = "tenant-a") -> RequestItemTransitioned:
    return RequestItemTransitioned(
        tenant_id=tenant_id,
        request_numbers=(request_number,),
        item_id=1,
        action="approve",
        from_status="pending",
        to_status="approved",
    )


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(RequestItemTransitioned, lambda _event: execution_trace.append("first"))
        bus.subscribe(RequestItemTransitioned, lambda _event: execution_trace.append("second"))
        bus.publish(_transitioned())

        self.assertEqual(execution_trace, ["first", "second"])

    def test_base_class_subscription_receives_every_event(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(DomainEvent, received.append)

        bus.publish(_transitioned())
        bus.publish(PurchaseOrderSigned(tenant_id="tenant-a", po_number="PO-1", item_ids=(1, 2)))

        self.assertEqual([type(event).__name__ for event in received], ["RequestItemTransitioned", "PurchaseOrderSigned"])

    def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("boom")

        bus.subscribe(RequestItemTransitioned, broken)
        bus.subscribe(RequestItemTransitioned, received.append)
        with self.assertLogs("site_procurement", level="ERROR"):
            bus.publish(_transitioned())

        self.assertEqual(len(received), 1)

    def test_event_normalizes_identity(self) -> None:
        event = RequestGroupSubmitted(tenant_id="  ", request_numbers=("001", "001", ""), item_ids=(1,))
        self.assertEqual(event.tenant_id, "unknown")
        self.assertEqual(event.request_numbers, ("001",))
        self.assertTrue(event.event_id)
        self.assertIsNotNone(event.occurred_at.tzinfo)


class GroupViewNotifierTest(unittest.TestCase):
    def test_listeners_fire_only_for_their_request_number(self) -> None:
        bus = EventBus()
        notifier = GroupViewNotifier(bus).attach()
        seen = []
        unwatch = notifier.watch("tenant-a", "001", lambda number, event: seen.append((number, event.action)))
        notifier.watch("tenant-a", "002", lambda number, event: seen.append((number, "other")))

        bus.publish(_transitioned("001"))
        bus.publish(_transitioned("001", tenant_id="tenant-b"))
        unwatch()
        bus.publish(_transitioned("001"))

        self.assertEqual(seen, [("001", "approve")])

    def test_detach_stops_delivery(self) -> None:
        bus = EventBus()
        notifier = GroupViewNotifier(bus).attach()
        seen = []
        notifier.watch("tenant-a", "001", lambda number, event: seen.append(number))
        notifier.detach()
        bus.publish(_transitioned("001"))
        self.assertEqual(seen, [])

    def test_failing_listener_is_logged(self) -> None:
        bus = EventBus()
        notifier = GroupViewNotifier(bus).attach()

        def broken(_number, _event):
            raise RuntimeError("boom")

        notifier.watch("tenant-a", "001", broken)
        with self.assertLogs("site_procurement.group_view", level="ERROR"):
            bus.publish(_transitioned("001"))

    def test_shared_notifier_reattaches_after_bus_reset(self) -> None:
        reset_event_bus_for_tests()
        notifier = get_group_view_notifier()
        self.assertIs(get_group_view_notifier(), notifier)
        seen = []
        unwatch = notifier.watch("tenant-a", "003", lambda number, event: seen.append(number))
        try:
            get_event_bus().publish(_transitioned("003"))
        finally:
            unwatch()
        self.assertEqual(seen, ["003"])


class CommittedEventsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="committed_events")
        self.db = self._temp_db.create_schema()
        seed_actors(self.db)

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def test_group_listener_refreshes_after_commit(self) -> None:
        bus = EventBus()
        service = RequestFulfillmentService(event_bus=bus)
        notifier = GroupViewNotifier(bus).attach()
        request_number = service.submit_draft_group(
            self.db, tenant_id=TENANT_ID, actor=ENGINEER, group_input=group_input(("Cement", 1))
        )
        snapshots = []

        def refresh(number, _event):
            self.assertFalse(self.db.in_transaction)
            view = service.get_group_view(self.db, tenant_id=TENANT_ID, request_number=number)
            snapshots.append(view.group_status)

        notifier.watch(TENANT_ID, request_number, refresh)
        item_id = service.get_group_view(self.db, tenant_id=TENANT_ID, request_number=request_number).items[0]["id"]
        service.transition_item(self.db, tenant_id=TENANT_ID, item_id=item_id, action="approve", actor=MANAGER)

        self.assertEqual(snapshots, ["approved"])


if __name__ == "__main__":
    unittest.main()

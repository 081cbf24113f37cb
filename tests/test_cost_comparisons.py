import unittest

from site_procurement import create_app
from site_procurement.config import Config
from site_procurement.contexts.procurement.application.cost_comparison_service import CostComparisonService
from site_procurement.contexts.procurement.application.fulfillment_service import RequestFulfillmentService
from site_procurement.contexts.procurement.application.purchase_order_service import PurchaseOrderService
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    RequestItemRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.status_event_repository import (
    StatusEventRepository,
)
from site_procurement.core import DomainEvent, EventBus, RequestItemTransitioned
from site_procurement.db import close_db, get_db
from site_procurement.domain.contracts import PurchaseOrderLineInput, VendorQuoteInput
from site_procurement.errors import InvalidTransition, MissingReason, NotFound, Unauthorized, ValidationError
from tests.helpers.seed import ENGINEER, MANAGER, OFFICER, TENANT_ID, group_input, seed_actors, seed_vendor
from tests.helpers.temp_db import TempDbSandbox


class CostComparisonServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="cost_comparisons")
        self.db = self._temp_db.create_schema()
        seed_actors(self.db)
        self.acme = seed_vendor(self.db, name="Acme Supplies")
        self.bolt = seed_vendor(self.db, name="Bolt Traders")
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(DomainEvent, self.events.append)
        self.comparisons = CostComparisonService(event_bus=self.bus)
        self.orders = PurchaseOrderService(event_bus=self.bus)
        self.fulfillment = RequestFulfillmentService(
            purchase_orders=self.orders,
            event_bus=self.bus,
            cost_comparisons=self.comparisons,
        )
        self.items = RequestItemRepository(tenant_id=TENANT_ID)

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _items_in_cost_comparison(self, count: int = 1) -> list:
        request_number = self.fulfillment.submit_draft_group(
            self.db,
            tenant_id=TENANT_ID,
            actor=ENGINEER,
            group_input=group_input(*[(f"Pipe {index}", 5) for index in range(count)]),
        )
        ids = [row["id"] for row in self.items.list_group(self.db, request_number)]
        for item_id in ids:
            for action, actor in (("approve", MANAGER), ("route_to_cc", OFFICER)):
                self.fulfillment.transition_item(
                    self.db, tenant_id=TENANT_ID, item_id=item_id, action=action, actor=actor
                )
        return ids

    def _quote(self, item_id: int, *prices_by_vendor, actor=OFFICER):
        quotes = [VendorQuoteInput(vendor_id=vendor_id, unit_price=price) for vendor_id, price in prices_by_vendor]
        return self.comparisons.upsert_cost_comparison(
            self.db, tenant_id=TENANT_ID, item_id=item_id, quotes=quotes, actor=actor
        )

    def _submit(self, item_id: int):
        return self.comparisons.submit_cost_comparison(self.db, tenant_id=TENANT_ID, item_id=item_id, actor=OFFICER)

    def _review(self, item_id: int, decision: str, **kwargs):
        return self.comparisons.review_cost_comparison(
            self.db, tenant_id=TENANT_ID, item_id=item_id, decision=decision, actor=MANAGER, **kwargs
        )

    def _status(self, item_id: int) -> str:
        return self.items.get_by_id(self.db, item_id)["status"]

    def test_quotes_start_a_draft_and_can_be_replaced(self) -> None:
        item_id, = self._items_in_cost_comparison()

        view = self._quote(item_id, (self.acme, 12.0))
        self.assertEqual((view.status, view.item_status), ("draft", "ready_for_cc"))
        self.assertEqual([quote["vendor_id"] for quote in view.vendor_quotes], [self.acme])

        view = self._quote(item_id, (self.acme, 11.0), (self.bolt, 10.5))
        self.assertEqual(view.status, "draft")
        self.assertEqual([quote["unit_price"] for quote in view.vendor_quotes], [11.0, 10.5])

    def test_quotes_are_validated(self) -> None:
        item_id, = self._items_in_cost_comparison()
        closed = seed_vendor(self.db, name="Closed Vendor", active=False)

        with self.assertRaises(Unauthorized):
            self._quote(item_id, (self.acme, 12.0), actor=MANAGER)
        with self.assertRaises(NotFound) as ctx:
            self._quote(item_id, (closed, 12.0))
        self.assertEqual(ctx.exception.code, "vendor_not_found")
        with self.assertRaises(ValidationError):
            self._quote(item_id, (self.acme, 12.0), (self.acme, 9.0))
        with self.assertRaises(ValidationError) as ctx:
            VendorQuoteInput.from_payload({"vendor_id": self.acme, "unit_price": 0})
        self.assertEqual(ctx.exception.code, "unit_price_invalid")
        with self.assertRaises(NotFound) as ctx:
            self.comparisons.get_cost_comparison(self.db, tenant_id=TENANT_ID, item_id=item_id)
        self.assertEqual(ctx.exception.code, "cost_comparison_not_found")

    def test_submit_needs_quotes_and_moves_item(self) -> None:
        item_id, = self._items_in_cost_comparison()
        with self.assertRaises(ValidationError) as ctx:
            self._submit(item_id)
        self.assertEqual(ctx.exception.code, "quotes_required")
        self._quote(item_id)
        with self.assertRaises(ValidationError):
            self._submit(item_id)

        self._quote(item_id, (self.acme, 12.0))
        view = self._submit(item_id)

        self.assertEqual((view.status, view.item_status), ("cc_pending", "cc_pending"))
        moved = [event for event in self.events if isinstance(event, RequestItemTransitioned)]
        self.assertEqual((moved[-1].action, moved[-1].to_status), ("open_cc", "cc_pending"))
        history = StatusEventRepository(tenant_id=TENANT_ID).list_for_entity(
            self.db, entity="cost_comparison", entity_id=view.id
        )
        self.assertEqual([(row["from_status"], row["to_status"]) for row in history], [("draft", "cc_pending")])

    def test_approval_requires_a_quoted_vendor(self) -> None:
        item_id, = self._items_in_cost_comparison()
        self._quote(item_id, (self.acme, 12.0), (self.bolt, 10.5))
        self._submit(item_id)
        outsider = seed_vendor(self.db, name="Outsider")

        with self.assertRaises(ValidationError) as ctx:
            self._review(item_id, "approve")
        self.assertEqual(ctx.exception.code, "vendor_selection_required")
        with self.assertRaises(ValidationError) as ctx:
            self._review(item_id, "approve", selected_vendor_id=outsider)
        self.assertEqual(ctx.exception.code, "vendor_not_in_quotes")
        with self.assertRaises(Unauthorized):
            self.comparisons.review_cost_comparison(
                self.db,
                tenant_id=TENANT_ID,
                item_id=item_id,
                decision="approve",
                actor=OFFICER,
                selected_vendor_id=self.bolt,
            )
        self.assertEqual(self._status(item_id), "cc_pending")

        view = self._review(item_id, "approve", selected_vendor_id=self.bolt)

        self.assertEqual((view.status, view.selected_vendor_id, view.item_status), ("cc_approved", self.bolt, "ready_for_po"))
        with self.assertRaises(InvalidTransition):
            self._review(item_id, "reject", notes="changed my mind")

    def test_rejection_keeps_notes_and_resubmit_replaces_quotes(self) -> None:
        item_id, = self._items_in_cost_comparison()
        self._quote(item_id, (self.acme, 12.0))
        self._submit(item_id)

        with self.assertRaises(MissingReason):
            self._review(item_id, "reject", notes="  ")
        with self.assertRaises(ValidationError):
            self._review(item_id, "postpone")

        view = self._review(item_id, "reject", notes="get a second quote")
        self.assertEqual((view.status, view.manager_notes), ("cc_rejected", "get a second quote"))
        row = self.items.get_by_id(self.db, item_id)
        self.assertEqual((row["status"], row["rejection_reason"]), ("cc_rejected", "get a second quote"))

        with self.assertRaises(ValidationError) as ctx:
            self.comparisons.resubmit_cost_comparison(
                self.db, tenant_id=TENANT_ID, item_id=item_id, actor=OFFICER, quotes=[]
            )
        self.assertEqual(ctx.exception.code, "quotes_required")

        view = self.comparisons.resubmit_cost_comparison(
            self.db,
            tenant_id=TENANT_ID,
            item_id=item_id,
            actor=OFFICER,
            quotes=[
                VendorQuoteInput(vendor_id=self.acme, unit_price=11.0),
                VendorQuoteInput(vendor_id=self.bolt, unit_price=9.5, amount=47.5, unit="m"),
            ],
        )
        self.assertEqual((view.status, view.item_status), ("cc_pending", "cc_pending"))
        self.assertEqual([quote["vendor_id"] for quote in view.vendor_quotes], [self.acme, self.bolt])
        self.assertEqual(view.vendor_quotes[1]["unit"], "m")
        self.assertEqual(view.manager_notes, "get a second quote")
        self.assertIsNone(self.items.get_by_id(self.db, item_id)["rejection_reason"])

    def test_approved_vendor_becomes_purchase_order_default(self) -> None:
        first, second = self._items_in_cost_comparison(2)
        for item_id in (first, second):
            self._quote(item_id, (self.acme, 12.0), (self.bolt, 10.5))
            self._submit(item_id)
            self._review(item_id, "approve", selected_vendor_id=self.bolt)

        po_number = self.orders.create_purchase_order(
            self.db,
            tenant_id=TENANT_ID,
            vendor_id=None,
            lines=[PurchaseOrderLineInput(request_item_id=item_id, quantity=5, unit_price=10.5) for item_id in (first, second)],
            actor=OFFICER,
        )

        view = self.orders.get_purchase_order(self.db, tenant_id=TENANT_ID, po_number=po_number)
        self.assertEqual(view.vendor_id, self.bolt)
        self.assertEqual([self._status(first), self._status(second)], ["sign_pending", "sign_pending"])

    def test_purchase_order_without_agreed_vendor_needs_one(self) -> None:
        first, second = self._items_in_cost_comparison(2)
        for item_id, vendor_id in ((first, self.acme), (second, self.bolt)):
            self._quote(item_id, (vendor_id, 12.0))
            self._submit(item_id)
            self._review(item_id, "approve")
        lines = [PurchaseOrderLineInput(request_item_id=item_id, quantity=5, unit_price=12.0) for item_id in (first, second)]

        with self.assertRaises(ValidationError) as ctx:
            self.orders.create_purchase_order(self.db, tenant_id=TENANT_ID, vendor_id=None, lines=lines, actor=OFFICER)
        self.assertEqual(ctx.exception.code, "vendor_required")
        self.assertEqual(self._status(first), "ready_for_po")

        po_number = self.orders.create_purchase_order(
            self.db, tenant_id=TENANT_ID, vendor_id=self.acme, lines=lines, actor=OFFICER
        )
        self.assertEqual(self.orders.get_purchase_order(self.db, tenant_id=TENANT_ID, po_number=po_number).vendor_id, self.acme)


class CostComparisonRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="cost_comparison_routes")
        self.app = create_app(self._temp_db.make_config(Config))
        self.client = self.app.test_client()
        with self.app.app_context():
            db = get_db()
            seed_actors(db)
            self.vendor_id = seed_vendor(db)
            close_db()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _headers(self, actor) -> dict:
        return {"X-Tenant-Id": TENANT_ID, "X-Actor-Id": actor.id}

    def _post(self, path: str, actor, **body):
        return self.client.post(path, headers=self._headers(actor), json=body)

    def test_quote_submit_review_and_order(self) -> None:
        response = self._post("/api/requests", ENGINEER, items=[{"item_name": "Cable", "quantity": 4, "unit": "m"}])
        item_id = response.get_json()["items"][0]["id"]
        self._post(f"/api/request-items/{item_id}/transitions", MANAGER, action="approve")
        self._post(f"/api/request-items/{item_id}/transitions", OFFICER, action="route_to_cc")
        base = f"/api/request-items/{item_id}/cost-comparison"

        response = self.client.put(
            base,
            headers=self._headers(OFFICER),
            json={"vendor_quotes": [{"vendor_id": self.vendor_id, "unit_price": 3.25}]},
        )
        self.assertEqual(response.status_code, 200, response.get_data(as_text=True))
        self.assertEqual(response.get_json()["status"], "draft")

        response = self._post(f"{base}/submit", OFFICER)
        self.assertEqual(response.get_json()["item_status"], "cc_pending")

        response = self._post(f"{base}/review", MANAGER, decision="reject")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "reason_required")

        response = self._post(f"{base}/review", MANAGER, decision="approve", selected_vendor_id=self.vendor_id)
        self.assertEqual(response.status_code, 200, response.get_data(as_text=True))
        self.assertEqual(response.get_json()["status"], "cc_approved")

        response = self._post(
            "/api/purchase-orders",
            OFFICER,
            lines=[{"request_item_id": item_id, "quantity": 4, "unit_price": 3.25}],
        )
        self.assertEqual(response.status_code, 201, response.get_data(as_text=True))
        self.assertEqual(response.get_json()["vendor_id"], self.vendor_id)

        self.assertEqual(self.client.get(base, headers=self._headers(ENGINEER)).get_json()["item_status"], "sign_pending")


if __name__ == "__main__":
    unittest.main()

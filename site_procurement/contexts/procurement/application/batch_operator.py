"""Applies one action to many request items.

Ids are partitioned by their current status (and the per-item intent map),
each partition runs on its own connection in a worker thread, and the
outcome reports which ids succeeded and why the others failed. Partitions
are independent: a failing partition never rolls back another one.
"""

from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from site_procurement.contexts.procurement.application.fulfillment_service import RequestFulfillmentService
from site_procurement.contexts.procurement.application.purchase_order_service import PurchaseOrderService
from site_procurement.contexts.procurement.infrastructure.repositories.purchase_order_repository import (
    PurchaseOrderRepository,
)
from site_procurement.contexts.procurement.infrastructure.repositories.request_item_repository import (
    RequestItemRepository,
)
from site_procurement.domain.contracts import Actor, BatchFailure, BatchOutcome
from site_procurement.errors import MissingReason, ValidationError, error_reason
from site_procurement.observability import observe_batch, observe_batch_partition
from site_procurement.procurement.direct_action import Capability
from site_procurement.procurement.flow_policy import PURCHASE_ORDER_MEMBER_STATUSES
from site_procurement.procurement.transitions import (
    INTENT_DIRECT_DELIVERY,
    INTENT_DIRECT_PO,
    INTENT_SPLIT,
    normalize_intents,
)


BATCH_ACTIONS = ("approve", "reject", "direct_po", "mark_delivery")

PARTITION_TRANSITION = "transition"
PARTITION_GRANT = "grant"
PARTITION_PURCHASE_ORDER = "purchase_order"

_INTENT_CAPABILITIES = {
    INTENT_DIRECT_PO: Capability.PO,
    INTENT_DIRECT_DELIVERY: Capability.DELIVERY,
    INTENT_SPLIT: Capability.SPLIT,
}


@dataclass
class Partition:
    kind: str
    key: str
    item_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class BatchRequest:
    tenant_id: str
    action: str
    actor: Actor
    reasons: Dict[int, str]
    intents: Dict[int, frozenset]


class BatchOperator:
    def __init__(
        self,
        fulfillment_service: RequestFulfillmentService,
        connection_factory: Callable[[], Any],
        *,
        purchase_order_service: PurchaseOrderService | None = None,
        max_workers: int = 4,
    ) -> None:
        self.fulfillment = fulfillment_service
        self.purchase_orders = purchase_order_service or fulfillment_service.purchase_orders
        self.connection_factory = connection_factory
        self.max_workers = max(1, int(max_workers or 1))
        self._logger = logging.getLogger("site_procurement.batch")

    def run(
        self,
        *,
        tenant_id: str,
        item_ids: Iterable[Any],
        action: str,
        actor: Actor,
        reason: str | None = None,
        reasons: Mapping[Any, str] | None = None,
        intents: Mapping[Any, Iterable[str]] | None = None,
    ) -> BatchOutcome:
        ids = self._normalize_ids(item_ids)
        if not ids:
            raise ValidationError(code="no_items_selected")
        action = str(action or "").strip().lower()
        if action not in BATCH_ACTIONS:
            raise ValidationError(code="action_invalid", payload={"action": action, "allowed_actions": list(BATCH_ACTIONS)})

        request = BatchRequest(
            tenant_id=tenant_id,
            action=action,
            actor=actor,
            reasons=self._resolve_reasons(action, ids, reason, reasons),
            intents={self._as_id(key): normalize_intents(value) for key, value in dict(intents or {}).items()},
        )

        outcome = BatchOutcome(action=action)
        partitions = self._partition(request, ids, outcome)
        if partitions:
            workers = min(self.max_workers, len(partitions))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") as pool:
                futures = [
                    pool.submit(contextvars.copy_context().run, self._run_partition, request, partition)
                    for partition in partitions
                ]
                for future in futures:
                    succeeded, failed = future.result()
                    outcome.succeeded.extend(succeeded)
                    outcome.failed.extend(failed)

        observe_batch(action, len(outcome.succeeded), len(outcome.failed))
        self._logger.info(
            "batch_completed",
            extra={
                "tenant_id": tenant_id,
                "action": action,
                "partitions": len(partitions),
                "succeeded": len(outcome.succeeded),
                "failed": len(outcome.failed),
            },
        )
        return outcome

    @staticmethod
    def _as_id(value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(code="validation_error", payload={"field": "item_ids", "value": value}) from None

    def _normalize_ids(self, item_ids: Iterable[Any]) -> List[int]:
        return list(dict.fromkeys(self._as_id(item_id) for item_id in (item_ids or ())))

    @staticmethod
    def _resolve_reasons(
        action: str,
        ids: List[int],
        reason: str | None,
        reasons: Mapping[Any, str] | None,
    ) -> Dict[int, str]:
        if action != "reject":
            return {}
        shared = str(reason or "").strip()
        overrides = {BatchOperator._as_id(key): str(value or "").strip() for key, value in dict(reasons or {}).items()}
        resolved = {item_id: overrides.get(item_id) or shared for item_id in ids}
        missing = [item_id for item_id, text in resolved.items() if not text]
        if missing:
            raise MissingReason(payload={"item_ids": missing})
        return resolved

    def _partition(self, request: BatchRequest, ids: List[int], outcome: BatchOutcome) -> List[Partition]:
        db = self.connection_factory()
        try:
            rows = RequestItemRepository(tenant_id=request.tenant_id).get_many(db, ids)
            orders = PurchaseOrderRepository(tenant_id=request.tenant_id)
            partitions: Dict[Tuple[str, str], Partition] = {}
            for item_id in ids:
                row = rows.get(item_id)
                if row is None:
                    outcome.failed.append(BatchFailure(id=item_id, reason="item_not_found"))
                    continue
                kind, key = self._partition_key(request, orders, db, row)
                if kind is None:
                    outcome.failed.append(BatchFailure(id=item_id, reason=key))
                    continue
                partitions.setdefault((kind, key), Partition(kind=kind, key=key)).item_ids.append(item_id)
            return list(partitions.values())
        finally:
            db.close()

    @staticmethod
    def _partition_key(request: BatchRequest, orders: PurchaseOrderRepository, db, row: dict) -> Tuple[str | None, str]:
        item_id = int(row["id"])
        status = str(row["status"])
        po_statuses = {"sign_pending"} if request.action == "approve" else set()
        if request.action == "reject":
            po_statuses = set(PURCHASE_ORDER_MEMBER_STATUSES)
        if status in po_statuses:
            po_number = orders.latest_number_for_item(db, item_id, (status,))
            if not po_number:
                return None, "purchase_order_not_found"
            return PARTITION_PURCHASE_ORDER, po_number
        if request.action == "approve" and status == "recheck" and request.intents.get(item_id):
            return PARTITION_GRANT, status
        return PARTITION_TRANSITION, status

    def _run_partition(self, request: BatchRequest, partition: Partition) -> Tuple[List[int], List[BatchFailure]]:
        started = time.perf_counter()
        succeeded: List[int] = []
        failed: List[BatchFailure] = []
        db = self.connection_factory()
        try:
            if partition.kind == PARTITION_PURCHASE_ORDER:
                try:
                    self._apply_purchase_order(db, request, partition)
                except Exception as exc:  # noqa: BLE001
                    self._log_failure(request, partition, partition.item_ids, exc)
                    failed.extend(BatchFailure(id=item_id, reason=error_reason(exc)) for item_id in partition.item_ids)
                else:
                    succeeded.extend(partition.item_ids)
            else:
                for item_id in partition.item_ids:
                    try:
                        self._apply_item(db, request, partition, item_id)
                    except Exception as exc:  # noqa: BLE001
                        self._log_failure(request, partition, [item_id], exc)
                        failed.append(BatchFailure(id=item_id, reason=error_reason(exc)))
                    else:
                        succeeded.append(item_id)
        finally:
            db.close()
            observe_batch_partition((time.perf_counter() - started) * 1000.0)
        return succeeded, failed

    def _apply_purchase_order(self, db, request: BatchRequest, partition: Partition) -> None:
        if request.action == "reject":
            self.purchase_orders.reject_purchase_order(
                db,
                tenant_id=request.tenant_id,
                po_number=partition.key,
                reason=request.reasons[partition.item_ids[0]],
                actor=request.actor,
            )
            return
        self.purchase_orders.sign_purchase_order(
            db,
            tenant_id=request.tenant_id,
            po_number=partition.key,
            actor=request.actor,
        )

    def _apply_item(self, db, request: BatchRequest, partition: Partition, item_id: int) -> None:
        if partition.kind == PARTITION_GRANT:
            for intent in sorted(request.intents[item_id]):
                self.fulfillment.grant_permission(
                    db,
                    tenant_id=request.tenant_id,
                    item_id=item_id,
                    capability=_INTENT_CAPABILITIES[intent],
                    actor=request.actor,
                )
            return

        action = request.action
        intents: Iterable[str] = ()
        if action == "direct_po":
            action, intents = "approve", (INTENT_DIRECT_PO,)
        elif action == "mark_delivery":
            action = "mark_delivered"
        elif action == "approve" and partition.key == "pending":
            intents = request.intents.get(item_id, ())
        self.fulfillment.transition_item(
            db,
            tenant_id=request.tenant_id,
            item_id=item_id,
            action=action,
            actor=request.actor,
            reason=request.reasons.get(item_id),
            intents=intents,
        )

    def _log_failure(self, request: BatchRequest, partition: Partition, item_ids: List[int], exc: Exception) -> None:
        extra = {
            "tenant_id": request.tenant_id,
            "action": request.action,
            "partition_kind": partition.kind,
            "partition_key": partition.key,
            "item_ids": item_ids,
            "error_code": error_reason(exc),
        }
        if error_reason(exc) == "unexpected_error":
            self._logger.exception("batch_partition_failed", extra=extra)
        else:
            self._logger.warning("batch_partition_failed", extra=extra)

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Tuple, Type

from site_procurement.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)
    tenant_id: str
    request_numbers: Tuple[str, ...] = ()
    actor_id: str | None = None

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)
        numbers = tuple(dict.fromkeys(str(number) for number in (self.request_numbers or ()) if number))

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)
        object.__setattr__(self, "tenant_id", str(self.tenant_id or "").strip() or "unknown")
        object.__setattr__(self, "request_numbers", numbers)


@dataclass(frozen=True, kw_only=True)
class RequestGroupSubmitted(DomainEvent):
    item_ids: Tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class RequestItemTransitioned(DomainEvent):
    item_id: int
    action: str
    from_status: str
    to_status: str | None


@dataclass(frozen=True, kw_only=True)
class PermissionGranted(DomainEvent):
    item_id: int
    capability: str
    direct_action: str | None = None
    is_split_approved: bool = False


@dataclass(frozen=True, kw_only=True)
class RequestItemSplit(DomainEvent):
    item_id: int
    new_item_id: int
    quantity: float


@dataclass(frozen=True, kw_only=True)
class PurchaseOrderCreated(DomainEvent):
    po_number: str
    vendor_id: int
    item_ids: Tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class PurchaseOrderSigned(DomainEvent):
    po_number: str
    item_ids: Tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class PurchaseOrderRejected(DomainEvent):
    po_number: str
    to_status: str
    reason: str = ""
    item_ids: Tuple[int, ...] = ()


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("site_procurement")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def is_subscribed(self, event_type: Type[DomainEvent], handler: EventHandler) -> bool:
        with self._lock:
            return handler in self._handlers.get(event_type, [])

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = [
                handler
                for event_type, registered in self._handlers.items()
                if isinstance(event, event_type)
                for handler in registered
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()

from site_procurement.core.event_bus import (
    DomainEvent,
    EventBus,
    PermissionGranted,
    PurchaseOrderCreated,
    PurchaseOrderRejected,
    PurchaseOrderSigned,
    RequestGroupSubmitted,
    RequestItemSplit,
    RequestItemTransitioned,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "RequestGroupSubmitted",
    "RequestItemTransitioned",
    "PermissionGranted",
    "RequestItemSplit",
    "PurchaseOrderCreated",
    "PurchaseOrderSigned",
    "PurchaseOrderRejected",
    "get_event_bus",
    "reset_event_bus_for_tests",
]

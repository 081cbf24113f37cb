from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Dict, List, Tuple

from site_procurement.core import DomainEvent, EventBus, get_event_bus


GroupListener = Callable[[str, DomainEvent], None]


class GroupViewNotifier:
    """Fans committed domain events out to listeners keyed by request number.

    Collaborators holding a group view register here and refresh only when
    their own request number changes.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus or get_event_bus()
        self._lock = RLock()
        self._listeners: Dict[Tuple[str, str], List[GroupListener]] = {}
        self._logger = logging.getLogger("site_procurement.group_view")

    def attach(self) -> "GroupViewNotifier":
        with self._lock:
            if not self.event_bus.is_subscribed(DomainEvent, self._on_event):
                self.event_bus.subscribe(DomainEvent, self._on_event)
        return self

    def detach(self) -> None:
        with self._lock:
            self.event_bus.unsubscribe(DomainEvent, self._on_event)

    def watch(self, tenant_id: str, request_number: str, listener: GroupListener) -> Callable[[], None]:
        key = (str(tenant_id), str(request_number))
        with self._lock:
            self._listeners.setdefault(key, []).append(listener)

        def _unwatch() -> None:
            with self._lock:
                listeners = self._listeners.get(key, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(key, None)

        return _unwatch

    def _on_event(self, event: DomainEvent) -> None:
        for request_number in event.request_numbers:
            with self._lock:
                listeners = list(self._listeners.get((event.tenant_id, request_number), []))
            for listener in listeners:
                try:
                    listener(request_number, event)
                except Exception:  # noqa: BLE001
                    self._logger.exception(
                        "group_listener_failed",
                        extra={"request_number": request_number, "event_type": type(event).__name__},
                    )


_DEFAULT_NOTIFIER: GroupViewNotifier | None = None


def get_group_view_notifier() -> GroupViewNotifier:
    global _DEFAULT_NOTIFIER
    if _DEFAULT_NOTIFIER is None:
        _DEFAULT_NOTIFIER = GroupViewNotifier()
    return _DEFAULT_NOTIFIER.attach()

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from site_procurement.errors import ValidationError


def _clean_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def _positive_number(value: Any, *, code: str, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(code=code, payload={"field": field_name, "value": value}) from None
    if number <= 0:
        raise ValidationError(code=code, payload={"field": field_name, "value": value})
    return number


def _positive_int(value: Any, *, code: str, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(code=code, payload={"field": field_name, "value": value}) from None
    if number <= 0:
        raise ValidationError(code=code, payload={"field": field_name, "value": value})
    return number


@dataclass(frozen=True)
class Actor:
    id: str
    role: str
    display_name: str | None = None


@dataclass(frozen=True)
class DraftItemInput:
    item_name: str
    quantity: float
    unit: str | None = None
    description: str | None = None
    specs: str | None = None
    brand: str | None = None
    is_urgent: bool = False
    required_by: str | None = None
    site_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DraftItemInput":
        item_name = _clean_text(payload.get("item_name"))
        if not item_name:
            raise ValidationError(payload={"field": "item_name"})
        return cls(
            item_name=item_name,
            quantity=_positive_number(payload.get("quantity"), code="quantity_invalid", field_name="quantity"),
            unit=_clean_text(payload.get("unit")),
            description=_clean_text(payload.get("description")),
            specs=_clean_text(payload.get("specs")),
            brand=_clean_text(payload.get("brand")),
            is_urgent=bool(payload.get("is_urgent")),
            required_by=_clean_text(payload.get("required_by")),
            site_id=_clean_text(payload.get("site_id")),
        )


@dataclass(frozen=True)
class RequestGroupInput:
    items: List[DraftItemInput]
    submit: bool = True

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RequestGroupInput":
        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError(code="items_required")
        items = []
        for raw in raw_items:
            if not isinstance(raw, Mapping):
                raise ValidationError(code="items_required")
            items.append(DraftItemInput.from_payload(raw))
        return cls(items=items, submit=bool(payload.get("submit", True)))


@dataclass(frozen=True)
class PurchaseOrderLineInput:
    request_item_id: int
    quantity: float
    unit_price: float

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PurchaseOrderLineInput":
        return cls(
            request_item_id=_positive_int(
                payload.get("request_item_id"), code="validation_error", field_name="request_item_id"
            ),
            quantity=_positive_number(payload.get("quantity"), code="quantity_invalid", field_name="quantity"),
            unit_price=_positive_number(payload.get("unit_price"), code="unit_price_invalid", field_name="unit_price"),
        )


@dataclass(frozen=True)
class GrantOutcome:
    item_id: int
    capability: str
    code: str
    direct_action: str | None
    is_split_approved: bool

    @property
    def changed(self) -> bool:
        return self.code == "permission_granted"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "capability": self.capability,
            "code": self.code,
            "direct_action": self.direct_action,
            "is_split_approved": self.is_split_approved,
        }


@dataclass(frozen=True)
class SplitOutcome:
    item_id: int
    new_item_id: int
    remaining_quantity: float
    split_quantity: float
    request_number: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "new_item_id": self.new_item_id,
            "remaining_quantity": self.remaining_quantity,
            "split_quantity": self.split_quantity,
            "request_number": self.request_number,
        }


@dataclass(frozen=True)
class BatchFailure:
    id: int
    reason: str


@dataclass
class BatchOutcome:
    action: str
    succeeded: List[int] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "succeeded": sorted(self.succeeded),
            "failed": [{"id": failure.id, "reason": failure.reason} for failure in sorted(self.failed, key=lambda f: f.id)],
            "summary": {"succeeded": len(self.succeeded), "total": self.total},
        }


@dataclass(frozen=True)
class GroupView:
    request_number: str
    group_status: str | None
    items: List[Dict[str, Any]]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "request_number": self.request_number,
            "group_status": self.group_status,
            "items": list(self.items),
        }


@dataclass(frozen=True)
class PurchaseOrderView:
    po_number: str
    vendor_id: int
    status: str
    lines: List[Dict[str, Any]]

    @property
    def total_price(self) -> float:
        return round(sum(float(line.get("total_price") or 0) for line in self.lines), 2)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "po_number": self.po_number,
            "vendor_id": self.vendor_id,
            "status": self.status,
            "total_price": self.total_price,
            "lines": list(self.lines),
        }


@dataclass(frozen=True)
class VendorQuoteInput:
    vendor_id: int
    unit_price: float
    amount: float | None = None
    unit: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "VendorQuoteInput":
        amount = payload.get("amount")
        return cls(
            vendor_id=_positive_int(payload.get("vendor_id"), code="validation_error", field_name="vendor_id"),
            unit_price=_positive_number(payload.get("unit_price"), code="unit_price_invalid", field_name="unit_price"),
            amount=None if amount in (None, "") else _positive_number(amount, code="validation_error", field_name="amount"),
            unit=_clean_text(payload.get("unit")),
        )

    @classmethod
    def list_from_payload(cls, raw_quotes: Any) -> List["VendorQuoteInput"]:
        if raw_quotes is None:
            return []
        if not isinstance(raw_quotes, list) or any(not isinstance(raw, Mapping) for raw in raw_quotes):
            raise ValidationError(payload={"field": "vendor_quotes"})
        return [cls.from_payload(raw) for raw in raw_quotes]

    def to_record(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "unit_price": self.unit_price,
            "amount": self.amount,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class CostComparisonView:
    id: int
    request_item_id: int
    status: str
    vendor_quotes: List[Dict[str, Any]]
    is_direct_delivery: bool = False
    selected_vendor_id: int | None = None
    manager_notes: str | None = None
    item_status: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, item_status: str | None = None) -> "CostComparisonView":
        selected = row.get("selected_vendor_id")
        return cls(
            id=int(row["id"]),
            request_item_id=int(row["request_item_id"]),
            status=str(row["status"]),
            vendor_quotes=list(row.get("vendor_quotes") or []),
            is_direct_delivery=bool(row.get("is_direct_delivery")),
            selected_vendor_id=None if selected is None else int(selected),
            manager_notes=row.get("manager_notes"),
            item_status=item_status,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_item_id": self.request_item_id,
            "status": self.status,
            "vendor_quotes": list(self.vendor_quotes),
            "is_direct_delivery": self.is_direct_delivery,
            "selected_vendor_id": self.selected_vendor_id,
            "manager_notes": self.manager_notes,
            "item_status": self.item_status,
        }

"""Permission/split ledger encoding.

A request item stores its irrevocable grants as two columns: ``direct_action``
(one of the values in ``DIRECT_ACTION_VALUES`` or ``None``) and
``is_split_approved``. Internally the grants are a set of capabilities
``{po, delivery, split}``; ``LedgerState.encode`` / ``LedgerState.decode`` map
between the two so no code has to build or parse the string values by hand.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Tuple


class Capability(str, Enum):
    PO = "po"
    DELIVERY = "delivery"
    SPLIT = "split"

    @classmethod
    def parse(cls, value: "str | Capability") -> "Capability":
        if isinstance(value, Capability):
            return value
        normalized = str(value or "").strip().lower()
        for capability in cls:
            if capability.value == normalized:
                return capability
        raise ValueError(f"unknown capability: {value!r}")


_ROUTE_BITS: Dict[FrozenSet[Capability], str] = {
    frozenset({Capability.PO}): "po",
    frozenset({Capability.DELIVERY}): "delivery",
    frozenset({Capability.PO, Capability.DELIVERY}): "all",
}

_SPLIT_ROUTE_BITS: Dict[FrozenSet[Capability], str] = {
    frozenset({Capability.PO}): "split_po",
    frozenset({Capability.DELIVERY}): "split_delivery",
    frozenset({Capability.PO, Capability.DELIVERY}): "split_po_delivery",
}

_DECODE: Dict[str, FrozenSet[Capability]] = {
    value: bits for bits, value in _ROUTE_BITS.items()
} | {value: bits | {Capability.SPLIT} for bits, value in _SPLIT_ROUTE_BITS.items()}

DIRECT_ACTION_VALUES: Tuple[str, ...] = tuple(_DECODE.keys())

_DELIVERY_VALUES = frozenset(value for value, bits in _DECODE.items() if Capability.DELIVERY in bits)


@dataclass(frozen=True)
class LedgerState:
    direct_action: str | None = None
    is_split_approved: bool = False

    def __post_init__(self) -> None:
        value = str(self.direct_action or "").strip() or None
        if value is not None and value not in _DECODE:
            raise ValueError(f"unknown direct_action: {self.direct_action!r}")
        split = bool(self.is_split_approved) or (value is not None and Capability.SPLIT in _DECODE[value])
        object.__setattr__(self, "direct_action", value)
        object.__setattr__(self, "is_split_approved", split)

    @classmethod
    def from_row(cls, row: dict) -> "LedgerState":
        return cls(
            direct_action=row.get("direct_action"),
            is_split_approved=bool(row.get("is_split_approved")),
        )

    @classmethod
    def encode(cls, capabilities: Iterable[Capability | str], current: "LedgerState | None" = None) -> "LedgerState":
        bits = frozenset(Capability.parse(item) for item in capabilities)
        routes = bits - {Capability.SPLIT}
        if Capability.SPLIT not in bits:
            return cls(direct_action=_ROUTE_BITS.get(routes), is_split_approved=False)
        if routes:
            return cls(direct_action=_SPLIT_ROUTE_BITS[routes], is_split_approved=True)
        # Split alone only enables the split workflow; the route stays as it was.
        kept = current.direct_action if current is not None else None
        return cls(direct_action=kept, is_split_approved=True)

    def decode(self) -> FrozenSet[Capability]:
        bits = set(_DECODE.get(self.direct_action or "", frozenset()))
        if self.is_split_approved:
            bits.add(Capability.SPLIT)
        return frozenset(bits)

    def has(self, capability: Capability | str) -> bool:
        return Capability.parse(capability) in self.decode()

    def grant(self, capability: Capability | str) -> "LedgerState":
        return LedgerState.encode(self.decode() | {Capability.parse(capability)}, current=self)

    @property
    def includes_delivery(self) -> bool:
        return self.direct_action in _DELIVERY_VALUES

    def to_fields(self) -> dict:
        return {
            "direct_action": self.direct_action,
            "is_split_approved": 1 if self.is_split_approved else 0,
        }

    def locked_capabilities(self) -> list[str]:
        return sorted(capability.value for capability in self.decode())

"""
Data models for the bill splitter: participants, receipts, the split draft
and the raw extraction result.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


def new_id() -> str:
    return uuid.uuid4().hex


class Mode(str, Enum):
    EQUALLY = "equally"
    BY_ITEMS = "byItems"
    CUSTOM = "custom"

    @property
    def display(self) -> str:
        return {
            Mode.EQUALLY: "Split Equally",
            Mode.BY_ITEMS: "Split by Items",
            Mode.CUSTOM: "Custom Amounts",
        }[self]


@dataclass(frozen=True)
class Participant:
    id: str
    name: str = ""
    is_included: bool = True
    is_me: bool = False

    @property
    def trimmed_name(self) -> str:
        return self.name.strip()

    def display_name(self, position: int, my_name: str = "") -> str:
        """Typed name, else "Me" (or the configured name) for the local user, else "Guest N"."""
        if self.trimmed_name:
            return self.trimmed_name
        if self.is_me:
            return my_name.strip() or "Me"
        return f"Guest {position + 1}"

    def initials(self, position: int) -> str:
        parts = self.trimmed_name.split()
        if not parts:
            return str(position + 1)
        if len(parts) >= 2:
            return (parts[0][0] + parts[1][0]).upper()
        return parts[0][0].upper()


@dataclass(frozen=True)
class Item:
    """Draft row in by-items mode. price_cents is None while the price field is empty."""
    id: str
    label: str = ""
    price_cents: Optional[int] = None
    assigned_ids: FrozenSet[str] = frozenset()

    @property
    def is_complete(self) -> bool:
        return bool(self.label.strip()) and self.price_cents is not None


@dataclass(frozen=True)
class ReceiptItem:
    id: str
    label: str
    price_cents: int
    responsible_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Receipt:
    id: str
    title: str
    created_at: Optional[datetime]
    subtotal_cents: int = 0
    fees_cents: int = 0
    tax_cents: int = 0
    tip_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    items: Tuple[ReceiptItem, ...] = ()

    @property
    def expected_total(self) -> int:
        return max(0, self.subtotal_cents + self.fees_cents + self.tax_cents
                   + self.tip_cents - self.discount_cents)

    @property
    def is_balanced(self) -> bool:
        return self.expected_total == self.total_cents

    @property
    def shows_only_total(self) -> bool:
        return (self.fees_cents == 0 and self.tax_cents == 0
                and self.tip_cents == 0 and self.discount_cents == 0)

    @property
    def date_text(self) -> str:
        if self.created_at is None:
            return "-"
        return self.created_at.strftime("%b %d, %Y")


@dataclass(frozen=True)
class SplitDraft:
    participants: Tuple[Participant, ...]
    payer_id: str
    mode: Mode = Mode.EQUALLY
    total_cents: int = 0
    # aligned with participants; excluded participants hold 0
    per_participant_cents: Tuple[int, ...] = ()
    items: Tuple[Item, ...] = ()
    fees_cents: int = 0
    tax_cents: int = 0
    tip_cents: int = 0
    discount_cents: int = 0
    items_seeded: bool = False
    my_name: str = ""

    @property
    def included(self) -> List[Participant]:
        return [p for p in self.participants if p.is_included]

    @property
    def complete_items(self) -> List[Item]:
        return [it for it in self.items if it.is_complete]

    @property
    def me(self) -> Optional[Participant]:
        return next((p for p in self.participants if p.is_me), None)

    def index_of(self, participant_id: str) -> Optional[int]:
        for i, p in enumerate(self.participants):
            if p.id == participant_id:
                return i
        return None

    def display_name(self, participant_id: str) -> str:
        idx = self.index_of(participant_id)
        if idx is None:
            return ""
        return self.participants[idx].display_name(idx, self.my_name)


# --- Extraction results (all numeric fields optional) ---

@dataclass(frozen=True)
class ParsedItem:
    label: str
    quantity: int = 1
    cents: Optional[int] = None


@dataclass(frozen=True)
class ParsedReceipt:
    merchant: Optional[str] = None
    total_cents: Optional[int] = None
    subtotal_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    fees_cents: Optional[int] = None
    tip_cents: Optional[int] = None
    discount_cents: Optional[int] = None
    items: Tuple[ParsedItem, ...] = ()
    issues: Tuple[str, ...] = field(default_factory=tuple)
    created_at_iso: Optional[str] = None
    currency: Optional[str] = None

# draft.py
"""
Split draft transitions.

Every function takes a draft and returns a new one; nothing here keeps state
between calls. `apply_event` dispatches the event objects a front-end sends.
"""
from dataclasses import dataclass, replace
from functools import singledispatch
from typing import Optional

from models import Item, Mode, Participant, Receipt, ReceiptItem, SplitDraft, new_id
from money import parse_to_cents
from split_calc import (
    aligned_amounts,
    clamp_custom_amounts,
    equal_amounts,
    set_custom_amount,
)


def new_draft(total_cents: int, participant_count: int = 1, my_name: str = "",
              receipt: Optional[Receipt] = None) -> SplitDraft:
    """A fresh draft: "me" plus placeholders, me paying, split equally."""
    me = Participant(id=new_id(), is_me=True)
    others = tuple(Participant(id=new_id()) for _ in range(max(1, participant_count) - 1))
    draft = SplitDraft(
        participants=(me,) + others,
        payer_id=me.id,
        mode=Mode.EQUALLY,
        total_cents=max(0, total_cents),
        my_name=my_name,
    )
    if receipt is not None:
        draft = replace(draft, total_cents=max(0, receipt.total_cents))
    return replace(draft, per_participant_cents=equal_amounts(draft))


# --- Mode ---

def seed_items(draft: SplitDraft, receipt: Optional[Receipt]) -> SplitDraft:
    """One unassigned row per receipt item, breakdown prefilled where non-zero."""
    if receipt is None:
        return replace(draft, items_seeded=True)
    items = tuple(
        Item(id=new_id(), label=it.label, price_cents=it.price_cents)
        for it in receipt.items
    )
    return replace(
        draft,
        items=items,
        fees_cents=receipt.fees_cents or draft.fees_cents,
        tax_cents=receipt.tax_cents or draft.tax_cents,
        tip_cents=receipt.tip_cents or draft.tip_cents,
        discount_cents=receipt.discount_cents or draft.discount_cents,
        items_seeded=True,
    )


def reseed_items(draft: SplitDraft, receipt: Receipt) -> SplitDraft:
    """Explicit reseed after the receipt was edited; user assignments are discarded."""
    draft = replace(draft, items=(), fees_cents=0, tax_cents=0, tip_cents=0,
                    discount_cents=0, total_cents=max(0, receipt.total_cents))
    draft = seed_items(draft, receipt)
    return _refresh_amounts(draft)


def select_mode(draft: SplitDraft, mode: Mode, receipt: Optional[Receipt] = None) -> SplitDraft:
    previous = draft.mode
    draft = replace(draft, mode=mode)

    if mode == Mode.EQUALLY:
        return replace(draft, per_participant_cents=equal_amounts(draft))

    if mode == Mode.CUSTOM:
        if previous == Mode.EQUALLY:
            return replace(draft, per_participant_cents=(0,) * len(draft.participants))
        return replace(draft, per_participant_cents=tuple(aligned_amounts(draft)))

    if not draft.items_seeded:
        draft = seed_items(draft, receipt)
    return draft


def set_total(draft: SplitDraft, total_cents: int) -> SplitDraft:
    return _refresh_amounts(replace(draft, total_cents=max(0, total_cents)))


def set_breakdown(draft: SplitDraft, fees_text=None, tax_text=None,
                  tip_text=None, discount_text=None) -> SplitDraft:
    """Edit the by-items breakdown fields from user text; None leaves a field alone."""
    changes = {}
    for name, text in (("fees_cents", fees_text), ("tax_cents", tax_text),
                       ("tip_cents", tip_text), ("discount_cents", discount_text)):
        if text is not None:
            changes[name] = parse_to_cents(text)
    return replace(draft, **changes)


# --- Roster ---

def _refresh_amounts(draft: SplitDraft) -> SplitDraft:
    if draft.mode == Mode.EQUALLY:
        return replace(draft, per_participant_cents=equal_amounts(draft))
    if draft.mode == Mode.CUSTOM:
        return clamp_custom_amounts(draft)
    return replace(draft, per_participant_cents=tuple(aligned_amounts(draft)))


def _with_roster(draft: SplitDraft, participants, payer_id: Optional[str] = None) -> SplitDraft:
    """Swap the roster, carrying amounts over by participant id."""
    by_id = dict(zip((p.id for p in draft.participants), aligned_amounts(draft)))
    participants = tuple(participants)
    amounts = tuple(by_id.get(p.id, 0) if p.is_included else 0 for p in participants)
    ids = {p.id for p in participants}
    items = tuple(
        replace(it, assigned_ids=frozenset(it.assigned_ids & ids)) for it in draft.items
    )
    draft = replace(
        draft,
        participants=participants,
        per_participant_cents=amounts,
        items=items,
        payer_id=payer_id or draft.payer_id,
    )
    return _refresh_amounts(draft)


def _fallback_payer(participants) -> Optional[str]:
    me = next((p for p in participants if p.is_me and p.is_included), None)
    if me is not None:
        return me.id
    first = next((p for p in participants if p.is_included), None)
    return first.id if first else None


def add_guest(draft: SplitDraft, name: str = "") -> SplitDraft:
    guest = Participant(id=new_id(), name=name)
    return _with_roster(draft, draft.participants + (guest,))


def remove_guest(draft: SplitDraft, participant_id: str) -> SplitDraft:
    idx = draft.index_of(participant_id)
    if idx is None or draft.participants[idx].is_me:
        return draft
    remaining = [p for p in draft.participants if p.id != participant_id]
    if not any(p.is_included for p in remaining):
        return draft
    payer_id = draft.payer_id
    if payer_id == participant_id:
        payer_id = _fallback_payer(remaining)
    return _with_roster(draft, remaining, payer_id)


def rename_guest(draft: SplitDraft, participant_id: str, name: str) -> SplitDraft:
    participants = [replace(p, name=name) if p.id == participant_id else p
                    for p in draft.participants]
    return replace(draft, participants=tuple(participants))


def toggle_included(draft: SplitDraft, participant_id: str) -> SplitDraft:
    idx = draft.index_of(participant_id)
    if idx is None:
        return draft
    target = draft.participants[idx]
    if target.is_included and len(draft.included) <= 1:
        return draft  # keep at least one

    participants = [replace(p, is_included=not p.is_included) if p.id == participant_id else p
                    for p in draft.participants]
    payer_id = draft.payer_id
    if not any(p.id == payer_id and p.is_included for p in participants):
        payer_id = _fallback_payer(participants)
    return _with_roster(draft, participants, payer_id)


def set_payer(draft: SplitDraft, participant_id: str) -> SplitDraft:
    idx = draft.index_of(participant_id)
    if idx is None:
        return draft
    participants = [replace(p, is_included=True) if p.id == participant_id else p
                    for p in draft.participants]
    return _with_roster(draft, participants, participant_id)


# --- Items ---

def _price_from_text(text) -> Optional[int]:
    if text is None or not str(text).strip():
        return None
    return parse_to_cents(text)


def add_item(draft: SplitDraft, label: str = "", price_text: str = "") -> SplitDraft:
    item = Item(id=new_id(), label=label, price_cents=_price_from_text(price_text))
    return replace(draft, items=draft.items + (item,))


def remove_item(draft: SplitDraft, item_id: str) -> SplitDraft:
    return replace(draft, items=tuple(it for it in draft.items if it.id != item_id))


def edit_item(draft: SplitDraft, item_id: str, label: Optional[str] = None,
              price_text: Optional[str] = None) -> SplitDraft:
    def edited(it: Item) -> Item:
        if it.id != item_id:
            return it
        if label is not None:
            it = replace(it, label=label)
        if price_text is not None:
            it = replace(it, price_cents=_price_from_text(price_text))
        return it

    return replace(draft, items=tuple(edited(it) for it in draft.items))


def toggle_assignment(draft: SplitDraft, item_id: str, participant_id: str) -> SplitDraft:
    """Assign the participant to the item, or unassign them if already there."""
    if draft.index_of(participant_id) is None:
        return draft

    def toggled(it: Item) -> Item:
        if it.id != item_id or not it.is_complete:
            return it
        return replace(it, assigned_ids=it.assigned_ids ^ {participant_id})

    return replace(draft, items=tuple(toggled(it) for it in draft.items))


# --- Finalize ---

def apply_draft(draft: SplitDraft, receipt: Receipt) -> Receipt:
    """
    Fold the finished draft back into the receipt. By items, the receipt's
    items and subtotal come from the assigned rows; otherwise per-item
    responsibility is cleared, the receipt keeps its own breakdown and the
    draft total stands.
    """
    if draft.mode != Mode.BY_ITEMS:
        # the draft breakdown is only filled in once by-items has been opened
        items = tuple(replace(it, responsible_ids=()) for it in receipt.items)
        return replace(receipt, total_cents=draft.total_cents, items=items)

    items = tuple(
        ReceiptItem(
            id=it.id,
            label=it.label,
            price_cents=it.price_cents,
            responsible_ids=tuple(p.id for p in draft.participants if p.id in it.assigned_ids),
        )
        for it in draft.complete_items
    )
    subtotal = sum(it.price_cents for it in items)
    total = max(0, subtotal + draft.fees_cents + draft.tax_cents
                + draft.tip_cents - draft.discount_cents)

    return replace(
        receipt,
        subtotal_cents=subtotal,
        fees_cents=draft.fees_cents,
        tax_cents=draft.tax_cents,
        tip_cents=draft.tip_cents,
        discount_cents=draft.discount_cents,
        total_cents=total,
        items=items,
    )


# --- Events ---

@dataclass(frozen=True)
class SelectMode:
    mode: Mode
    receipt: Optional[Receipt] = None


@dataclass(frozen=True)
class SetTotal:
    total_cents: int


@dataclass(frozen=True)
class AddGuest:
    name: str = ""


@dataclass(frozen=True)
class RemoveGuest:
    participant_id: str


@dataclass(frozen=True)
class RenameGuest:
    participant_id: str
    name: str


@dataclass(frozen=True)
class ToggleIncluded:
    participant_id: str


@dataclass(frozen=True)
class SetPayer:
    participant_id: str


@dataclass(frozen=True)
class SetCustomAmount:
    index: int
    cents: int


@dataclass(frozen=True)
class AddItem:
    label: str = ""
    price_text: str = ""


@dataclass(frozen=True)
class RemoveItem:
    item_id: str


@dataclass(frozen=True)
class EditItem:
    item_id: str
    label: Optional[str] = None
    price_text: Optional[str] = None


@dataclass(frozen=True)
class ToggleAssignment:
    item_id: str
    participant_id: str


@dataclass(frozen=True)
class SetBreakdown:
    fees_text: Optional[str] = None
    tax_text: Optional[str] = None
    tip_text: Optional[str] = None
    discount_text: Optional[str] = None


@dataclass(frozen=True)
class ReseedItems:
    receipt: Receipt


@singledispatch
def apply_event(event, draft: SplitDraft) -> SplitDraft:
    raise TypeError(f"Unknown draft event: {type(event).__name__}")


@apply_event.register
def _(event: SelectMode, draft):
    return select_mode(draft, event.mode, event.receipt)


@apply_event.register
def _(event: SetTotal, draft):
    return set_total(draft, event.total_cents)


@apply_event.register
def _(event: AddGuest, draft):
    return add_guest(draft, event.name)


@apply_event.register
def _(event: RemoveGuest, draft):
    return remove_guest(draft, event.participant_id)


@apply_event.register
def _(event: RenameGuest, draft):
    return rename_guest(draft, event.participant_id, event.name)


@apply_event.register
def _(event: ToggleIncluded, draft):
    return toggle_included(draft, event.participant_id)


@apply_event.register
def _(event: SetPayer, draft):
    return set_payer(draft, event.participant_id)


@apply_event.register
def _(event: SetCustomAmount, draft):
    return set_custom_amount(draft, event.index, event.cents)


@apply_event.register
def _(event: AddItem, draft):
    return add_item(draft, event.label, event.price_text)


@apply_event.register
def _(event: RemoveItem, draft):
    return remove_item(draft, event.item_id)


@apply_event.register
def _(event: EditItem, draft):
    return edit_item(draft, event.item_id, event.label, event.price_text)


@apply_event.register
def _(event: ToggleAssignment, draft):
    return toggle_assignment(draft, event.item_id, event.participant_id)


@apply_event.register
def _(event: SetBreakdown, draft):
    return set_breakdown(draft, event.fees_text, event.tax_text,
                         event.tip_text, event.discount_text)


@apply_event.register
def _(event: ReseedItems, draft):
    return reseed_items(draft, event.receipt)


def transition(draft: SplitDraft, event) -> SplitDraft:
    """(old draft, event) -> new draft."""
    return apply_event(event, draft)

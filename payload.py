# payload.py
"""
Shareable split summary carried in a message URL.

The payload is compact JSON, base64url-encoded without padding, stored in the
`payload` query parameter. Decoding never raises: anything missing, empty or
malformed comes back as None.
"""
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from models import Mode, Receipt, SplitDraft
from money import format_cents, percent_text
from split_calc import owed_cents

log = structlog.get_logger()

PAYLOAD_KEY = "payload"
PAYLOAD_VERSION = 1


@dataclass(frozen=True)
class ReceiptItemPayload:
    id: str
    label: str
    price_cents: int
    responsible_slots: Tuple[int, ...] = ()


@dataclass(frozen=True)
class ReceiptPayload:
    id: str
    title: str
    created_at_epoch: float
    subtotal_cents: int
    fees_cents: int
    tax_cents: int
    tip_cents: int
    discount_cents: int
    total_cents: int
    items: Tuple[ReceiptItemPayload, ...] = ()


@dataclass(frozen=True)
class GuestPayload:
    name: str
    included: bool
    is_me: bool


@dataclass(frozen=True)
class SplitItemPayload:
    label: str
    price_cents: int
    assigned_slots: Tuple[int, ...] = ()


@dataclass(frozen=True)
class SplitPayload:
    mode: Mode
    guests: Tuple[GuestPayload, ...]
    payer_index: int
    # one entry per guest; excluded guests owe 0
    owed_cents: Tuple[int, ...]
    items: Tuple[SplitItemPayload, ...]
    fees_cents: int
    tax_cents: int
    tip_cents: int
    discount_cents: int
    total_cents: int


@dataclass(frozen=True)
class MessagePayload:
    receipt: ReceiptPayload
    split: SplitPayload
    v: int = field(default=PAYLOAD_VERSION)


# --- Build ---

def build_payload(receipt: Receipt, draft: SplitDraft, owed: Optional[List[int]] = None) -> MessagePayload:
    """Snapshot a finalized receipt and its draft. Assignments become roster slot indices."""
    slot = {p.id: i for i, p in enumerate(draft.participants)}
    owed = list(owed) if owed is not None else owed_cents(draft)

    def slots(ids) -> Tuple[int, ...]:
        return tuple(sorted(slot[i] for i in ids if i in slot))

    receipt_payload = ReceiptPayload(
        id=receipt.id,
        title=receipt.title,
        created_at_epoch=receipt.created_at.timestamp() if receipt.created_at else 0.0,
        subtotal_cents=receipt.subtotal_cents,
        fees_cents=receipt.fees_cents,
        tax_cents=receipt.tax_cents,
        tip_cents=receipt.tip_cents,
        discount_cents=receipt.discount_cents,
        total_cents=receipt.total_cents,
        items=tuple(ReceiptItemPayload(it.id, it.label, it.price_cents, slots(it.responsible_ids))
                    for it in receipt.items),
    )
    split_payload = SplitPayload(
        mode=draft.mode,
        guests=tuple(GuestPayload(p.name, p.is_included, p.is_me) for p in draft.participants),
        payer_index=slot.get(draft.payer_id, 0),
        owed_cents=tuple(owed),
        items=tuple(SplitItemPayload(it.label, it.price_cents, slots(it.assigned_ids))
                    for it in draft.complete_items),
        fees_cents=draft.fees_cents,
        tax_cents=draft.tax_cents,
        tip_cents=draft.tip_cents,
        discount_cents=draft.discount_cents,
        total_cents=receipt.total_cents,
    )
    return MessagePayload(receipt=receipt_payload, split=split_payload)


# --- Wire format ---

def payload_to_dict(p: MessagePayload) -> dict:
    r, s = p.receipt, p.split
    return {
        "v": p.v,
        "receipt": {
            "id": r.id,
            "title": r.title,
            "createdAtEpoch": r.created_at_epoch,
            "subtotalCents": r.subtotal_cents,
            "feesCents": r.fees_cents,
            "taxCents": r.tax_cents,
            "tipCents": r.tip_cents,
            "discountCents": r.discount_cents,
            "totalCents": r.total_cents,
            "items": [
                {"id": it.id, "label": it.label, "priceCents": it.price_cents,
                 "responsibleSlots": list(it.responsible_slots)}
                for it in r.items
            ],
        },
        "split": {
            "mode": s.mode.value,
            "guests": [{"name": g.name, "included": g.included, "isMe": g.is_me} for g in s.guests],
            "payerIndex": s.payer_index,
            "owedCents": list(s.owed_cents),
            "items": [
                {"label": it.label, "priceCents": it.price_cents,
                 "assignedSlots": list(it.assigned_slots)}
                for it in s.items
            ],
            "feesCents": s.fees_cents,
            "taxCents": s.tax_cents,
            "tipCents": s.tip_cents,
            "discountCents": s.discount_cents,
            "totalCents": s.total_cents,
        },
    }


def _int(x) -> int:
    if isinstance(x, bool) or not isinstance(x, int):
        raise TypeError(f"expected int, got {type(x).__name__}")
    return x


def _ints(xs) -> Tuple[int, ...]:
    return tuple(_int(x) for x in xs)


def _epoch(x) -> float:
    if isinstance(x, bool) or not isinstance(x, (int, float)):
        raise TypeError(f"expected number, got {type(x).__name__}")
    return float(x)


def _str(x) -> str:
    if not isinstance(x, str):
        raise TypeError(f"expected str, got {type(x).__name__}")
    return x


def dict_to_payload(d: dict) -> MessagePayload:
    """Strict inverse of payload_to_dict; raises on anything structurally off."""
    r, s = d["receipt"], d["split"]
    receipt = ReceiptPayload(
        id=_str(r["id"]),
        title=_str(r["title"]),
        created_at_epoch=_epoch(r["createdAtEpoch"]),
        subtotal_cents=_int(r["subtotalCents"]),
        fees_cents=_int(r["feesCents"]),
        tax_cents=_int(r["taxCents"]),
        tip_cents=_int(r["tipCents"]),
        discount_cents=_int(r["discountCents"]),
        total_cents=_int(r["totalCents"]),
        items=tuple(
            ReceiptItemPayload(_str(it["id"]), _str(it["label"]), _int(it["priceCents"]),
                               _ints(it["responsibleSlots"]))
            for it in r["items"]
        ),
    )
    split = SplitPayload(
        mode=Mode(s["mode"]),
        guests=tuple(GuestPayload(_str(g["name"]), bool(g["included"]), bool(g["isMe"]))
                     for g in s["guests"]),
        payer_index=_int(s["payerIndex"]),
        owed_cents=_ints(s["owedCents"]),
        items=tuple(
            SplitItemPayload(_str(it["label"]), _int(it["priceCents"]), _ints(it["assignedSlots"]))
            for it in s["items"]
        ),
        fees_cents=_int(s["feesCents"]),
        tax_cents=_int(s["taxCents"]),
        tip_cents=_int(s["tipCents"]),
        discount_cents=_int(s["discountCents"]),
        total_cents=_int(s["totalCents"]),
    )
    return MessagePayload(receipt=receipt, split=split, v=_int(d.get("v", PAYLOAD_VERSION)))


def encode_payload(payload: MessagePayload) -> str:
    raw = json.dumps(payload_to_dict(payload), separators=(",", ":"), ensure_ascii=False)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_payload(value: Optional[str]) -> Optional[MessagePayload]:
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        data = base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
        payload = dict_to_payload(json.loads(data.decode("utf-8")))
    except (binascii.Error, ValueError, KeyError, TypeError, AttributeError,
            OverflowError, RecursionError) as e:
        log.info("payload_decode_failed", error=str(e))
        return None
    return payload


def payload_from_url(url: Optional[str]) -> Optional[MessagePayload]:
    if not url:
        return None
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key == PAYLOAD_KEY:
            return decode_payload(value)
    return None


def write_payload_into_url(url: str, payload: MessagePayload) -> str:
    """Set (or replace) the payload query parameter, keeping other parameters."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != PAYLOAD_KEY]
    query.append((PAYLOAD_KEY, encode_payload(payload)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# --- Summary view ---

def guest_display_name(payload: MessagePayload, index: int, my_name: str = "") -> str:
    g = payload.split.guests[index]
    if g.name.strip():
        return g.name.strip()
    if g.is_me:
        return my_name.strip() or "Me"
    return f"Guest {index + 1}"


def summary_lines(payload: MessagePayload, my_name: str = "") -> List[str]:
    """One line per included guest: name, owed amount and share of the total."""
    s = payload.split
    total = max(0, s.total_cents)
    lines = []
    for i, g in enumerate(s.guests):
        if not g.included:
            continue
        owed = max(0, s.owed_cents[i]) if i < len(s.owed_cents) else 0
        marker = " (paid)" if i == s.payer_index else ""
        lines.append(f"{guest_display_name(payload, i, my_name)}{marker}: "
                     f"{format_cents(owed)} ({percent_text(owed, total)})")
    return lines

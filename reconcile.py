# reconcile.py
"""
Best-effort totals for an extracted receipt.

Nothing here rewrites the model's line items to make them add up: any
mismatch is reported as an issue string and the best available numbers are
used as-is.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from models import ParsedItem, ParsedReceipt, Receipt, ReceiptItem, new_id
from money import format_cents


def _nn(x: Optional[int]) -> int:
    return max(0, x or 0)


def breakdown_defaults(parsed: ParsedReceipt) -> Tuple[int, int, int, int]:
    """(fees, tax, tip, discount), missing fields as 0, never negative."""
    return (
        _nn(parsed.fees_cents),
        _nn(parsed.tax_cents),
        _nn(parsed.tip_cents),
        _nn(parsed.discount_cents),
    )


def best_total(parsed: ParsedReceipt) -> int:
    if parsed.total_cents is not None:
        return max(0, parsed.total_cents)
    fees, tax, tip, discount = breakdown_defaults(parsed)
    return max(0, _nn(parsed.subtotal_cents) + tax + fees + tip - discount)


def best_subtotal(parsed: ParsedReceipt) -> int:
    if parsed.subtotal_cents is not None:
        return max(0, parsed.subtotal_cents)
    fees, tax, tip, discount = breakdown_defaults(parsed)
    return max(0, best_total(parsed) - tax - fees - tip + discount)


def item_cents(item: ParsedItem) -> int:
    return _nn(item.cents)


def items_sum(parsed: ParsedReceipt) -> int:
    return sum(item_cents(it) for it in parsed.items)


def reconcile_issues(parsed: ParsedReceipt) -> List[str]:
    """The model's own issues followed by any arithmetic mismatches we can see."""
    issues = [i for i in parsed.issues if i and i.strip()]

    if parsed.total_cents is None:
        issues.append("Total missing from receipt; derived from the breakdown.")

    if parsed.items:
        summed = items_sum(parsed)
        subtotal = best_subtotal(parsed)
        if summed != subtotal:
            issues.append(
                f"Items add up to {format_cents(summed)} but the subtotal is {format_cents(subtotal)}."
            )

    if parsed.total_cents is not None and parsed.subtotal_cents is not None:
        fees, tax, tip, discount = breakdown_defaults(parsed)
        computed = max(0, _nn(parsed.subtotal_cents) + fees + tax + tip - discount)
        if computed != parsed.total_cents:
            issues.append(
                f"Subtotal, tax, fees, tip and discount add up to {format_cents(computed)} "
                f"but the total is {format_cents(parsed.total_cents)}."
            )
    return issues


def merge_phases(merchant: Optional[str], total_cents: Optional[int],
                 phase2: Optional[ParsedReceipt]) -> ParsedReceipt:
    """
    Combine the fast headline (merchant + total) with the detailed result.
    A missing phase 2 keeps the headline and leaves the items empty.
    """
    if phase2 is None:
        return ParsedReceipt(merchant=merchant, total_cents=total_cents)
    return ParsedReceipt(
        merchant=merchant or phase2.merchant,
        total_cents=total_cents if total_cents is not None else phase2.total_cents,
        subtotal_cents=phase2.subtotal_cents,
        tax_cents=phase2.tax_cents,
        fees_cents=phase2.fees_cents,
        tip_cents=phase2.tip_cents,
        discount_cents=phase2.discount_cents,
        items=phase2.items,
        issues=phase2.issues,
        created_at_iso=phase2.created_at_iso,
        currency=phase2.currency,
    )


def display_title(parsed: ParsedReceipt, fallback: str = "New Receipt") -> str:
    merchant = (parsed.merchant or "").strip()
    return merchant or fallback


def to_receipt(parsed: ParsedReceipt, fallback_title: str = "New Receipt",
               now: Optional[datetime] = None) -> Receipt:
    fees, tax, tip, discount = breakdown_defaults(parsed)
    items = tuple(
        ReceiptItem(id=new_id(), label=it.label.strip(), price_cents=item_cents(it))
        for it in parsed.items
        if it.label and it.label.strip()
    )
    return Receipt(
        id=new_id(),
        title=display_title(parsed, fallback_title),
        created_at=now or datetime.now(),
        subtotal_cents=best_subtotal(parsed),
        fees_cents=fees,
        tax_cents=tax,
        tip_cents=tip,
        discount_cents=discount,
        total_cents=best_total(parsed),
        items=items,
    )

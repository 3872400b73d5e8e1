# split_calc.py
import math
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from models import Mode, Receipt, SplitDraft, new_id
from money import parse_to_cents

DEFAULT_TIP_PERCENT = 15


class ExtrasPolicy(str, Enum):
    PRORATE = "prorate"
    PAYER = "payer"


class UnassignedPolicy(str, Enum):
    SPLIT_EQUALLY = "split_equally"
    PAYER = "payer"
    EXCLUDE = "exclude"


def _round_half_up(x) -> int:
    return int(Decimal(str(x)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# --- Equal split ---

def equal_split_cents(total: int, count: int) -> List[int]:
    """
    Split total into count near-equal shares that sum exactly to total.
    The first (total % count) slots absorb the extra cent.
    """
    if count <= 0:
        return []
    if total <= 0:
        return [0] * count
    base = total // count
    out = [base] * count
    for i in range(total - base * count):
        out[i] += 1
    return out


def split_item_cents(price: int, assignees: int) -> List[int]:
    """An item's price split evenly among its assignees, remainder to the first ones."""
    return equal_split_cents(price, assignees)


def prorate_cents(amount: int, weights: Sequence[int]) -> List[int]:
    """
    Distribute amount (may be negative) proportionally to weights using the
    largest-remainder method. Ties go to the earlier slot. With no weight at
    all the amount is split equally.
    """
    n = len(weights)
    if n == 0:
        return []
    total_w = sum(weights)
    if total_w <= 0:
        return equal_split_cents(amount, n) if amount >= 0 else [0] * n

    sign = -1 if amount < 0 else 1
    a = abs(amount)
    exact = [a * w for w in weights]
    base = [e // total_w for e in exact]
    rema = [e % total_w for e in exact]
    leftover = a - sum(base)
    order = sorted(range(n), key=lambda i: (-rema[i], i))
    for i in order[:leftover]:
        base[i] += 1
    return [sign * b for b in base]


def _included_indices(draft: SplitDraft) -> List[int]:
    return [i for i, p in enumerate(draft.participants) if p.is_included]


def aligned_amounts(draft: SplitDraft) -> List[int]:
    """per_participant_cents padded/trimmed to the roster length."""
    n = len(draft.participants)
    amounts = list(draft.per_participant_cents[:n])
    amounts += [0] * (n - len(amounts))
    return amounts


def equal_amounts(draft: SplitDraft) -> Tuple[int, ...]:
    """Equal split of the draft total over included participants, aligned with the roster."""
    out = [0] * len(draft.participants)
    idxs = _included_indices(draft)
    for i, share in zip(idxs, equal_split_cents(draft.total_cents, len(idxs))):
        out[i] = share
    return tuple(out)


# --- Custom amounts ---

def remaining_capacity(amounts: Sequence[int], total: int, index: int) -> int:
    """What participant `index` may hold without the sum exceeding total."""
    current = amounts[index] if 0 <= index < len(amounts) else 0
    return max(0, total - (sum(amounts) - current))


def unallocated_cents(draft: SplitDraft) -> int:
    return max(0, draft.total_cents - sum(aligned_amounts(draft)))


def set_custom_amount(draft: SplitDraft, index: int, cents: int) -> SplitDraft:
    """
    Set one participant's custom amount, clamped to [0, remaining capacity].
    Excluded participants are pinned to 0; an unknown index changes nothing.
    """
    if not 0 <= index < len(draft.participants):
        return draft
    amounts = aligned_amounts(draft)
    if not draft.participants[index].is_included:
        value = 0
    else:
        value = min(max(int(cents), 0), remaining_capacity(amounts, draft.total_cents, index))
    amounts[index] = value
    return replace(draft, per_participant_cents=tuple(amounts))


def clamp_custom_amounts(draft: SplitDraft) -> SplitDraft:
    """Re-apply the sum <= total bound in roster order after roster/total changes."""
    amounts = aligned_amounts(draft)
    room = max(0, draft.total_cents)
    out = []
    for p, cents in zip(draft.participants, amounts):
        value = min(max(cents, 0), room) if p.is_included else 0
        room -= value
        out.append(value)
    return replace(draft, per_participant_cents=tuple(out))


def ring_segments(amounts: Sequence[int], total: int) -> List[Tuple[float, float]]:
    """(start, end) fractions of the allocation ring per slot."""
    if total <= 0:
        return [(0.0, 0.0) for _ in amounts]
    out = []
    running = 0
    for cents in amounts:
        out.append((running / total, (running + cents) / total))
        running += cents
    return out


def angle_to_fraction(angle: float) -> float:
    """Angle in radians (0 at the top of the ring, clockwise) to a fraction in [0, 1)."""
    return (angle % (2 * math.pi)) / (2 * math.pi)


@dataclass
class DialDrag:
    """
    Transient state of an in-progress drag on the allocation ring.

    The end position accumulates wrapped deltas *before* clamping, so several
    full turns compose instead of snapping back at the 0/1 seam.
    """
    index: int
    last_raw_frac: float
    end_frac_unwrapped: float

    @classmethod
    def begin(cls, draft: SplitDraft, index: int, angle: float) -> "DialDrag":
        amounts = aligned_amounts(draft)
        total = draft.total_cents
        end = sum(amounts[:index + 1]) / total if total > 0 else 0.0
        return cls(index=index, last_raw_frac=angle_to_fraction(angle), end_frac_unwrapped=end)

    def move(self, draft: SplitDraft, angle: float) -> SplitDraft:
        total = draft.total_cents
        if total <= 0 or not 0 <= self.index < len(draft.participants):
            return draft

        raw = angle_to_fraction(angle)
        delta = raw - self.last_raw_frac
        if delta > 0.5:
            delta -= 1
        elif delta < -0.5:
            delta += 1
        self.last_raw_frac = raw
        self.end_frac_unwrapped += delta

        amounts = aligned_amounts(draft)
        start = sum(amounts[:self.index]) / total
        capacity = remaining_capacity(amounts, total, self.index)
        end = min(max(self.end_frac_unwrapped, start), start + capacity / total)

        cents = _round_half_up((end - start) * total)
        cents = min(max(cents, 0), capacity)
        return set_custom_amount(draft, self.index, cents)


# --- By items ---

def items_subtotal(draft: SplitDraft) -> int:
    return sum(it.price_cents for it in draft.complete_items)


def _assignee_indices(draft: SplitDraft, item) -> List[int]:
    return [i for i, p in enumerate(draft.participants)
            if p.is_included and p.id in item.assigned_ids]


def item_shares(draft: SplitDraft) -> List[int]:
    """Per-participant item subtotal, aligned with the roster."""
    shares = [0] * len(draft.participants)
    for it in draft.complete_items:
        idxs = _assignee_indices(draft, it)
        for i, cents in zip(idxs, split_item_cents(it.price_cents, len(idxs))):
            shares[i] += cents
    return shares


def unassigned_cents(draft: SplitDraft) -> int:
    return sum(it.price_cents for it in draft.complete_items
               if not _assignee_indices(draft, it))


def net_extras_cents(draft: SplitDraft) -> int:
    return draft.fees_cents + draft.tax_cents + draft.tip_cents - draft.discount_cents


def by_items_owed(draft: SplitDraft,
                  extras: ExtrasPolicy = ExtrasPolicy.PRORATE,
                  unassigned: UnassignedPolicy = UnassignedPolicy.SPLIT_EQUALLY) -> List[int]:
    """
    Owed cents per participant in by-items mode.

    Unassigned items and the net of fees/tax/tip/discount are handed out
    according to the given policies. Unless unassigned items are excluded,
    the result sums exactly to max(0, items + fees + tax + tip - discount).
    """
    shares = item_shares(draft)
    idxs = _included_indices(draft)
    payer = draft.index_of(draft.payer_id)

    loose = unassigned_cents(draft)
    if unassigned == UnassignedPolicy.SPLIT_EQUALLY:
        for i, cents in zip(idxs, equal_split_cents(loose, len(idxs))):
            shares[i] += cents
    elif unassigned == UnassignedPolicy.PAYER and payer is not None:
        shares[payer] += loose

    base = sum(shares)
    delta = max(0, base + net_extras_cents(draft)) - base
    if not idxs or delta == 0:
        return shares

    if extras == ExtrasPolicy.PAYER and payer is not None:
        shares[payer] += delta
        if shares[payer] < 0:
            # discount larger than the payer's share spills over to the others
            overflow, shares[payer] = shares[payer], 0
            delta = overflow
        else:
            return shares

    weights = [shares[i] for i in idxs]
    for i, adj in zip(idxs, prorate_cents(delta, weights)):
        shares[i] += adj
    return shares


def owed_cents(draft: SplitDraft,
               extras: ExtrasPolicy = ExtrasPolicy.PRORATE,
               unassigned: UnassignedPolicy = UnassignedPolicy.SPLIT_EQUALLY) -> List[int]:
    if draft.mode == Mode.EQUALLY:
        return list(equal_amounts(draft))
    if draft.mode == Mode.CUSTOM:
        return aligned_amounts(draft)
    return by_items_owed(draft, extras=extras, unassigned=unassigned)


# --- Tip ---

def tip_cents(subtotal: int, percent=DEFAULT_TIP_PERCENT) -> int:
    pct = min(max(Decimal(str(percent)), Decimal("0")), Decimal("100"))
    return _round_half_up(Decimal(max(0, subtotal)) * pct / Decimal("100"))


def with_tip(subtotal: int, percent=DEFAULT_TIP_PERCENT) -> Tuple[int, int]:
    """(tip, new total) for the tip screen."""
    tip = tip_cents(subtotal, percent)
    return tip, max(0, subtotal) + tip


def manual_receipt(title: str, amount_text: str, tip_text: str = "",
                   now: Optional[datetime] = None) -> Receipt:
    """Receipt from the manual-entry flow: a subtotal plus tip, nothing else."""
    subtotal = parse_to_cents(amount_text)
    tip = parse_to_cents(tip_text)
    return Receipt(
        id=new_id(),
        title=title.strip() or "New Receipt",
        created_at=now or datetime.now(),
        subtotal_cents=subtotal,
        tip_cents=tip,
        total_cents=subtotal + tip,
    )

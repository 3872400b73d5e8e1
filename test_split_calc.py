import math
from dataclasses import replace
from datetime import datetime

import pytest

from draft import (
    add_guest, new_draft, select_mode, set_breakdown, set_payer, set_total, toggle_assignment,
    toggle_included
)
from models import Mode
from split_calc import (
    DialDrag,
    ExtrasPolicy,
    UnassignedPolicy,
    equal_split_cents,
    manual_receipt,
    owed_cents,
    prorate_cents,
    remaining_capacity,
    ring_segments,
    set_custom_amount,
    split_item_cents,
    tip_cents,
    unallocated_cents,
    with_tip,
)


def test_equal_split_first_slots_absorb_remainder():
    assert equal_split_cents(1000, 3) == [334, 333, 333]


def test_equal_split_of_zero():
    assert equal_split_cents(0, 3) == [0, 0, 0]
    assert equal_split_cents(100, 0) == []


@pytest.mark.parametrize("total", [0, 1, 7, 99, 100, 1001, 12345])
@pytest.mark.parametrize("count", range(1, 8))
def test_equal_split_is_exact_and_even(total, count):
    shares = equal_split_cents(total, count)
    assert len(shares) == count
    assert sum(shares) == total
    assert max(shares) - min(shares) <= 1
    assert shares == sorted(shares, reverse=True)


def test_item_split_between_assignees():
    assert split_item_cents(500, 2) == [250, 250]
    assert split_item_cents(500, 3) == [167, 167, 166]


def test_prorate_largest_remainder():
    assert prorate_cents(100, [1, 1, 1]) == [34, 33, 33]
    assert prorate_cents(500, [1200, 800]) == [300, 200]
    assert prorate_cents(-100, [1, 1, 1]) == [-34, -33, -33]


def test_prorate_without_weights_splits_equally():
    assert prorate_cents(10, [0, 0]) == [5, 5]
    assert prorate_cents(7, []) == []


def test_prorate_sums_exactly():
    for amount in (1, 99, 1001, -37):
        assert sum(prorate_cents(amount, [3, 5, 11])) == amount


def test_custom_amount_clamped_to_remaining_capacity(three_way):
    draft = select_mode(three_way, Mode.CUSTOM)
    draft = set_custom_amount(draft, 0, 700)
    draft = set_custom_amount(draft, 1, 500)
    assert draft.per_participant_cents == (700, 300, 0)
    assert unallocated_cents(draft) == 0


def test_custom_amount_ignores_negative_and_unknown_index(three_way):
    draft = select_mode(three_way, Mode.CUSTOM)
    assert set_custom_amount(draft, 0, -50).per_participant_cents == (0, 0, 0)
    assert set_custom_amount(draft, 9, 100) is draft


def test_remaining_capacity():
    assert remaining_capacity([700, 0, 0], 1000, 1) == 300
    assert remaining_capacity([700, 300, 0], 1000, 0) == 700


def test_ring_segments():
    assert ring_segments([250, 750], 1000) == [(0.0, 0.25), (0.25, 1.0)]
    assert ring_segments([0, 0], 0) == [(0.0, 0.0), (0.0, 0.0)]


def test_dial_drag_accumulates_across_the_seam():
    draft = select_mode(new_draft(1000, participant_count=2), Mode.CUSTOM)
    drag = DialDrag.begin(draft, 0, 0.0)

    draft = drag.move(draft, math.pi / 2)
    assert draft.per_participant_cents[0] == 250
    draft = drag.move(draft, math.pi)
    draft = drag.move(draft, 3 * math.pi / 2)
    assert draft.per_participant_cents[0] == 750

    # crossing 12 o'clock keeps going forward instead of snapping back to zero
    draft = drag.move(draft, 0.0)
    assert draft.per_participant_cents[0] == 1000
    draft = drag.move(draft, math.pi / 2)
    assert draft.per_participant_cents[0] == 1000

    draft = drag.move(draft, 0.0)
    draft = drag.move(draft, 3 * math.pi / 2)
    assert draft.per_participant_cents[0] == 750


def _lunch_by_items(receipt, assign_fries=True):
    draft = select_mode(new_draft(receipt.total_cents, participant_count=2), Mode.BY_ITEMS, receipt)
    me, bob = draft.participants
    burger, fries = draft.items
    draft = toggle_assignment(draft, burger.id, me.id)
    if assign_fries:
        draft = toggle_assignment(draft, fries.id, bob.id)
    return draft


def test_by_items_prorates_extras(lunch_receipt):
    draft = _lunch_by_items(lunch_receipt)
    assert owed_cents(draft) == [1500, 1000]


def test_by_items_unassigned_policies(lunch_receipt):
    draft = _lunch_by_items(lunch_receipt, assign_fries=False)
    assert owed_cents(draft) == [2000, 500]
    assert owed_cents(draft, unassigned=UnassignedPolicy.EXCLUDE) == [1700, 0]
    assert owed_cents(draft, unassigned=UnassignedPolicy.PAYER) == [2500, 0]


def test_by_items_extras_to_payer(lunch_receipt):
    draft = _lunch_by_items(lunch_receipt)
    assert owed_cents(draft, extras=ExtrasPolicy.PAYER) == [1700, 800]


def test_discount_beyond_payer_share_spills_to_others(lunch_receipt):
    draft = _lunch_by_items(lunch_receipt)
    draft = set_breakdown(draft, fees_text="0", tax_text="0", tip_text="0", discount_text="10")
    draft = set_payer(draft, draft.participants[1].id)
    assert owed_cents(draft, extras=ExtrasPolicy.PAYER) == [1000, 0]


def test_discount_never_makes_owed_negative(lunch_receipt):
    draft = _lunch_by_items(lunch_receipt)
    draft = set_breakdown(draft, discount_text="50")
    assert owed_cents(draft) == [0, 0]


def test_owed_in_equal_and_custom_modes(three_way):
    assert owed_cents(three_way) == [334, 333, 333]
    custom = replace(select_mode(three_way, Mode.CUSTOM), per_participant_cents=(100, 200))
    assert owed_cents(custom) == [100, 200, 0]


def test_tip_rounds_half_up():
    assert tip_cents(2000) == 300
    assert tip_cents(1001, 15) == 150
    assert tip_cents(1010, 15) == 152
    assert tip_cents(100, 150) == 100
    assert with_tip(2000, 18) == (360, 2360)


def test_manual_receipt():
    now = datetime(2025, 3, 1)
    receipt = manual_receipt("  ", "42.50", "5", now=now)
    assert receipt.title == "New Receipt"
    assert receipt.subtotal_cents == 4250
    assert receipt.tip_cents == 500
    assert receipt.total_cents == 4750
    assert receipt.created_at == now


def test_custom_amounts_never_exceed_total_while_editing():
    """Every edit in a long custom-mode session keeps the shares within the bill."""
    draft = select_mode(new_draft(1000, participant_count=4), Mode.CUSTOM)

    def checked(d):
        assert all(c >= 0 for c in d.per_participant_cents)
        assert sum(d.per_participant_cents) <= d.total_cents
        return d

    draft = checked(set_custom_amount(draft, 0, 400))
    draft = checked(set_custom_amount(draft, 1, 400))
    draft = checked(set_custom_amount(draft, 3, 300))
    assert draft.per_participant_cents[3] == 200

    drag = DialDrag.begin(draft, 2, 0.0)
    for angle in (math.pi / 2, math.pi, 3 * math.pi / 2, 0.0, math.pi / 2):
        draft = checked(drag.move(draft, angle))
    assert draft.per_participant_cents[2] == 0

    draft = checked(add_guest(draft, "Eve"))
    draft = checked(set_custom_amount(draft, 4, 999))
    draft = checked(toggle_included(draft, draft.participants[1].id))
    assert draft.per_participant_cents[1] == 0
    draft = checked(set_custom_amount(draft, 4, 999))
    draft = checked(set_total(draft, 500))
    draft = checked(set_total(draft, 1500))

    drag = DialDrag.begin(draft, 2, 0.0)
    for angle in (math.pi, 0.0, math.pi, 0.0):
        draft = checked(drag.move(draft, angle))
    draft = checked(toggle_included(draft, draft.participants[1].id))
    draft = checked(set_custom_amount(draft, 1, 10 ** 6))
    assert sum(draft.per_participant_cents) == draft.total_cents

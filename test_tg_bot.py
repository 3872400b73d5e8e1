import asyncio
from concurrent.futures import Future
from dataclasses import replace

from draft import add_item, new_draft, select_mode, toggle_assignment, toggle_included
from models import Mode, ParsedItem, ParsedReceipt
from scan_session import READY
from split_calc import manual_receipt
from tg_bot import (
    _await_items,
    apply_tip_percent,
    find_guest,
    item_keyboard,
    merge_scanned,
    mode_keyboard,
    parse_percent,
    roster_from_names,
    split_text,
)


def test_find_guest_by_number_or_name(three_way):
    draft = roster_from_names(three_way, ["Alice", "Bob"])
    assert find_guest(draft, "2") == 1
    assert find_guest(draft, "bob") == 2
    assert find_guest(draft, "Me") == 0
    assert find_guest(draft, "9") is None
    assert find_guest(draft, "Zed") is None


def test_roster_from_names_keeps_me(three_way):
    draft = roster_from_names(three_way, ["Alice", "Bob", "Cara"])
    assert draft.participants[0].id == three_way.participants[0].id
    assert [p.name for p in draft.participants[1:]] == ["Alice", "Bob", "Cara"]
    assert draft.per_participant_cents == (250, 250, 250, 250)


def test_parse_percent():
    assert parse_percent("18") == 18.0
    assert parse_percent("20%") == 20.0
    assert parse_percent("lots") == 15


def test_apply_tip_percent():
    receipt = manual_receipt("Dinner", "40")
    draft = new_draft(receipt.total_cents, participant_count=2, receipt=receipt)
    receipt, draft = apply_tip_percent(receipt, draft, 20)

    assert receipt.tip_cents == 800
    assert receipt.total_cents == 4800
    assert draft.total_cents == 4800
    assert draft.per_participant_cents == (2400, 2400)


def test_split_text_marks_payer_and_excluded(lunch_receipt, three_way):
    draft = toggle_included(three_way, three_way.participants[2].id)
    text = split_text(draft, lunch_receipt)
    assert "1. Me 💳: $5.00" in text
    assert "3. Guest 3 (out): $0.00" in text


def test_split_text_warns_about_unallocated(lunch_receipt, three_way):
    text = split_text(replace(select_mode(three_way, Mode.CUSTOM), per_participant_cents=(400,)), lunch_receipt)
    assert "$6.00 not allocated yet." in text


def test_mode_keyboard_marks_current():
    buttons = mode_keyboard(Mode.CUSTOM).inline_keyboard[0]
    assert [b.callback_data for b in buttons] == ["mode|equally", "mode|byItems", "mode|custom"]
    assert buttons[2].text == "• Custom Amounts"


def test_item_keyboard_checks_assigned_items(three_way):
    draft = add_item(add_item(three_way, "Soda", "2"), "Salad", "")
    me = draft.participants[0]
    draft = toggle_assignment(draft, draft.items[0].id, me.id)
    rows = item_keyboard(draft, 0).inline_keyboard

    labels = [row[0].text for row in rows[1:-1]]
    assert labels == ["✅ Soda ($2.00)"]
    assert rows[-1][0].callback_data == "modes"


SCANNED = ParsedReceipt(
    merchant="Cafe", total_cents=2000, subtotal_cents=2000,
    items=(ParsedItem("Pasta", cents=1200), ParsedItem("Wine", cents=800)),
)


def _chat_with_tip(mocker, percent=10):
    receipt = manual_receipt("Cafe", "20")
    draft = new_draft(receipt.total_cents, participant_count=2, receipt=receipt)
    receipt, draft = apply_tip_percent(receipt, draft, percent)
    context = mocker.Mock()
    context.chat_data = {"receipt": receipt, "draft": draft, "guest_index": 0, "tip_percent": percent}
    context.bot.send_message = mocker.AsyncMock()
    return context


def _finished_scan(mocker):
    future = Future()
    future.set_result(SCANNED)
    session = mocker.Mock(status=READY, phase2_future=future)
    session.snapshot.return_value = SCANNED
    return session, future


def test_items_arriving_late_keep_the_tip(mocker):
    context = _chat_with_tip(mocker)
    before = context.chat_data["receipt"]
    session, future = _finished_scan(mocker)

    asyncio.run(_await_items(context, 42, session, future))

    receipt, draft = context.chat_data["receipt"], context.chat_data["draft"]
    assert receipt.id == before.id
    assert [it.label for it in receipt.items] == ["Pasta", "Wine"]
    assert receipt.tip_cents == 200
    assert receipt.total_cents == 2200
    assert draft.tip_cents == 200
    assert draft.total_cents == receipt.total_cents
    assert draft.per_participant_cents == (1100, 1100)
    context.bot.send_message.assert_awaited_once()
    assert "Found 2 items" in context.bot.send_message.await_args.args[1]


def test_stale_scan_result_is_dropped(mocker):
    context = _chat_with_tip(mocker)
    before = dict(context.chat_data)
    session, future = _finished_scan(mocker)
    session.phase2_future = Future()

    asyncio.run(_await_items(context, 42, session, future))

    assert context.chat_data == before
    context.bot.send_message.assert_not_awaited()


def test_merge_scanned_without_tip_follows_scanned_total():
    receipt = manual_receipt("Cafe", "15")
    draft = new_draft(receipt.total_cents, participant_count=3, receipt=receipt)
    scanned = manual_receipt("CAFE LLC", "21")

    merged, draft = merge_scanned(receipt, draft, scanned)
    assert merged.title == "Cafe"
    assert merged.total_cents == 2100
    assert draft.per_participant_cents == (700, 700, 700)


def test_merge_scanned_reseeds_open_item_list(lunch_receipt):
    draft = select_mode(new_draft(2000, participant_count=2), Mode.BY_ITEMS)
    assert draft.items_seeded and draft.items == ()

    merged, draft = merge_scanned(replace(lunch_receipt, items=()), draft, lunch_receipt, tip_percent=20)
    assert [it.label for it in draft.items] == ["Burger", "Fries"]
    assert merged.tip_cents == 400
    assert draft.tip_cents == 400
    assert draft.total_cents == merged.total_cents == 2600

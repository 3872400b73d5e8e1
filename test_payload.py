import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest

from draft import apply_draft, new_draft, rename_guest, select_mode, set_payer, toggle_assignment, toggle_included
from models import Mode
from payload import (
    build_payload,
    decode_payload,
    encode_payload,
    payload_from_url,
    payload_to_dict,
    summary_lines,
    write_payload_into_url,
)


@pytest.fixture
def by_items(lunch_receipt):
    draft = select_mode(new_draft(2500, participant_count=3, my_name="Sam"), Mode.BY_ITEMS, lunch_receipt)
    me, bob, cara = draft.participants
    draft = rename_guest(draft, bob.id, "Bob")
    draft = toggle_assignment(draft, draft.items[0].id, me.id)
    draft = toggle_assignment(draft, draft.items[1].id, bob.id)
    draft = toggle_assignment(draft, draft.items[1].id, me.id)
    return toggle_included(draft, cara.id)


def test_build_payload_uses_roster_slots(lunch_receipt, by_items):
    payload = build_payload(lunch_receipt, by_items)
    split = payload.split

    assert split.mode == Mode.BY_ITEMS
    assert [g.name for g in split.guests] == ["", "Bob", ""]
    assert [g.included for g in split.guests] == [True, True, False]
    assert split.guests[0].is_me
    assert split.payer_index == 0
    assert [it.assigned_slots for it in split.items] == [(0,), (0, 1)]
    assert sum(split.owed_cents) == 2500
    assert split.owed_cents[2] == 0


def test_wire_format_keys(lunch_receipt, by_items):
    data = payload_to_dict(build_payload(lunch_receipt, by_items))
    assert data["v"] == 1
    assert set(data["receipt"]) == {
        "id", "title", "createdAtEpoch", "subtotalCents", "feesCents", "taxCents",
        "tipCents", "discountCents", "totalCents", "items",
    }
    assert data["split"]["mode"] == "byItems"
    assert data["split"]["guests"][0] == {"name": "", "included": True, "isMe": True}


def test_encode_decode(lunch_receipt, by_items):
    payload = build_payload(lunch_receipt, by_items)
    encoded = encode_payload(payload)

    assert "=" not in encoded
    assert "+" not in encoded and "/" not in encoded
    assert decode_payload(encoded) == payload


@pytest.mark.parametrize("value", [
    None,
    "",
    "   ",
    "!!!",
    base64.urlsafe_b64encode(b"not json").decode(),
    base64.urlsafe_b64encode(b"[1, 2]").decode(),
    base64.urlsafe_b64encode(json.dumps({"receipt": {}, "split": {}}).encode()).decode(),
    base64.urlsafe_b64encode(b"[" * 5000).decode(),
])
def test_decode_rejects_bad_input(value):
    assert decode_payload(value) is None


def test_decode_rejects_wrong_types(lunch_receipt, by_items):
    data = payload_to_dict(build_payload(lunch_receipt, by_items))
    data["receipt"]["totalCents"] = "2500"
    raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    assert decode_payload(raw) is None


def test_decode_rejects_out_of_range_timestamp(lunch_receipt, by_items):
    data = payload_to_dict(build_payload(lunch_receipt, by_items))
    data["receipt"]["createdAtEpoch"] = 10 ** 400
    raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    assert decode_payload(raw) is None


def test_url_round_trip_replaces_existing_payload(lunch_receipt, three_way):
    payload = build_payload(lunch_receipt, three_way)
    url = write_payload_into_url("https://bill.example/loot?session=7&payload=stale", payload)

    query = parse_qs(urlsplit(url).query)
    assert query["session"] == ["7"]
    assert len(query["payload"]) == 1
    assert payload_from_url(url) == payload


def test_payload_from_url_without_payload():
    assert payload_from_url("https://bill.example/loot?session=7") is None
    assert payload_from_url(None) is None


def test_summary_lines(lunch_receipt, three_way):
    draft = set_payer(rename_guest(three_way, three_way.participants[1].id, "Bob"), three_way.participants[1].id)
    draft = toggle_included(draft, draft.participants[2].id)
    lines = summary_lines(build_payload(apply_draft(draft, lunch_receipt), draft), my_name="Sam")

    assert lines == ["Sam: $5.00 (50%)", "Bob (paid): $5.00 (50%)"]

from datetime import datetime

from models import ParsedItem, ParsedReceipt
from reconcile import (
    best_subtotal,
    best_total,
    breakdown_defaults,
    merge_phases,
    reconcile_issues,
    to_receipt,
)


def test_best_total_prefers_stated_total():
    assert best_total(ParsedReceipt(total_cents=999, subtotal_cents=100)) == 999


def test_best_total_from_breakdown():
    parsed = ParsedReceipt(subtotal_cents=1000, tax_cents=100, fees_cents=50,
                           tip_cents=100, discount_cents=20)
    assert best_total(parsed) == 1230


def test_best_total_adds_tax_and_tip_when_total_missing():
    parsed = ParsedReceipt(subtotal_cents=1000, tax_cents=80, tip_cents=150, total_cents=None)
    assert best_total(parsed) == 1230


def test_best_total_never_negative():
    assert best_total(ParsedReceipt(subtotal_cents=100, discount_cents=500)) == 0
    assert best_total(ParsedReceipt(total_cents=-40)) == 0


def test_best_subtotal_backs_out_extras():
    parsed = ParsedReceipt(total_cents=1230, tax_cents=100, fees_cents=50,
                           tip_cents=100, discount_cents=20)
    assert best_subtotal(parsed) == 1000


def test_breakdown_defaults_fill_missing_with_zero():
    assert breakdown_defaults(ParsedReceipt(tax_cents=-3, tip_cents=75)) == (0, 0, 75, 0)


def test_consistent_receipt_has_no_issues():
    parsed = ParsedReceipt(
        total_cents=1100, subtotal_cents=1000, tax_cents=100,
        items=(ParsedItem("Pasta", cents=600), ParsedItem("Wine", cents=400)),
    )
    assert reconcile_issues(parsed) == []


def test_mismatches_are_reported_not_fixed():
    parsed = ParsedReceipt(
        total_cents=1200, subtotal_cents=1000, tax_cents=100,
        items=(ParsedItem("Pasta", cents=600),),
        issues=("blurry bottom half",),
    )
    issues = reconcile_issues(parsed)
    assert issues[0] == "blurry bottom half"
    assert "Items add up to $6.00 but the subtotal is $10.00." in issues
    assert any("but the total is $12.00" in i for i in issues)
    assert parsed.items[0].cents == 600


def test_missing_total_is_flagged():
    issues = reconcile_issues(ParsedReceipt(subtotal_cents=500))
    assert issues == ["Total missing from receipt; derived from the breakdown."]


def test_merge_phases_without_details_keeps_headline():
    merged = merge_phases("Cafe", 1500, None)
    assert merged.merchant == "Cafe"
    assert merged.total_cents == 1500
    assert merged.items == ()


def test_merge_phases_headline_total_wins():
    details = ParsedReceipt(merchant="CAFE LLC", total_cents=1400, tax_cents=100,
                            items=(ParsedItem("Soup", cents=1300),))
    merged = merge_phases("Cafe", 1500, details)
    assert merged.merchant == "Cafe"
    assert merged.total_cents == 1500
    assert merged.tax_cents == 100
    assert len(merged.items) == 1

    assert merge_phases(None, None, details).total_cents == 1400


def test_to_receipt():
    now = datetime(2025, 5, 4)
    parsed = ParsedReceipt(
        merchant="  ", total_cents=1100, tax_cents=100,
        items=(ParsedItem(" Pasta ", cents=1000), ParsedItem("   ", cents=50), ParsedItem("Bread")),
    )
    receipt = to_receipt(parsed, now=now)
    assert receipt.title == "New Receipt"
    assert receipt.created_at == now
    assert [(it.label, it.price_cents) for it in receipt.items] == [("Pasta", 1000), ("Bread", 0)]
    assert receipt.subtotal_cents == 1000
    assert receipt.total_cents == 1100

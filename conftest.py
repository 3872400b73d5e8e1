from datetime import datetime

import pytest

from config import Settings
from draft import new_draft
from models import Receipt, ReceiptItem


@pytest.fixture
def settings():
    return Settings(gemini_api_key="test-key", api_base="https://gemini.test", request_timeout=5.0)


@pytest.fixture
def lunch_receipt():
    """$25.00 lunch: two items, tax and tip, nothing else."""
    return Receipt(
        id="r1",
        title="Corner Cafe",
        created_at=datetime(2025, 1, 1, 12, 30),
        subtotal_cents=2000,
        tax_cents=200,
        tip_cents=300,
        total_cents=2500,
        items=(
            ReceiptItem(id="i1", label="Burger", price_cents=1200),
            ReceiptItem(id="i2", label="Fries", price_cents=800),
        ),
    )


@pytest.fixture
def three_way():
    return new_draft(1000, participant_count=3)

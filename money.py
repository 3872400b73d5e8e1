# money.py
import re


CURRENCY_RE = re.compile(r"USD|SGD|MYR|EUR|GBP|RM|[$€£¥₹]", re.I)


def clean_money(raw) -> str:
    """Strip whitespace, currency codes and symbols, and thousands separators."""
    s = CURRENCY_RE.sub('', str(raw))
    s = s.replace(',', '')
    return s.strip()


def parse_to_cents(text) -> int:
    """
    Parse a user-facing decimal string into integer cents.
    "12" -> 1200, "12.5" -> 1250, "12.345" -> 1234 (truncated, never rounded).
    Invalid input yields 0; the result is never negative.
    """
    if text is None:
        return 0
    s = clean_money(text)
    if not s or s.startswith('-'):
        return 0

    dollars_raw, _, cents_raw = s.partition('.')
    dollars = int(dollars_raw) if re.fullmatch(r'\+?\d+', dollars_raw) else 0

    cents2 = (cents_raw + '00')[:2]
    cents = int(cents2) if re.fullmatch(r'\d{2}', cents2) else 0

    return max(0, dollars * 100 + cents)


def format_cents(cents: int) -> str:
    sign = '-' if cents < 0 else ''
    dollars, rem = divmod(abs(int(cents)), 100)
    return f"{sign}${dollars}.{rem:02d}"


def clamp_cents(value) -> int:
    return max(0, int(value))


def percent_text(part: int, whole: int) -> str:
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.0f}%"

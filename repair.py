# repair.py
"""
Repair pass for text coming back from the vision model.

The model is asked for bare JSON but sometimes wraps it in markdown fences,
leaves a stray quote before the closing brace, or surrounds the object with
prose. Each known pattern is one small function; `repair_json` applies them
in order and `loads_lenient` never raises.
"""
import json
import re
from typing import Optional

FENCE_RE = re.compile(r"```(?:json|JSON)?")


def strip_code_fences(text: str) -> str:
    return FENCE_RE.sub("", text).strip()


def fix_trailing_quote(text: str) -> str:
    # '{"merchant":"Cafe","total_cents":100"}' -> '...100}'
    if text.endswith('"}') and not text.endswith('""}'):
        try:
            json.loads(text)
            return text
        except ValueError:
            return text[:-2] + "}"
    return text


KNOWN_REPAIRS = (
    str.strip,
    strip_code_fences,
    fix_trailing_quote,
)


def repair_json(text: str) -> str:
    for fix in KNOWN_REPAIRS:
        text = fix(text)
    return text


def extract_first_json_object(text: str) -> Optional[str]:
    """The first balanced {...} in text, ignoring braces inside strings."""
    cleaned = strip_code_fences(text)
    start = cleaned.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(cleaned)):
        ch = cleaned[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start:i + 1]
    return None


def loads_lenient(text: Optional[str]) -> Optional[dict]:
    """Strict decode of the repaired text, then of the first embedded object."""
    if not text or not text.strip():
        return None
    for candidate in (repair_json(text), extract_first_json_object(text)):
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None

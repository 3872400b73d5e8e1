# ai_parser.py
import base64
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests
import structlog

from config import Settings
from models import ParsedItem, ParsedReceipt
from repair import loads_lenient, strip_code_fences
from utils import preview

log = structlog.get_logger()

SINGLE_SHOT_PROMPT = """
Extract receipt data into ONE minified JSON object.

REQUIRED fields: merchant, total_cents, items, issues
OPTIONAL fields: subtotal_cents, tax_cents, tip_cents, fees_cents, discount_cents
EXAMPLE: {"merchant":"Store","total_cents":1500,"items":[{"label":"Item","qty":1,"cents":500}],"issues":[]}

Rules:
- Include EVERY line item that has a price next to it.
- Rewrite line items to be concise and readable. Example: 93EJ BCN BGR #29A -> Bacon Burger
- Money is integer cents, and each item's cents is the final total after quantity.
- Add "Unknown" if item name is unreadable but price is visible.
"""

PHASE1_PROMPT = """
Return ONLY minified JSON: {"merchant":string|null,"total_cents":int}
No extra keys. No markdown. No text.
"""

PHASE2_PROMPT_TEMPLATE = """
You are parsing for a bill splitting app so users can easily split up receipts by items.
The total is {total} cents, and sum of all item cents, taxes, fees, and discounts should sum up exactly to the total.

Output ONLY using this exact line-based format. No markdown, no code fences, no extra text.

BEGIN_RECEIPT_V2
SUBTOTAL_CENTS|<int or empty>
TAX_CENTS|<int or empty>
TIP_CENTS|<int or empty>
FEES_CENTS|<int or empty>
DISCOUNT_CENTS|<int or empty>

ITEM|<qty int>|<label string>|<cents int or empty>
(repeat ITEM lines as needed)

ISSUE|<string>
(repeat ISSUE lines as needed; if none, output zero ISSUE lines)

END_RECEIPT_V2

Rules:
- Include ONLY items that are actually charged.
- Rewrite line items to be concise and readable. Example: 93EJ BCN BGR #29A -> Bacon Burger
- Fold sub-items into the parent item's cents; do not list them separately.
- Each item's cents is the final amount: qty * (price + sub-item prices) - item discounts.
- CHECK: the sum of all item cents + tax_cents + tip_cents + fees_cents - discount_cents MUST EQUAL {total}.
"""


# --- Errors ---

class ExtractionError(Exception):
    """Anything that makes a scan fail."""


class BadResponse(ExtractionError):
    def __init__(self, status: int, body: Optional[str] = None):
        super().__init__(f"API error {status}")
        self.status = status
        self.body = body


class EmptyResponse(ExtractionError):
    def __init__(self):
        super().__init__("the model returned no text")


class DecodeFailed(ExtractionError):
    def __init__(self, detail: str = "could not read the model's answer"):
        super().__init__(detail)


class UploadFailed(ExtractionError):
    pass


def scan_failed_message(err: Exception) -> str:
    return f"Scan failed: {err}"


@dataclass(frozen=True)
class Phase1Result:
    merchant: Optional[str]
    total_cents: Optional[int]


# --- Value coercion ---

def to_cents(x) -> Optional[int]:
    """Integer cents from whatever the model sent; None when absent or unreadable."""
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, float):
        return int(round(x))
    s = str(x).strip().replace('−', '-').replace(',', '')
    m = re.search(r'-?\d+', s)
    return int(m.group(0)) if m else None


def _to_qty(x) -> int:
    q = to_cents(x)
    return q if q and q > 0 else 1


def _item_from_dict(it: dict) -> Optional[ParsedItem]:
    if not isinstance(it, dict):
        return None
    label = (it.get("label") or it.get("name") or "").strip()
    qty = _to_qty(it.get("quantity", it.get("qty")))
    cents = to_cents(it.get("line_total_cents"))
    if cents is None:
        cents = to_cents(it.get("cents"))
    if cents is None:
        unit = to_cents(it.get("unit_price_cents"))
        if unit is not None:
            cents = max(0, unit) * qty
    return ParsedItem(label=label, quantity=qty, cents=cents)


def parsed_receipt_from_dict(data: dict) -> ParsedReceipt:
    """Tolerant mapping; no field is assumed present."""
    items = []
    for it in data.get("items") or []:
        parsed = _item_from_dict(it)
        if parsed is not None:
            items.append(parsed)
    issues = tuple(str(i).strip() for i in (data.get("issues") or []) if str(i).strip())
    merchant = data.get("merchant")
    return ParsedReceipt(
        merchant=str(merchant).strip() if merchant else None,
        total_cents=to_cents(data.get("total_cents")),
        subtotal_cents=to_cents(data.get("subtotal_cents")),
        tax_cents=to_cents(data.get("tax_cents")),
        fees_cents=to_cents(data.get("fees_cents")),
        tip_cents=to_cents(data.get("tip_cents")),
        discount_cents=to_cents(data.get("discount_cents")),
        items=tuple(items),
        issues=issues,
        created_at_iso=data.get("created_at_iso"),
        currency=data.get("currency"),
    )


# --- Requests ---

def build_request(system: str, user_text: str, image_part: dict, max_tokens: int,
                  response_mime: Optional[str] = "application/json",
                  temperature: float = 0.1, thinking_budget: int = -1) -> dict:
    generation_config = {
        "maxOutputTokens": max_tokens,
        "temperature": temperature,
        "thinking_config": {"thinking_budget": thinking_budget},
    }
    if response_mime:
        generation_config["responseMimeType"] = response_mime
    return {
        "systemInstruction": {"role": "system", "parts": [{"text": system.strip()}]},
        "contents": [{"role": "user", "parts": [{"text": user_text}, image_part]}],
        "generationConfig": generation_config,
    }


def inline_image_part(image_bytes: bytes) -> dict:
    return {"inline_data": {"mime_type": "image/jpeg",
                            "data": base64.b64encode(image_bytes).decode("ascii")}}


def file_image_part(file_uri: str) -> dict:
    return {"file_data": {"mime_type": "image/jpeg", "file_uri": file_uri}}


def _require_key(settings: Settings) -> str:
    if not settings.gemini_api_key:
        raise ExtractionError("Missing GEMINI_API_KEY")
    return settings.gemini_api_key


def call_gemini(body: dict, settings: Settings) -> Tuple[str, str, List[str]]:
    """POST generateContent; returns (text, raw body, finish reasons)."""
    url = f"{settings.api_base}/v1beta/models/{settings.gemini_model}:generateContent"
    headers = {
        "x-goog-api-key": _require_key(settings),
        "Content-Type": "application/json",
    }
    started = time.monotonic()
    try:
        resp = requests.post(url, headers=headers, json=body, timeout=settings.request_timeout)
    except requests.RequestException as e:
        log.warning("gemini_request_failed", error=str(e))
        raise ExtractionError(f"network error: {e}") from e

    if not 200 <= resp.status_code < 300:
        log.warning("gemini_non_2xx", status=resp.status_code, body=preview(resp.text))
        raise BadResponse(resp.status_code, resp.text)

    try:
        data = resp.json()
    except ValueError as e:
        log.warning("gemini_body_not_json", body=preview(resp.text))
        raise DecodeFailed("unreadable API response") from e

    candidates = (data.get("candidates") or []) if isinstance(data, dict) else []
    first = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict))
    reasons = [c.get("finishReason") for c in candidates
               if isinstance(c, dict) and c.get("finishReason")]

    log.debug("gemini_response", status=resp.status_code, finish_reasons=reasons,
              elapsed=round(time.monotonic() - started, 2))
    return text, resp.text, reasons


# --- Single-shot extraction ---

def analyze_receipt(image_bytes: bytes, settings: Optional[Settings] = None) -> ParsedReceipt:
    """
    One request for the whole receipt. An empty answer is retried once with a
    larger output budget and no forced JSON mime type.
    """
    settings = settings or Settings.from_env()
    image = inline_image_part(image_bytes)
    user_text = "Parse the receipt image into the specified JSON object."

    body = build_request(SINGLE_SHOT_PROMPT, user_text, image, settings.max_tokens_primary)
    text, raw, reasons = call_gemini(body, settings)

    if not text.strip():
        log.warning("gemini_empty_text", finish_reasons=reasons, raw=preview(raw))
        if not settings.empty_retry:
            raise EmptyResponse()
        log.info("gemini_retry_larger_budget", max_tokens=settings.max_tokens_fallback)
        body = build_request(SINGLE_SHOT_PROMPT, user_text, image,
                             settings.max_tokens_fallback, response_mime=None)
        text, raw, reasons = call_gemini(body, settings)
        if not text.strip():
            log.warning("gemini_fallback_empty", finish_reasons=reasons, raw=preview(raw))
            raise EmptyResponse()

    data = loads_lenient(text)
    if data is None:
        log.warning("receipt_decode_failed", text=preview(text))
        raise DecodeFailed()
    return parsed_receipt_from_dict(data)


# --- Two-phase extraction ---

def upload_image(image_bytes: bytes, settings: Optional[Settings] = None) -> str:
    """Resumable upload to the File API; returns the file URI for later requests."""
    settings = settings or Settings.from_env()
    key = _require_key(settings)
    init_headers = {
        "X-Goog-Upload-Protocol": "resumable",
        "X-Goog-Upload-Command": "start",
        "X-Goog-Upload-Header-Content-Type": "image/jpeg",
        "X-Goog-Upload-Header-Content-Length": str(len(image_bytes)),
        "Content-Type": "application/json",
    }
    metadata = {"file": {"display_name": f"receipt_{int(time.time())}"}}
    try:
        init = requests.post(f"{settings.api_base}/upload/v1beta/files", params={"key": key},
                             headers=init_headers, json=metadata, timeout=settings.request_timeout)
        upload_url = init.headers.get("X-Goog-Upload-URL")
        if not upload_url:
            raise UploadFailed("Failed to get upload URL from response")

        resp = requests.post(upload_url, headers={
            "X-Goog-Upload-Command": "upload, finalize",
            "X-Goog-Upload-Offset": "0",
            "Content-Type": "image/jpeg",
        }, data=image_bytes, timeout=settings.request_timeout)
    except requests.RequestException as e:
        raise UploadFailed(f"Upload failed: {e}") from e

    if not 200 <= resp.status_code < 300:
        raise UploadFailed(f"Upload failed: {preview(resp.text, 200)}")
    try:
        uri = resp.json()["file"]["uri"]
    except (ValueError, KeyError, TypeError) as e:
        raise UploadFailed("Upload response had no file URI") from e

    log.info("file_uploaded", uri=uri)
    return uri


def analyze_phase1(file_uri: str, settings: Optional[Settings] = None) -> Phase1Result:
    """Merchant and total only, small budget, no thinking: unblocks the UI fast."""
    settings = settings or Settings.from_env()
    body = build_request(PHASE1_PROMPT, "Extract merchant and total from this receipt.",
                         file_image_part(file_uri), settings.phase1_max_tokens,
                         thinking_budget=0)
    text, _, _ = call_gemini(body, settings)
    if not text.strip():
        raise EmptyResponse()

    data = loads_lenient(text)
    if data is None:
        log.warning("phase1_decode_failed", text=preview(text))
        raise DecodeFailed()
    merchant = data.get("merchant")
    return Phase1Result(
        merchant=str(merchant).strip() if merchant else None,
        total_cents=to_cents(data.get("total_cents")),
    )


def _optional_int(s: str) -> Optional[int]:
    s = s.strip()
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        return None


def parse_receipt_v2(text: str) -> Optional[ParsedReceipt]:
    """Parse the BEGIN_RECEIPT_V2 line protocol; None when the text isn't in it."""
    cleaned = strip_code_fences(text)
    if "BEGIN_RECEIPT_V2" not in cleaned:
        return None

    fields = {}
    items = []
    issues = []
    in_block = False
    tags = {
        "SUBTOTAL_CENTS": "subtotal_cents",
        "TAX_CENTS": "tax_cents",
        "TIP_CENTS": "tip_cents",
        "FEES_CENTS": "fees_cents",
        "DISCOUNT_CENTS": "discount_cents",
    }

    for line in (ln.strip() for ln in cleaned.splitlines()):
        if not line:
            continue
        if line == "BEGIN_RECEIPT_V2":
            in_block = True
            continue
        if line == "END_RECEIPT_V2":
            break
        if not in_block:
            continue

        parts = line.split("|")
        tag = parts[0]
        if tag in tags and len(parts) >= 2:
            fields[tags[tag]] = _optional_int(parts[1])
        elif tag == "ISSUE" and len(parts) >= 2:
            msg = "|".join(parts[1:]).strip()
            if msg:
                issues.append(msg)
        elif tag == "ITEM" and len(parts) >= 4:
            # ITEM|<qty>|<label>|<cents>; labels may contain '|'
            label = "|".join(parts[2:-1]).strip()
            if label:
                qty = _optional_int(parts[1]) or 1
                items.append(ParsedItem(label=label, quantity=qty, cents=_optional_int(parts[-1])))

    return ParsedReceipt(items=tuple(items), issues=tuple(issues), **fields)


def decode_phase2(text: str) -> Optional[ParsedReceipt]:
    parsed = parse_receipt_v2(text)
    if parsed is not None:
        return parsed
    data = loads_lenient(text)
    return parsed_receipt_from_dict(data) if data is not None else None


def analyze_phase2(file_uri: str, known_total_cents: int,
                   settings: Optional[Settings] = None) -> ParsedReceipt:
    """Items and breakdown, seeded with the phase-1 total so the model can check its sum."""
    settings = settings or Settings.from_env()
    system = PHASE2_PROMPT_TEMPLATE.format(total=known_total_cents)
    user_text = f"Extract all items and breakdown from this receipt that add up to {known_total_cents} cents."
    body = build_request(system, user_text, file_image_part(file_uri),
                         settings.max_tokens_primary, response_mime=None, temperature=0.15)
    text, _, _ = call_gemini(body, settings)
    if not text.strip():
        raise EmptyResponse()

    parsed = decode_phase2(text)
    if parsed is None:
        log.warning("phase2_decode_failed", text=preview(text))
        raise DecodeFailed()
    return parsed

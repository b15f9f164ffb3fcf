"""Deterministic normalization — pure Python, no AI.

Normalizes values that arrive from WhatsApp, web pages and spreadsheets:
  - Phones: "87011234567@c.us" → "77011234567"
  - Prices: "15 000,50 ₸" → 15000.5
  - Currencies: "₸" / "тг" → "KZT"

Design: Prefer less data if it means better data. Return None for ambiguous values.
"""

import re
from typing import Any

# ── Phone normalization ───────────────────────────────────────────────

_WA_SUFFIXES = ("@c.us", "@s.whatsapp.net")


def normalize_phone(raw: Any) -> str | None:
    """Reduce a phone number / WhatsApp id to 11 digits with country code 7.

    "87011234567" → "77011234567", "7011234567" → "77011234567",
    "+7 (701) 123-45-67" → "77011234567". Numbers of other lengths keep
    their digits unchanged. Returns None when no digits remain.
    """
    if raw is None:
        return None
    s = str(raw).strip()
    for suffix in _WA_SUFFIXES:
        if s.endswith(suffix):
            s = s[: -len(suffix)]
    digits = re.sub(r"\D", "", s)
    if not digits:
        return None
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    elif len(digits) == 10:
        digits = "7" + digits
    return digits


def phone_variants(raw: Any) -> list[str]:
    """All spellings under which a chat may have been stored for this number."""
    normalized = normalize_phone(raw)
    if not normalized:
        return []
    variants = [
        normalized,
        f"+{normalized}",
        f"{normalized}@s.whatsapp.net",
        f"{normalized}@c.us",
    ]
    if len(normalized) == 11 and normalized.startswith("7"):
        variants.append("8" + normalized[1:])
    return variants


def whatsapp_recipient(phone: str) -> str:
    """Gateway recipient id for a stored phone number."""
    return normalize_phone(phone) or phone


# ── Price normalization ───────────────────────────────────────────────

_CURRENCY_SYMBOLS = {
    "₸": "KZT",
    "тг": "KZT",
    "тенге": "KZT",
    "₽": "RUB",
    "руб": "RUB",
    "$": "USD",
    "€": "EUR",
}

CURRENCY_CODES = ("KZT", "USD", "EUR", "RUB")


def normalize_currency(raw: Any, default: str | None = None) -> str | None:
    """Map a currency code or symbol to an ISO code we support."""
    if raw is None:
        return default
    s = str(raw).strip()
    if not s:
        return default
    upper = s.upper()
    for code in CURRENCY_CODES:
        if code in upper:
            return code
    lower = s.lower()
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in lower:
            return code
    return default


def normalize_price(raw: Any) -> float | None:
    """Parse a price string to float. Returns None if ambiguous or non-positive."""
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else None

    s = str(raw).strip()
    if not s:
        return None
    s = re.sub(r"[^\d,.\s]", "", s).strip()
    s = re.sub(r"(?<=\d)[\s\xa0]+(?=\d{3}\b)", "", s).replace(" ", "")
    if not s:
        return None

    # "1.234,56" (European) vs "1,234.56" (US) vs "15000,5"
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        head, _, tail = s.rpartition(",")
        s = head.replace(",", "") + ("." + tail if len(tail) != 3 else tail)

    try:
        value = float(s)
    except ValueError:
        return None
    return value if value > 0 else None

"""Commercial offer parser — document text → price, currency, supplier, terms.

Turns the text of a supplier's КП (a PDF/DOCX sent to the chat, or the
message text itself) into the fields of a CommercialOffer plus a
confidence score that decides whether the offer counts without review.

Business Rules:
- The LLM extracts structured fields; when it is off or answers garbage a
  regex pass reads "итого/сумма/цена", currency, delivery and payment terms
- Regex results always need manual review
- Confidence: LLM base 95 (total + items), 80 (total or items), 70 (only
  a company), 55 (nothing); then -30 when neither total nor items were
  found, -10 without a company, +15 with items; clamped to 0..100
- needs_manual_review when confidence < 70 or there is no total
- A missing total is the sum of the item totals when items carry them

Called by: services/webhook_service.py (document messages),
           services/decision_service.py (import from chat)
Depends on: utils/llm_client, utils/whapi_client, PyMuPDF, python-docx
"""

import io
import re
import zipfile
from dataclasses import dataclass, field

import docx
import fitz  # PyMuPDF
from docx.opc.exceptions import PackageNotFoundError
from loguru import logger

from ..config import settings
from ..utils.llm_client import LLMClient
from ..utils.normalization import normalize_currency, normalize_price
from ..utils.whapi_client import WhapiClient, WhapiError

MAX_TEXT_CHARS = 12000

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME = "text/plain"

SYSTEM_PROMPT = "Ты эксперт по парсингу коммерческих предложений. Отвечаешь только валидным JSON."

UNITS = {
    "штук": "шт", "штука": "шт", "штуки": "шт", "piece": "шт", "pieces": "шт", "pcs": "шт",
    "килограмм": "кг", "килограммы": "кг", "kg": "кг",
    "литр": "л", "литры": "л", "liter": "л",
    "метр": "м", "метры": "м", "meter": "м",
    "квадратный метр": "м2", "кубический метр": "м3",
    "тонна": "т", "тонны": "т",
}

TOTAL_RE = re.compile(
    r"(?:итого|сумма|стоимость|цена|total)[^\d\n]{0,20}(\d[\d\s\xa0]*(?:[.,]\d{1,2})?)", re.I
)
CURRENCY_RE = re.compile(r"(₸|тенге|тг\b|kzt|₽|руб|rub|\$|usd|долл|€|eur|евро)", re.I)
DELIVERY_RE = re.compile(r"(?:доставка|поставка|срок)[:\s]*(\d+\s*(?:дн\w*|день|недел\w*|месяц\w*))", re.I)
PAYMENT_RE = re.compile(r"(?:оплата|платеж)[:\s]*([^.\n]{3,120})", re.I)
COMPANY_RE = re.compile(r"\b((?:ООО|ТОО|ИП|АО)\s+[\"«]?[^\"»\n,]{2,80}[\"»]?)")


class OfferParseError(Exception):
    pass


@dataclass
class ParsedOffer:
    total_price: float | None = None
    currency: str = "KZT"
    company: str | None = None
    delivery_terms: str | None = None
    payment_terms: str | None = None
    items: list[dict] = field(default_factory=list)
    confidence: int = 0
    needs_manual_review: bool = True
    extracted_text: str = ""

    @property
    def qualifies(self) -> bool:
        return self.confidence >= settings.offer_confidence_threshold and not self.needs_manual_review


# ── Document text ────────────────────────────────────────────────────


def is_supported_document(mime_type: str, file_name: str | None = None) -> bool:
    name = (file_name or "").lower()
    return mime_type in (PDF_MIME, DOCX_MIME, TEXT_MIME) or name.endswith((".pdf", ".docx", ".txt"))


def extract_document_text(content: bytes, mime_type: str, file_name: str | None = None) -> str:
    """Plain text of a PDF, DOCX or text file."""
    name = (file_name or "").lower()
    try:
        if mime_type == PDF_MIME or name.endswith(".pdf"):
            with fitz.open(stream=content, filetype="pdf") as pdf:
                return "\n".join(page.get_text() for page in pdf).strip()
        if mime_type == DOCX_MIME or name.endswith(".docx"):
            document = docx.Document(io.BytesIO(content))
            lines = [p.text for p in document.paragraphs if p.text.strip()]
            for table in document.tables:
                for row in table.rows:
                    lines.append(" | ".join(cell.text.strip() for cell in row.cells))
            return "\n".join(lines).strip()
        if mime_type == TEXT_MIME or name.endswith(".txt"):
            return content.decode("utf-8", errors="replace").strip()
    except (RuntimeError, ValueError, KeyError, zipfile.BadZipFile, PackageNotFoundError) as e:
        raise OfferParseError(f"Не удалось прочитать документ {file_name or ''}: {e}") from e
    raise OfferParseError(f"Неподдерживаемый тип документа: {mime_type or file_name}")


async def fetch_document_text(whatsapp: WhapiClient, document: dict) -> str:
    """Download a chat attachment from the gateway and return its text."""
    media_id = document.get("id")
    if not media_id:
        raise OfferParseError("У документа нет идентификатора для скачивания")
    try:
        content = await whatsapp.download_media(media_id)
    except WhapiError as e:
        raise OfferParseError(f"Ошибка скачивания документа: {e}") from e
    return extract_document_text(content, document.get("mime_type") or "", document.get("filename"))


# ── Parsing ──────────────────────────────────────────────────────────


def clean_text(text: str) -> str:
    return re.sub(r"[ \t\xa0]+", " ", text or "").strip()[:MAX_TEXT_CHARS]


def normalize_unit(unit: str | None) -> str:
    key = (unit or "").lower().strip()
    return UNITS.get(key, unit.strip() if unit else "шт")


def _items(raw_items) -> list[dict]:
    items = []
    for raw in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        quantity = normalize_price(raw.get("quantity"))
        if not quantity:
            continue
        items.append({
            "name": str(raw["name"]).strip(),
            "quantity": quantity,
            "unit": normalize_unit(raw.get("unit")),
            "unit_price": normalize_price(raw.get("unitPrice")),
            "total_price": normalize_price(raw.get("totalPrice")),
        })
    return items


def _prompt(text: str, file_name: str | None) -> str:
    return f"""Проанализируй коммерческое предложение и извлеки данные.

ТЕКСТ ДОКУМЕНТА:
{text}

ФАЙЛ: {file_name or "неизвестно"}

Верни JSON:
{{
  "totalPrice": число или null (общая сумма),
  "currency": "KZT" | "USD" | "EUR" | "RUB",
  "deliveryTerm": строка или null (срок поставки),
  "paymentTerm": строка или null (условия оплаты),
  "company": строка или null (компания-поставщик),
  "positions": [{{"name": строка, "quantity": число, "unit": строка, "unitPrice": число или null, "totalPrice": число или null}}]
}}

Цены только числами без валют. Если данных нет, ставь null."""


def _from_llm(data: dict, text: str) -> ParsedOffer:
    items = _items(data.get("positions"))
    total = normalize_price(data.get("totalPrice"))
    company = (str(data["company"]).strip() or None) if data.get("company") else None
    if total and items:
        confidence = 95
    elif total or items:
        confidence = 80
    elif company:
        confidence = 70
    else:
        confidence = 55
    return ParsedOffer(
        total_price=total,
        currency=normalize_currency(data.get("currency"), "KZT"),
        company=company,
        delivery_terms=data.get("deliveryTerm") or None,
        payment_terms=data.get("paymentTerm") or None,
        items=items,
        confidence=confidence,
        needs_manual_review=False,
        extracted_text=text[:500],
    )


def parse_with_regex(text: str) -> ParsedOffer:
    """Keyword/regex reading of an offer. Always flagged for review."""
    total = None
    match = TOTAL_RE.search(text)
    if match:
        total = normalize_price(match.group(1))
    symbol = CURRENCY_RE.search(text)
    currency = normalize_currency(symbol.group(1) if symbol else None, "KZT")
    delivery = DELIVERY_RE.search(text)
    payment = PAYMENT_RE.search(text)
    company = COMPANY_RE.search(text)
    return ParsedOffer(
        total_price=total,
        currency=currency,
        company=company.group(1).strip() if company else None,
        delivery_terms=delivery.group(1).strip() if delivery else None,
        payment_terms=payment.group(1).strip() if payment else None,
        confidence=50 if total else 30,
        needs_manual_review=True,
        extracted_text=text[:500],
    )


def finalize_confidence(offer: ParsedOffer) -> ParsedOffer:
    """Apply the completeness adjustments and the review rule."""
    if offer.total_price is None and offer.items:
        totals = [i["total_price"] for i in offer.items if i["total_price"]]
        if totals:
            offer.total_price = float(sum(totals))

    confidence = offer.confidence
    if not offer.total_price and not offer.items:
        confidence -= 30
    if not offer.company:
        confidence -= 10
    if offer.items:
        confidence += 15
    offer.confidence = max(0, min(100, confidence))
    offer.needs_manual_review = (
        offer.needs_manual_review
        or not offer.total_price
        or offer.confidence < settings.offer_confidence_threshold
    )
    return offer


async def parse_offer_text(llm: LLMClient, text: str, file_name: str | None = None) -> ParsedOffer:
    """Parse offer text with the LLM, falling back to regex."""
    cleaned = clean_text(text)
    if not cleaned:
        return ParsedOffer(needs_manual_review=True)

    data = None
    if llm is not None and llm.enabled:
        data = await llm.json(_prompt(cleaned, file_name), system=SYSTEM_PROMPT, max_tokens=2000, temperature=0.1)
    if isinstance(data, dict):
        parsed = _from_llm(data, cleaned)
    else:
        if llm is not None and llm.enabled:
            logger.warning("Offer parser: LLM returned no JSON for {}, using regex", file_name or "text")
        parsed = parse_with_regex(cleaned)

    parsed = finalize_confidence(parsed)
    logger.info(
        "Offer parsed from {}: total={} {} confidence={} review={}",
        file_name or "text", parsed.total_price, parsed.currency, parsed.confidence, parsed.needs_manual_review,
    )
    return parsed

"""Supplier selector — picks which suppliers to contact for a position.

Business Rules:
- No candidates → nothing to contact
- Candidates ≤ limit → contact all of them, no LLM call (score floor 60)
- Otherwise the LLM scores every candidate against a fixed rubric:
  relevance 40%, location in Kazakhstan 25%, rating 20%, contacts 15%
  (+10 for local suppliers, +5 for WhatsApp)
- The model must answer with a JSON array; truncated output is cut back to
  the last complete element
- Any LLM/parse failure (or no usable items) falls back to ranking by
  rating + search relevance

Called by: services/outreach_service.send_quote_requests
Depends on: utils/llm_client
"""

import json
from dataclasses import dataclass, field

from loguru import logger

from ..utils.llm_client import LLMClient, strip_fences

RECOMMENDATIONS = ("highly_recommended", "recommended", "consider", "not_recommended")

SYSTEM_PROMPT = (
    "Ты эксперт по закупкам в Казахстане. Анализируешь поставщиков и отвечаешь "
    "только валидным JSON."
)


@dataclass
class SupplierCandidate:
    id: int
    name: str
    rating: float = 0
    found_via: str = "search"
    search_relevance: float = 0.5
    description: str | None = None
    website: str | None = None
    address: str | None = None
    tags: list[str] = field(default_factory=list)
    email: str | None = None
    phone: str | None = None
    whatsapp: str | None = None


@dataclass
class SupplierAnalysis:
    supplier_id: int
    relevance_score: float
    reasons: list[str] = field(default_factory=list)
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    recommendation: str = "recommended"


class SelectionError(ValueError):
    """The model's answer could not be turned into a ranking."""


def _build_prompt(position: dict, candidates: list[SupplierCandidate], limit: int) -> str:
    lines = []
    for index, c in enumerate(candidates, start=1):
        contacts = {"email": c.email, "phone": c.phone, "whatsapp": c.whatsapp}
        lines.append(
            f"{index}. ID: {c.id}\n"
            f"   Название: {c.name}\n"
            f"   Описание: {c.description or 'Не указано'}\n"
            f"   Сайт: {c.website or 'Не указан'}\n"
            f"   Адрес: {c.address or 'Не указан'}\n"
            f"   Теги: {', '.join(c.tags) if c.tags else 'Не указаны'}\n"
            f"   Рейтинг: {c.rating}/5\n"
            f"   Найден через: {c.found_via}\n"
            f"   Релевантность поиска: {round(c.search_relevance * 100)}%\n"
            f"   Контакты: {json.dumps(contacts, ensure_ascii=False)}"
        )
    return f"""Проанализируй поставщиков для следующей позиции и выбери {limit} лучших.

ПОЗИЦИЯ ДЛЯ ЗАКУПКИ:
- Название: {position.get("name")}
- Описание: {position.get("description") or "Не указано"}
- Количество: {position.get("quantity")} {position.get("unit")}

ПОСТАВЩИКИ-КАНДИДАТЫ:
{chr(10).join(lines)}

КРИТЕРИИ ОЦЕНКИ:
1. Релевантность товаров/услуг (40%)
2. Географическое расположение (Казахстан - приоритет) (25%)
3. Рейтинг и репутация (20%)
4. Наличие контактов (WhatsApp предпочтительно) (15%)

Местные поставщики получают бонус +10 к релевантности.
Поставщики с WhatsApp получают бонус +5 к релевантности.

Верни ТОЛЬКО JSON массив без markdown:
[{{"supplierId": number, "relevanceScore": number (0-100), "reasons": [..], "pros": [..], "cons": [..], "recommendation": "highly_recommended" | "recommended" | "consider" | "not_recommended"}}]
"""


def repair_json_array(text: str) -> list:
    """Parse a JSON array from model output, trimming a truncated tail.

    Raises SelectionError when no array can be recovered.
    """
    cleaned = strip_fences(text or "")
    start = cleaned.find("[")
    if start == -1:
        raise SelectionError("no JSON array in response")
    cleaned = cleaned[start:]

    for attempt in (cleaned, cleaned[: cleaned.rfind("]") + 1]):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, list):
            return parsed

    # Walk the text and remember where each top-level element ends
    depth, in_string, escaped, last_end = 0, False, False, -1
    for i, ch in enumerate(cleaned):
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
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 1:
                last_end = i + 1
            elif depth == 0:
                last_end = i + 1
                break

    if last_end == -1:
        raise SelectionError("truncated response has no complete element")
    candidate = cleaned[:last_end]
    if not candidate.rstrip().endswith("]"):
        candidate += "]"
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise SelectionError(f"unparseable response: {e}") from e
    if not isinstance(parsed, list):
        raise SelectionError("response is not an array")
    return parsed


def _to_analysis(item, known_ids: set[int]) -> SupplierAnalysis | None:
    if not isinstance(item, dict):
        return None
    try:
        supplier_id = int(item.get("supplierId"))
    except (TypeError, ValueError):
        return None
    score = item.get("relevanceScore")
    if supplier_id not in known_ids or not isinstance(score, (int, float)):
        return None
    if not all(isinstance(item.get(k), list) for k in ("reasons", "pros", "cons")):
        return None
    recommendation = item.get("recommendation")
    if recommendation not in RECOMMENDATIONS:
        return None
    return SupplierAnalysis(
        supplier_id=supplier_id,
        relevance_score=float(score),
        reasons=[str(r) for r in item["reasons"]],
        pros=[str(p) for p in item["pros"]],
        cons=[str(c) for c in item["cons"]],
        recommendation=recommendation,
    )


def fallback_ranking(candidates: list[SupplierCandidate], limit: int) -> list[SupplierAnalysis]:
    """Deterministic ranking by rating + search relevance."""
    ranked = sorted(candidates, key=lambda c: (c.rating or 0) + c.search_relevance, reverse=True)
    return [
        SupplierAnalysis(
            supplier_id=c.id,
            relevance_score=max(50, (c.rating or 0) * 20 + c.search_relevance * 80),
            reasons=[f"Высокий рейтинг ({c.rating or 0}/5)", f"Найден через {c.found_via}"],
            pros=[c.description or "Надежный поставщик"],
            cons=["Анализ ИИ недоступен"],
            recommendation="recommended",
        )
        for c in ranked[:limit]
    ]


async def select_best_suppliers(
    position: dict,
    candidates: list[SupplierCandidate],
    limit: int,
    llm: LLMClient | None,
) -> list[SupplierAnalysis]:
    """Rank candidates for a position and return at most `limit` of them."""
    if not candidates:
        return []

    if len(candidates) <= limit:
        return [
            SupplierAnalysis(
                supplier_id=c.id,
                relevance_score=max(60, c.search_relevance * 100),
                reasons=[f"Поставщик найден через {c.found_via}"],
                pros=[c.description or "Поставщик товаров"],
                cons=[],
                recommendation="recommended",
            )
            for c in candidates
        ]

    try:
        if llm is None:
            raise SelectionError("LLM client not available")
        text = await llm.text(
            _build_prompt(position, candidates, limit),
            system=SYSTEM_PROMPT,
            temperature=0.3,
            max_tokens=3000,
        )
        if not text:
            raise SelectionError("empty LLM response")
        known = {c.id for c in candidates}
        analyses = [a for a in (_to_analysis(i, known) for i in repair_json_array(text)) if a]
        if not analyses:
            raise SelectionError("no valid items in LLM response")
        analyses.sort(key=lambda a: a.relevance_score, reverse=True)
        logger.info("Supplier selection for {}: LLM ranked {} of {}", position.get("name"), len(analyses), len(candidates))
        return analyses[:limit]
    except SelectionError as e:
        logger.warning("Supplier selection fell back to rating order: {}", e)
        return fallback_ranking(candidates, limit)

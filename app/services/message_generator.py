"""Quote request message drafting.

The LLM writes a short, human-sounding WhatsApp message asking a supplier
for a commercial offer. When the LLM is unavailable the fixed template is
used instead, so outreach never stalls on the model.
"""

from loguru import logger

from ..utils.llm_client import LLMClient

SYSTEM_PROMPT = (
    "Ты менеджер по закупкам. Пишешь короткие вежливые сообщения поставщикам в WhatsApp. "
    "Отвечай только текстом сообщения без дополнительных пояснений."
)


def _format_quantity(quantity) -> str:
    if isinstance(quantity, float) and quantity.is_integer():
        return str(int(quantity))
    return str(quantity)


def fallback_message(position_name: str, quantity, unit: str) -> str:
    return (
        "Здравствуйте! Меня зовут Санжар!\n\n"
        f"Не могли бы вы предоставить коммерческое предложение на покупку {position_name}?\n\n"
        f"Количество: {_format_quantity(quantity)} {unit}\n\n"
        "Обязательно укажите сумму в КП! Спасибо!"
    )


def _prompt(supplier_name: str, position: dict, request_number: str) -> str:
    return f"""Сгенерируй персонализированное сообщение для запроса коммерческого предложения.

Данные:
- Поставщик: {supplier_name}
- Позиция: {position["name"]}
- Описание: {position.get("description") or "Не указано"}
- Количество: {_format_quantity(position["quantity"])} {position["unit"]}
- Номер заявки: {request_number}

Требования к сообщению:
1. Максимально похоже на человека
2. Вежливое и профессиональное обращение
3. Представиться как Санжар
4. Обязательно попросить указать сумму в КП
5. Длина сообщения: 3-5 предложений"""


async def generate_quote_request(
    llm: LLMClient | None,
    supplier_name: str,
    position: dict,
    request_number: str,
) -> str:
    """Message text for a quote request; falls back to the template."""
    if llm is not None and llm.enabled:
        text = await llm.text(
            _prompt(supplier_name, position, request_number),
            system=SYSTEM_PROMPT,
            temperature=0.7,
            max_tokens=400,
        )
        if text and text.strip():
            return text.strip()
        logger.info("Quote request draft for {} fell back to template", supplier_name)
    return fallback_message(position["name"], position["quantity"], position["unit"])

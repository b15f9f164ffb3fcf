"""Excel request import — parses 1C purchase-request exports.

Layout of the sheet (first worksheet only):
  - row 1: "Заявка на закупку №123 от 15.03.2024"
  - metadata rows: "Важность: Высокая", "Дата закупки | 20.03.2024",
    "Валюта | KZT", "Исполнитель: | | Иванов склад"
  - items table: header row starting with "Номенклатура" (and containing
    "Содержание" and "Кол-во"); columns [0]=name [2]=content [4]=unit [5]=qty
  - table ends at the first empty row or the signature block (Виза,
    Руководитель, Комментарий, Исполнитель)

A sheet without any date gets today as its purchase date. Anything else
parse_request_workbook() cannot read, a malformed date included, is left
empty and validate_parsed_request() reports it.

Called by: services/request_service.import_request
Depends on: openpyxl
"""

import io
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

import openpyxl
from loguru import logger

from ..utils import safe_float

IMPORTANCE_LEVELS = ("Высокая", "Средняя", "Низкая")
CURRENCIES = ("KZT", "USD", "EUR", "RUB")
TABLE_TERMINATORS = ("Виза", "Руководитель", "Комментарий", "Исполнитель")
DEFAULT_UNIT = "шт"


class ExcelParseError(ValueError):
    """The file could not be opened as a workbook."""


@dataclass
class ParsedPosition:
    name: str
    quantity: float
    unit: str = DEFAULT_UNIT
    description: str | None = None
    sku: str | None = None


@dataclass
class ParsedRequest:
    request_number: str
    deadline: datetime | None
    currency: str = "KZT"
    priority: int = 0
    importance: str = "Средний"
    initiator: str = ""
    description: str = ""
    positions: list[ParsedPosition] = field(default_factory=list)


def _cell_to_str(cell) -> str:
    if cell is None:
        return ""
    if isinstance(cell, (datetime, date)):
        return cell.strftime("%d.%m.%Y")
    if isinstance(cell, float) and cell.is_integer():
        return str(int(cell))
    return str(cell)


def read_rows(file_bytes: bytes) -> list[list[str]]:
    """First worksheet as a list of rows of strings."""
    try:
        wb = openpyxl.load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except Exception as e:
        raise ExcelParseError(f"Не удалось прочитать Excel файл: {e}") from e
    try:
        ws = wb.worksheets[0] if wb.worksheets else None
        if ws is None:
            return []
        return [[_cell_to_str(c) for c in row] for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _parse_date(value: str) -> datetime | None:
    m = re.search(r"(\d{1,2})\.(\d{1,2})\.(\d{4})", value or "")
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _clean_executor(value: str) -> str:
    return re.sub(r"\s*склад\s*", " ", value, flags=re.IGNORECASE).strip()


def priority_from_importance(importance: str) -> int:
    if "Высок" in importance:
        return 2
    if "Средн" in importance:
        return 1
    return 0


def _parse_items(rows: list[list[str]], start: int) -> list[ParsedPosition]:
    items = []
    for row in rows[start:]:
        first = row[0].strip() if row else ""
        if not first or any(t in first for t in TABLE_TERMINATORS):
            break

        def col(i: int) -> str:
            return row[i].strip() if len(row) > i else ""

        quantity = safe_float(col(5) or "0") or 0
        if quantity > 0:
            content = col(2)
            items.append(ParsedPosition(
                name=first,
                description=content or first,
                unit=col(4) or DEFAULT_UNIT,
                quantity=quantity,
            ))
    return items


def parse_rows(rows: list[list[str]]) -> ParsedRequest:
    """Extract request header data and line items from sheet rows."""
    request_number = ""
    deadline: datetime | None = None
    date_seen = False
    importance = "Средний"
    initiator = ""
    currency = "KZT"
    positions: list[ParsedPosition] = []

    first_row = " ".join(rows[0]) if rows else ""
    if m := re.search(r"№\s*(\d+)", first_row):
        request_number = f"REQ-{m.group(1)}"
    if m := re.search(r"от\s+([\d.]+)", first_row):
        date_seen = True
        deadline = _parse_date(m.group(1))

    for i, row in enumerate(rows):
        if not row:
            continue
        first = row[0].strip()

        if "Важность" in first or any("Важность" in c for c in row):
            level = next((c.strip() for c in row if any(lv in c for lv in IMPORTANCE_LEVELS)), None)
            if level:
                importance = level

        if "Дата закупки" in first and len(row) > 1 and row[1].strip():
            date_seen = True
            deadline = _parse_date(row[1]) or deadline

        if "Валюта" in first:
            code = next((c.strip() for c in row if c.strip() in CURRENCIES), None)
            if code:
                currency = code

        if "Исполнитель:" in first:
            raw = (row[2] if len(row) > 2 and row[2].strip() else row[1] if len(row) > 1 else "")
            initiator = _clean_executor(raw)

        if "Номенклатура" in first:
            header = " ".join(row).lower()
            if "содержание" in header and "кол-во" in header:
                positions = _parse_items(rows, i + 1)
                # Executor line usually sits after the table
                for tail in reversed(rows[i + 1:]):
                    if tail and "Исполнитель:" in tail[0]:
                        raw = (tail[2] if len(tail) > 2 and tail[2].strip() else tail[1] if len(tail) > 1 else "")
                        initiator = _clean_executor(raw)
                        break
                break

    if not request_number:
        request_number = f"REQ-{int(time.time() * 1000)}"
        logger.info("Excel import: no request number found, generated {}", request_number)
    if deadline is None and not date_seen:
        deadline = datetime.now(timezone.utc)
        logger.info("Excel import: no purchase date in {}, using today", request_number)

    return ParsedRequest(
        request_number=request_number,
        deadline=deadline,
        currency=currency,
        priority=priority_from_importance(importance),
        importance=importance,
        initiator=initiator,
        description=f"Инициатор: {initiator}" if initiator else f"Заявка {request_number}",
        positions=positions,
    )


def parse_request_workbook(file_bytes: bytes) -> ParsedRequest:
    return parse_rows(read_rows(file_bytes))


def validate_parsed_request(data: ParsedRequest) -> tuple[bool, list[str]]:
    """Check a parsed request. Never raises; returns (valid, errors)."""
    errors: list[str] = []
    if not data.request_number:
        errors.append("Не удалось определить номер заявки")
    if not data.deadline:
        errors.append("Не удалось определить дату закупки")
    if not data.positions:
        errors.append("Не найдено ни одной позиции в заявке")
    for index, pos in enumerate(data.positions, start=1):
        if not pos.name:
            errors.append(f"Позиция {index}: отсутствует наименование")
        if not pos.quantity or pos.quantity <= 0:
            errors.append(f"Позиция {index}: некорректное количество")
        if not pos.unit:
            errors.append(f"Позиция {index}: не указана единица измерения")
    return not errors, errors

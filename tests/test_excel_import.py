"""
test_excel_import.py — Tests for app/services/excel_import.py and POST /api/requests/import

Covers:
- parse of the standard 1C export layout (header, metadata, items, signature block)
- priority mapping, fallback request number, executor cleanup
- missing purchase date defaults to today; a malformed one is reported
- validate_parsed_request() messages (never raises)
- import endpoint: success, duplicate number (409), invalid file (400)

Called by: pytest
Depends on: app/services/excel_import.py, tests/conftest.py (make_xlsx)
"""

from datetime import datetime, timezone

import pytest

from app.models import AuditLog, Position, Request
from app.services.excel_import import (
    ExcelParseError,
    ParsedPosition,
    ParsedRequest,
    parse_request_workbook,
    parse_rows,
    priority_from_importance,
    read_rows,
    validate_parsed_request,
)
from app.workflow import RequestStatus, SearchStatus


# ── Parsing ──────────────────────────────────────────────────────────


def test_parses_standard_export(make_xlsx):
    parsed = parse_request_workbook(make_xlsx())

    assert parsed.request_number == "REQ-123"
    assert parsed.deadline == datetime(2024, 3, 20, tzinfo=timezone.utc)
    assert parsed.currency == "USD"
    assert parsed.importance == "Высокая"
    assert parsed.priority == 2
    assert parsed.initiator == "Иванов И.И."
    assert parsed.description == "Инициатор: Иванов И.И."

    assert [p.name for p in parsed.positions] == ["Цемент М400", "Арматура А500С", "Гвозди 100 мм"]
    assert [p.quantity for p in parsed.positions] == [10.0, 2.5, 100.0]
    assert [p.unit for p in parsed.positions] == ["мешок", "т", "шт"]
    assert parsed.positions[0].description == "Мешки по 50 кг"
    # No content column → the name doubles as description
    assert parsed.positions[2].description == "Гвозди 100 мм"


def test_standard_export_is_valid(make_xlsx):
    valid, errors = validate_parsed_request(parse_request_workbook(make_xlsx()))
    assert valid is True
    assert errors == []


def test_header_date_used_without_purchase_date_row():
    parsed = parse_rows([
        ["Заявка №77 от 01.02.2025"],
        ["Номенклатура", "", "Содержание", "", "Ед.", "Кол-во"],
        ["Кабель ВВГ 3х2.5", "", "", "", "м", "150"],
    ])
    assert parsed.request_number == "REQ-77"
    assert parsed.deadline == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert parsed.currency == "KZT"
    assert parsed.priority == 1  # default "Средний"
    assert parsed.description == "Заявка REQ-77"


def test_sheet_without_date_defaults_to_today():
    before = datetime.now(timezone.utc)
    parsed = parse_rows([
        ["Заявка на закупку №555"],
        ["Номенклатура", "", "Содержание", "", "Ед.", "Кол-во"],
        ["Цемент М400", "", "", "", "мешок", "10"],
    ])
    assert parsed.request_number == "REQ-555"
    assert before <= parsed.deadline <= datetime.now(timezone.utc)
    assert validate_parsed_request(parsed) == (True, [])


def test_malformed_date_is_reported():
    parsed = parse_rows([
        ["Заявка на закупку №556"],
        ["Дата закупки", "32.13.2025"],
        ["Номенклатура", "", "Содержание", "", "Ед.", "Кол-во"],
        ["Цемент М400", "", "", "", "мешок", "10"],
    ])
    assert parsed.deadline is None
    valid, errors = validate_parsed_request(parsed)
    assert valid is False
    assert errors == ["Не удалось определить дату закупки"]


def test_table_stops_at_empty_first_cell():
    parsed = parse_rows([
        ["Заявка №5 от 01.02.2025"],
        ["Номенклатура", "Содержание", "Кол-во"],
        ["Болт М8", "", "", "", "шт", "40"],
        ["", "", "", "", "", ""],
        ["Гайка М8", "", "", "", "шт", "40"],
    ])
    assert [p.name for p in parsed.positions] == ["Болт М8"]


def test_header_without_quantity_column_is_not_a_table():
    parsed = parse_rows([
        ["Заявка №6 от 01.02.2025"],
        ["Номенклатура", "Содержание"],
        ["Болт М8", "", "", "", "шт", "40"],
    ])
    assert parsed.positions == []


def test_missing_number_generates_fallback():
    parsed = parse_rows([["Заявка на закупку"]])
    assert parsed.request_number.startswith("REQ-")
    assert parsed.request_number[4:].isdigit()


@pytest.mark.parametrize(
    "importance, priority",
    [("Высокая", 2), ("Высокий", 2), ("Средняя", 1), ("Средний", 1), ("Низкая", 0), ("", 0)],
)
def test_priority_from_importance(importance, priority):
    assert priority_from_importance(importance) == priority


def test_unreadable_file_raises_parse_error():
    with pytest.raises(ExcelParseError):
        read_rows(b"this is not a workbook")


# ── Validation ───────────────────────────────────────────────────────


def test_validation_reports_every_problem():
    data = ParsedRequest(
        request_number="",
        deadline=None,
        positions=[
            ParsedPosition(name="", quantity=1),
            ParsedPosition(name="Цемент", quantity=0),
            ParsedPosition(name="Песок", quantity=3, unit=""),
        ],
    )
    valid, errors = validate_parsed_request(data)
    assert valid is False
    assert errors == [
        "Не удалось определить номер заявки",
        "Не удалось определить дату закупки",
        "Позиция 1: отсутствует наименование",
        "Позиция 2: некорректное количество",
        "Позиция 3: не указана единица измерения",
    ]


def test_validation_without_positions():
    valid, errors = validate_parsed_request(ParsedRequest(request_number="REQ-1", deadline=datetime.now(timezone.utc)))
    assert valid is False
    assert errors == ["Не найдено ни одной позиции в заявке"]


# ── Endpoint ─────────────────────────────────────────────────────────


def _upload(client, content: bytes, filename: str = "zayavka.xlsx"):
    return client.post(
        "/api/requests/import",
        files={"file": (filename, content, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
    )


def test_import_creates_request_and_positions(client, db_session, make_xlsx, test_user):
    resp = _upload(client, make_xlsx())
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["request_number"] == "REQ-123"
    assert data["status"] == RequestStatus.UPLOADED.value
    assert data["priority"] == 2
    assert len(data["positions"]) == 3

    request = db_session.query(Request).filter_by(request_number="REQ-123").one()
    assert request.created_by == test_user.id
    assert request.source_file == "zayavka.xlsx"
    statuses = {p.search_status for p in db_session.query(Position).filter_by(request_id=request.id)}
    assert statuses == {SearchStatus.PENDING.value}
    audit = db_session.query(AuditLog).filter_by(action="IMPORT_REQUEST").one()
    assert audit.details["positions"] == 3


def test_import_duplicate_number_is_conflict(client, make_xlsx):
    assert _upload(client, make_xlsx()).status_code == 201
    resp = _upload(client, make_xlsx())
    assert resp.status_code == 409
    assert "REQ-123" in resp.json()["error"]


def test_import_invalid_sheet_lists_errors(client, db_session, make_xlsx):
    resp = _upload(client, make_xlsx([["Заявка №9"], ["Номенклатура", "Содержание", "Кол-во"]]))
    assert resp.status_code == 400
    body = resp.json()
    assert "Не найдено ни одной позиции в заявке" in body["detail"]["errors"]
    assert db_session.query(Request).count() == 0


def test_import_rejects_other_file_types(client):
    resp = _upload(client, b"a,b,c", filename="zayavka.csv")
    assert resp.status_code == 400


def test_import_rejects_empty_upload(client):
    resp = _upload(client, b"")
    assert resp.status_code == 400

"""
conftest.py — Shared Test Fixtures for ProcureDesk

Provides an in-memory SQLite database, FastAPI TestClient with auth and
client overrides, and factory fixtures for the core models (User, Request
with positions, Chat, Supplier, CommercialOffer).

Business Rules:
- All tests run against an isolated in-memory DB
- Auth is overridden so most tests don't need a login round-trip
- Outbound clients (WhatsApp, LLM, search, scraper) are mocks; nothing
  leaves the process
- Each test function gets fresh tables

Called by: all test files via pytest autodiscovery
Depends on: app.models (Base), app.database (get_db), app.dependencies
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.security import generate_password_hash

from app.database import json_serializer
from app.models import Base, Chat, CommercialOffer, Position, Request, Supplier, User
from app.utils.llm_client import LLMClient
from app.utils.whapi_client import WhapiClient
from app.workflow import OfferStatus, RequestStatus, SearchStatus

TEST_PASSWORD = "correct-horse-battery"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    json_serializer=json_serializer,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Database ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _user(db: Session, email: str, role: str) -> User:
    user = User(
        email=email,
        name=email.split("@")[0].title(),
        role=role,
        password_hash=generate_password_hash(TEST_PASSWORD),
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def test_user(db_session: Session) -> User:
    """A purchaser; the default identity of the client fixture."""
    return _user(db_session, "buyer@procuredesk.kz", "purchaser")


@pytest.fixture()
def admin_user(db_session: Session) -> User:
    return _user(db_session, "admin@procuredesk.kz", "admin")


@pytest.fixture()
def viewer_user(db_session: Session) -> User:
    return _user(db_session, "viewer@procuredesk.kz", "viewer")


# ── Domain factories ─────────────────────────────────────────────────


@pytest.fixture()
def make_request(db_session: Session, test_user: User):
    """Factory: a request with N positions."""

    def _make(number: str = "REQ-100", positions: int = 2, status: str = RequestStatus.UPLOADED.value) -> Request:
        request = Request(
            request_number=number,
            description=f"Заявка {number}",
            currency="KZT",
            status=status,
            created_by=test_user.id,
        )
        db_session.add(request)
        db_session.flush()
        for i in range(positions):
            db_session.add(Position(
                request_id=request.id,
                name=f"Цемент М{400 + i * 100}",
                description="Портландцемент, мешки по 50 кг",
                quantity=10 * (i + 1),
                unit="шт",
                search_status=SearchStatus.PENDING.value,
            ))
        db_session.commit()
        db_session.refresh(request)
        return request

    return _make


@pytest.fixture()
def procurement_request(make_request) -> Request:
    return make_request()


@pytest.fixture()
def make_chat(db_session: Session):
    counter = {"n": 0}

    def _make(phone: str | None = None, name: str = "ТОО Поставщик", request_id: int | None = None) -> Chat:
        counter["n"] += 1
        chat = Chat(
            phone_number=phone or f"7701000000{counter['n']}",
            contact_name=name,
            request_id=request_id,
            unread_count=0,
        )
        db_session.add(chat)
        db_session.commit()
        db_session.refresh(chat)
        return chat

    return _make


@pytest.fixture()
def make_supplier(db_session: Session):
    def _make(name: str = "ТОО СтройМаркет", whatsapp: str | None = "77011112233", **kw) -> Supplier:
        supplier = Supplier(
            name=name,
            whatsapp=whatsapp,
            rating=kw.pop("rating", 4),
            tags=kw.pop("tags", []),
            is_active=kw.pop("is_active", True),
            **kw,
        )
        db_session.add(supplier)
        db_session.commit()
        db_session.refresh(supplier)
        return supplier

    return _make


@pytest.fixture()
def make_offer(db_session: Session):
    def _make(request: Request, position: Position | None, company: str, price: float, **kw) -> CommercialOffer:
        offer = CommercialOffer(
            request_id=request.id,
            position_id=position.id if position else None,
            company=company,
            total_price=price,
            currency=kw.pop("currency", "KZT"),
            confidence=kw.pop("confidence", 90),
            needs_manual_review=kw.pop("needs_manual_review", False),
            status=OfferStatus.PENDING.value,
            **kw,
        )
        db_session.add(offer)
        db_session.commit()
        db_session.refresh(offer)
        return offer

    return _make


# ── Outbound client mocks ────────────────────────────────────────────


@pytest.fixture()
def whatsapp() -> MagicMock:
    """WhapiClient mock: every send succeeds with a gateway message id."""
    client = MagicMock(spec=WhapiClient)
    client.configured = True
    client.send_message = AsyncMock(return_value={"sent": True, "message": {"id": "wamid-out-1"}})
    client.get_status = AsyncMock(return_value={"status": "ready", "name": "ProcureDesk", "phone_number": "77000000000"})
    client.setup_webhook = AsyncMock(return_value={"webhooks": []})
    client.download_media = AsyncMock(return_value=b"")
    return client


@pytest.fixture()
def llm() -> MagicMock:
    """LLMClient mock that is disabled, so services take their fallbacks."""
    client = MagicMock(spec=LLMClient)
    client.enabled = False
    client.text = AsyncMock(return_value=None)
    client.json = AsyncMock(return_value=None)
    return client


@pytest.fixture()
def search_providers() -> list:
    return []


@pytest.fixture()
def scraper_http() -> MagicMock:
    return MagicMock()


# ── TestClient ───────────────────────────────────────────────────────


def _client(db_session: Session, user: User | None, whatsapp, llm, search_providers, scraper_http):
    from app.database import get_db
    from app.dependencies import get_llm, get_scraper_http, get_search_providers, get_whatsapp, require_user
    from app.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    if user is not None:
        app.dependency_overrides[require_user] = lambda: user
    app.dependency_overrides[get_whatsapp] = lambda: whatsapp
    app.dependency_overrides[get_llm] = lambda: llm
    app.dependency_overrides[get_search_providers] = lambda: search_providers
    app.dependency_overrides[get_scraper_http] = lambda: scraper_http
    return app


@pytest.fixture()
def client(db_session, test_user, whatsapp, llm, search_providers, scraper_http):
    """FastAPI TestClient authenticated as the purchaser test_user."""
    app = _client(db_session, test_user, whatsapp, llm, search_providers, scraper_http)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def admin_client(db_session, admin_user, whatsapp, llm, search_providers, scraper_http):
    app = _client(db_session, admin_user, whatsapp, llm, search_providers, scraper_http)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def viewer_client(db_session, viewer_user, whatsapp, llm, search_providers, scraper_http):
    app = _client(db_session, viewer_user, whatsapp, llm, search_providers, scraper_http)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def anon_client(db_session, whatsapp, llm, search_providers, scraper_http):
    """No auth override: requests go through the session cookie."""
    app = _client(db_session, None, whatsapp, llm, search_providers, scraper_http)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ── Excel fixtures ───────────────────────────────────────────────────

SAMPLE_ROWS = [
    ["Заявка на закупку №123 от 15.03.2024"],
    ["Важность:", "Высокая"],
    ["Дата закупки", "20.03.2024"],
    ["Валюта", "USD"],
    ["Номенклатура", "", "Содержание", "", "Ед. изм.", "Кол-во"],
    ["Цемент М400", "", "Мешки по 50 кг", "", "мешок", 10],
    ["Арматура А500С", "", "Диаметр 12 мм", "", "т", "2,5"],
    ["Перчатки рабочие", "", "", "", "", 0],
    ["Гвозди 100 мм", "", "", "", "", "100"],
    ["Виза руководителя"],
    ["Исполнитель:", "", "Иванов И.И. склад"],
]


@pytest.fixture()
def make_xlsx():
    """Factory: workbook bytes for a list of rows (defaults to SAMPLE_ROWS)."""
    import io

    import openpyxl

    def _make(rows: list[list] | None = None) -> bytes:
        wb = openpyxl.Workbook()
        ws = wb.active
        for row in rows if rows is not None else SAMPLE_ROWS:
            ws.append(row)
        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return _make

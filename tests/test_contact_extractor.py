"""
test_contact_extractor.py — Tests for app/services/contact_extractor.py

Covers:
- emails, phones, WhatsApp links, address and company name from HTML
- asset file names that look like emails are ignored
- fetch_contacts(): non-200, non-text and network errors give empty contacts

Called by: pytest
Depends on: app/services/contact_extractor.py
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.services.contact_extractor import extract_contacts, fetch_contacts

PAGE = """
<html>
<head><title>СтройМаркет Алматы | Цемент и бетон</title></head>
<body>
  <p>Отдел продаж: <a href="mailto:Sales@StroyMarket.kz">Sales@StroyMarket.kz</a></p>
  <p>Тел.: +7 (701) 123-45-67, 8 727 250 00 00</p>
  <p>Снова: +7 701 123 45 67</p>
  <a href="https://wa.me/77012223344">WhatsApp</a>
  <img src="/img/logo@2x.png">
  <p>Адрес: г. Алматы, Бостандыкский район, ул. Тимирязева 42</p>
</body>
</html>
"""


def test_extract_contacts_from_html():
    contacts = extract_contacts(PAGE)

    assert contacts.emails == ["sales@stroymarket.kz"]
    assert contacts.phones == ["77011234567", "77272500000"]
    assert contacts.whatsapp == ["77012223344"]
    assert contacts.company_name == "СтройМаркет Алматы"
    assert contacts.address.startswith("г. Алматы")
    assert "ул. Тимирязева" in contacts.address
    assert contacts.empty is False


def test_html_entities_in_title():
    contacts = extract_contacts("<title>ТОО &laquo;Бетон&raquo;</title>")
    assert contacts.company_name == "ТОО «Бетон»"
    assert contacts.empty is True


def test_plain_text_input():
    contacts = extract_contacts("Звоните 87011112233 или пишите info@beton.kz")
    assert contacts.phones == ["77011112233"]
    assert contacts.emails == ["info@beton.kz"]


def test_empty_page():
    contacts = extract_contacts("")
    assert contacts.empty is True
    assert contacts.company_name is None
    assert contacts.address is None


def _client(response=None, error=None) -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    client.get = AsyncMock(side_effect=error) if error else AsyncMock(return_value=response)
    return client


@pytest.mark.asyncio
async def test_fetch_contacts():
    response = httpx.Response(200, text=PAGE, headers={"content-type": "text/html; charset=utf-8"})
    contacts = await fetch_contacts(_client(response), "https://stroymarket.kz")
    assert contacts.emails == ["sales@stroymarket.kz"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, text="Not found", headers={"content-type": "text/html"}),
        httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"}),
    ],
)
async def test_fetch_contacts_skips_unusable_pages(response):
    contacts = await fetch_contacts(_client(response), "https://stroymarket.kz/price.pdf")
    assert contacts.empty is True


@pytest.mark.asyncio
async def test_fetch_contacts_network_error():
    client = _client(error=httpx.ConnectTimeout("timed out"))
    contacts = await fetch_contacts(client, "https://down.kz")
    assert contacts.empty is True

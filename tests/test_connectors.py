"""
test_connectors.py — Unit tests for the web search providers.

Mocks the shared httpx client to test request/parse logic without hitting
real APIs. Tests: Google CSE, Yandex (async operation + XML), SerpAPI, and
the retry loop in BaseConnector.

Called by: pytest
Depends on: app/connectors/*
"""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest


def _response(payload=None, status: int = 200, url: str = "https://example.test") -> httpx.Response:
    return httpx.Response(status, json=payload if payload is not None else {}, request=httpx.Request("GET", url))


def _http(get=None, post=None) -> MagicMock:
    http = MagicMock(spec=httpx.AsyncClient)
    http.get = AsyncMock(side_effect=get) if isinstance(get, list) else AsyncMock(return_value=get)
    http.post = AsyncMock(return_value=post)
    return http


# ── Base ─────────────────────────────────────────────────────────────


class TestBaseHelpers:
    def test_company_from_url(self):
        from app.connectors.base import company_from_url
        assert company_from_url("https://www.cement.kz/catalog") == "cement.kz"
        assert company_from_url("") == "Unknown"

    def test_make_result_defaults(self):
        from app.connectors.base import make_result
        r = make_result(title=None, url="https://beton.kz/", snippet=None, source="google")
        assert r == {
            "title": "",
            "url": "https://beton.kz/",
            "snippet": "",
            "company_name": "beton.kz",
            "price": None,
            "source": "google",
        }


# ── Google ───────────────────────────────────────────────────────────


class TestGoogleSearchConnector:
    def _connector(self, http, key="k", cx="cx"):
        from app.connectors.google_cse import GoogleSearchConnector
        return GoogleSearchConnector(http, key, cx)

    @pytest.mark.asyncio
    async def test_parse_items(self):
        http = _http(get=_response({
            "items": [
                {
                    "title": "Цемент М400 оптом",
                    "link": "https://www.cement.kz/m400",
                    "snippet": "Доставка по Алматы",
                    "pagemap": {"metatags": [{"og:site_name": "Цемент КЗ"}]},
                },
                {"title": "Без ссылки"},
                {"title": "Бетон", "link": "https://beton.kz/"},
            ]
        }))
        results = await self._connector(http).search("цемент м400")

        assert [r["url"] for r in results] == ["https://www.cement.kz/m400", "https://beton.kz/"]
        assert results[0]["company_name"] == "Цемент КЗ"
        assert results[1]["company_name"] == "beton.kz"
        params = http.get.await_args.kwargs["params"]
        assert params["q"] == "цемент м400"
        assert params["gl"] == "kz"

    @pytest.mark.asyncio
    async def test_unconfigured_returns_empty(self):
        http = _http()
        assert await self._connector(http, key="").search("цемент") == []
        http.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_items(self):
        http = _http(get=_response({"searchInformation": {"totalResults": "0"}}))
        assert await self._connector(http).search("редкий товар") == []


# ── Retries ──────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        from app.connectors.google_cse import GoogleSearchConnector
        http = _http(get=[_response(status=503), _response({"items": [{"link": "https://a.kz"}]})])
        c = GoogleSearchConnector(http, "k", "cx", max_retries=2)
        with patch("app.connectors.base.asyncio.sleep", new=AsyncMock()) as sleep:
            results = await c.search("цемент")
        assert len(results) == 1
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self):
        from app.connectors.google_cse import GoogleSearchConnector
        http = _http(get=[_response(status=500)] * 3)
        c = GoogleSearchConnector(http, "k", "cx", max_retries=2)
        with patch("app.connectors.base.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.HTTPStatusError):
                await c.search("цемент")
        assert http.get.await_count == 3


# ── Yandex ───────────────────────────────────────────────────────────

YANDEX_XML = """<?xml version="1.0" encoding="utf-8"?>
<yandexsearch version="1.0">
  <response>
    <results>
      <grouping>
        <group>
          <doc>
            <url>https://www.stroymarket.kz/cement</url>
            <domain>www.stroymarket.kz</domain>
            <title>Купить <hlword>цемент</hlword> М400</title>
            <passages>
              <passage>Цемент в мешках по 50 кг.</passage>
              <passage>Доставка по Казахстану.</passage>
            </passages>
          </doc>
        </group>
        <group>
          <doc>
            <url></url>
            <title>Пустая ссылка</title>
          </doc>
        </group>
      </grouping>
    </results>
  </response>
</yandexsearch>"""


class TestYandexSearchConnector:
    def test_parse_results(self):
        from app.connectors.yandex import parse_results
        results = parse_results(YANDEX_XML)
        assert len(results) == 1
        r = results[0]
        assert r["title"] == "Купить цемент М400"
        assert r["snippet"] == "Цемент в мешках по 50 кг. Доставка по Казахстану."
        assert r["company_name"] == "stroymarket.kz"
        assert r["source"] == "yandex"

    def test_parse_bad_xml(self):
        from app.connectors.yandex import parse_results
        with pytest.raises(ValueError):
            parse_results("<yandexsearch><unclosed>")

    @pytest.mark.asyncio
    async def test_operation_polling(self):
        from app.connectors.yandex import YandexSearchConnector
        raw = base64.b64encode(YANDEX_XML.encode("utf-8")).decode()
        http = _http(
            post=_response({"id": "op-1"}),
            get=[_response({"done": False}), _response({"done": True, "response": {"rawData": raw}})],
        )
        c = YandexSearchConnector(http, "key", "folder")
        with patch("app.connectors.yandex.asyncio.sleep", new=AsyncMock()):
            results = await c.search("цемент")

        assert [r["url"] for r in results] == ["https://www.stroymarket.kz/cement"]
        assert http.get.await_args.args[0].endswith("/operations/op-1")
        body = http.post.await_args.kwargs["json"]
        assert body["folderId"] == "folder"
        assert http.post.await_args.kwargs["headers"] == {"Authorization": "Api-Key key"}

    @pytest.mark.asyncio
    async def test_operation_error(self):
        from app.connectors.yandex import YandexSearchConnector
        http = _http(post=_response({"id": "op-2"}), get=[_response({"done": True, "error": {"code": 3}})])
        c = YandexSearchConnector(http, "key", "folder", max_retries=0)
        with pytest.raises(ValueError):
            await c.search("цемент")

    @pytest.mark.asyncio
    async def test_operation_timeout_returns_empty(self):
        from app.connectors.yandex import YandexSearchConnector
        c = YandexSearchConnector(_http(post=_response({"id": "op-3"}), get=_response({"done": False})), "key", "folder")
        with patch("app.connectors.yandex.asyncio.sleep", new=AsyncMock()):
            assert await c.search("цемент") == []


# ── SerpAPI ──────────────────────────────────────────────────────────


class TestSerpApiConnector:
    def test_price_from_rich_snippet(self):
        from app.connectors.serpapi import _price
        result = {"rich_snippet": {"bottom": {"extensions": ["В наличии", "2 500 ₸ за мешок"]}}}
        assert _price(result) == "2 500 ₸ за мешок"
        assert _price({"rich_snippet": {"bottom": {"extensions": ["В наличии"]}}}) is None
        assert _price({}) is None

    @pytest.mark.asyncio
    async def test_parse_organic_results(self):
        from app.connectors.serpapi import SerpApiConnector
        http = _http(get=_response({
            "search_metadata": {"status": "Success"},
            "organic_results": [
                {"title": "Цемент", "link": "https://cement.kz", "snippet": "Опт", "source": "Cement.kz"},
                {"title": "Без ссылки"},
                {"link": "https://beton.kz"},
            ],
        }))
        results = await SerpApiConnector(http, "key").search("цемент")
        assert [r["company_name"] for r in results] == ["Cement.kz", "beton.kz"]
        assert results[1]["title"] == "SerpAPI Result"

    @pytest.mark.asyncio
    async def test_failed_status_raises(self):
        from app.connectors.serpapi import SerpApiConnector
        http = _http(get=_response({"search_metadata": {"status": "Error"}, "error": "Invalid API key"}))
        with pytest.raises(ValueError):
            await SerpApiConnector(http, "key", max_retries=0).search("цемент")

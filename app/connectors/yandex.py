"""Yandex Search API connector (async operation, XML results)."""

import asyncio
import base64
import logging
import xml.etree.ElementTree as ET

from .base import BaseConnector, make_result

log = logging.getLogger(__name__)


class YandexSearchConnector(BaseConnector):
    name = "yandex"
    SEARCH_URL = "https://searchapi.api.yandexcloud.kz/v2/web/searchAsync"
    OPERATIONS_URL = "https://operation.api.yandexcloud.kz/operations"
    POLL_ATTEMPTS = 10
    POLL_INTERVAL = 1.0

    def __init__(self, http, api_key: str, folder_id: str, **kwargs):
        super().__init__(http, **kwargs)
        self.api_key = api_key
        self.folder_id = folder_id

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.folder_id)

    def _headers(self) -> dict:
        return {"Authorization": f"Api-Key {self.api_key}"}

    async def _do_search(self, query: str) -> list[dict]:
        r = await self.http.post(
            self.SEARCH_URL,
            headers=self._headers(),
            json={
                "query": {"searchType": "SEARCH_TYPE_RU", "queryText": query},
                "folderId": self.folder_id,
                "responseFormat": "FORMAT_XML",
            },
            timeout=self.timeout,
        )
        r.raise_for_status()
        operation_id = r.json()["id"]

        for _ in range(self.POLL_ATTEMPTS):
            op = await self.http.get(
                f"{self.OPERATIONS_URL}/{operation_id}", headers=self._headers(), timeout=self.timeout
            )
            op.raise_for_status()
            data = op.json()
            if data.get("done"):
                if data.get("error"):
                    raise ValueError(f"Yandex operation failed: {data['error']}")
                raw = (data.get("response") or {}).get("rawData")
                return parse_results(base64.b64decode(raw).decode("utf-8")) if raw else []
            await asyncio.sleep(self.POLL_INTERVAL)

        log.warning(f"Yandex operation {operation_id} did not finish in time")
        return []


def parse_results(xml_text: str) -> list[dict]:
    """Organic results from a Yandex XML response."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f"bad Yandex XML: {e}") from e
    results = []
    for doc in root.iter("doc"):
        url = (doc.findtext("url") or "").strip()
        if not url:
            continue
        title = "".join(doc.find("title").itertext()) if doc.find("title") is not None else ""
        passages = doc.find("passages")
        snippet = " ".join("".join(p.itertext()) for p in passages) if passages is not None else ""
        results.append(make_result(
            title=title.strip(),
            url=url,
            snippet=snippet.strip(),
            company_name=(doc.findtext("domain") or "").removeprefix("www.") or None,
            source="yandex",
        ))
    return results

"""SerpAPI (Google engine) connector."""

import logging

from .base import BaseConnector, make_result

log = logging.getLogger(__name__)

PRICE_MARKERS = ("₸", "₽", "грн", "$")


def _price(result: dict) -> str | None:
    extensions = ((result.get("rich_snippet") or {}).get("bottom") or {}).get("extensions") or []
    return next((ext for ext in extensions if any(m in ext for m in PRICE_MARKERS)), None)


class SerpApiConnector(BaseConnector):
    name = "serpapi"
    SEARCH_URL = "https://serpapi.com/search.json"

    def __init__(self, http, api_key: str, **kwargs):
        super().__init__(http, **kwargs)
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _do_search(self, query: str) -> list[dict]:
        r = await self.http.get(
            self.SEARCH_URL,
            params={"q": query, "hl": "ru", "gl": "kz", "api_key": self.api_key, "engine": "google", "num": 20},
            timeout=self.timeout,
        )
        r.raise_for_status()
        data = r.json()
        status = (data.get("search_metadata") or {}).get("status")
        if status != "Success":
            raise ValueError(f"SerpAPI search failed: {status or 'unknown status'}")
        return [
            make_result(
                title=res.get("title") or "SerpAPI Result",
                url=res.get("link", ""),
                snippet=res.get("snippet", ""),
                company_name=res.get("source"),
                price=_price(res),
                source=self.name,
            )
            for res in data.get("organic_results") or []
            if res.get("link")
        ]

"""Google Custom Search JSON API connector."""

import logging

from .base import BaseConnector, make_result

log = logging.getLogger(__name__)


class GoogleSearchConnector(BaseConnector):
    name = "google"
    SEARCH_URL = "https://www.googleapis.com/customsearch/v1"

    def __init__(self, http, api_key: str, cse_id: str, **kwargs):
        super().__init__(http, **kwargs)
        self.api_key = api_key
        self.cse_id = cse_id

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.cse_id)

    async def _do_search(self, query: str) -> list[dict]:
        r = await self.http.get(
            self.SEARCH_URL,
            params={"key": self.api_key, "cx": self.cse_id, "q": query, "num": 10, "gl": "kz", "hl": "ru"},
            timeout=self.timeout,
        )
        r.raise_for_status()
        items = r.json().get("items") or []
        return [
            make_result(
                title=item.get("title", ""),
                url=item.get("link", ""),
                snippet=item.get("snippet", ""),
                company_name=_site_name(item),
                source=self.name,
            )
            for item in items
            if item.get("link")
        ]


def _site_name(item: dict) -> str | None:
    for tags in (item.get("pagemap") or {}).get("metatags") or []:
        if tags.get("og:site_name"):
            return tags["og:site_name"]
    return None

"""Search provider base — retries and the normalized result shape."""

import asyncio
import logging
from abc import ABC, abstractmethod
from urllib.parse import urlparse

import httpx

log = logging.getLogger(__name__)


def company_from_url(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return "Unknown"
    return host.removeprefix("www.") or "Unknown"


def make_result(
    *, title: str, url: str, snippet: str, source: str, company_name: str | None = None, price: str | None = None
) -> dict:
    """Every provider returns dicts of this shape."""
    return {
        "title": title or "",
        "url": url or "",
        "snippet": snippet or "",
        "company_name": company_name or company_from_url(url or ""),
        "price": price,
        "source": source,
    }


class BaseConnector(ABC):
    """Web search provider. search() retries with exponential backoff."""

    name = "base"

    def __init__(self, http: httpx.AsyncClient, timeout: float = 30.0, max_retries: int = 2):
        self.http = http
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = 1.0

    @property
    @abstractmethod
    def configured(self) -> bool:
        pass

    async def search(self, query: str) -> list[dict]:
        if not self.configured:
            log.info(f"{self.name} is not configured, skipping")
            return []
        last_err = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._do_search(query)
            except (httpx.HTTPError, ValueError, KeyError) as e:
                last_err = e
                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff * 2**attempt)
                else:
                    log.warning(f"{self.name} failed for {query!r}: {e}")
        raise last_err

    @abstractmethod
    async def _do_search(self, query: str) -> list[dict]:
        pass

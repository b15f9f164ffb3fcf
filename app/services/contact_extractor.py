"""Contact extractor — pull supplier contacts out of a search result page."""

import html as html_lib
import re
from dataclasses import dataclass, field
from urllib.parse import unquote

import httpx
from loguru import logger

from ..config import settings
from ..utils.normalization import normalize_phone

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_RE = re.compile(r"(?:\+7|8)[\s(]*\d{3}[\s)]*\d{3}[\s-]?\d{2}[\s-]?\d{2}")
WA_LINK_RE = re.compile(r"(?:wa\.me/|api\.whatsapp\.com/send\?phone=)\+?(\d{10,15})")
TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
ADDRESS_RE = re.compile(
    r"((?:г\.|город|Республика Казахстан,?)\s*[А-ЯЁA-Z][^<>\n]{5,120}?(?:ул\.|улица|пр\.|проспект|мкр\.?)[^<>\n]{2,80})",
)
TAG_RE = re.compile(r"<[^>]+>")

# File-like matches that look like emails
_ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".css", ".js")
MAX_PAGE_BYTES = 500_000


@dataclass
class ExtractedContacts:
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    whatsapp: list[str] = field(default_factory=list)
    address: str | None = None
    company_name: str | None = None

    @property
    def empty(self) -> bool:
        return not (self.emails or self.phones or self.whatsapp)


def _unique(items) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def extract_contacts(page: str) -> ExtractedContacts:
    """Parse contacts from raw HTML or plain text."""
    page = page or ""
    text = html_lib.unescape(TAG_RE.sub(" ", page))

    emails = [
        e.lower() for e in EMAIL_RE.findall(unquote(page))
        if not e.lower().endswith(_ASSET_SUFFIXES)
    ]
    phones = [p for p in (normalize_phone(m) for m in PHONE_RE.findall(text)) if p]
    whatsapp = [p for p in (normalize_phone(m) for m in WA_LINK_RE.findall(page)) if p]

    title = TITLE_RE.search(page)
    company = html_lib.unescape(title.group(1)).strip() if title else None
    if company:
        company = re.split(r"\s[|\-–—]\s", company)[0].strip()[:255] or None

    address = ADDRESS_RE.search(text)
    return ExtractedContacts(
        emails=_unique(emails),
        phones=_unique(phones),
        whatsapp=_unique(whatsapp),
        address=" ".join(address.group(1).split()) if address else None,
        company_name=company,
    )


async def fetch_contacts(client: httpx.AsyncClient, url: str) -> ExtractedContacts:
    """Fetch a page and extract contacts. Network failures yield empty contacts."""
    try:
        r = await client.get(url, timeout=settings.scrape_timeout_seconds, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.debug("Contact fetch failed for {}: {}", url, e)
        return ExtractedContacts()
    if r.status_code != 200 or "text" not in r.headers.get("content-type", ""):
        return ExtractedContacts()
    return extract_contacts(r.text[:MAX_PAGE_BYTES])

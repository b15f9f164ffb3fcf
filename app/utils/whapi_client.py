"""Whapi.Cloud WhatsApp gateway client.

Built in the app lifespan with the shared httpx client and the token from
settings (a token saved through /api/settings replaces it at runtime via
set_token). Routers get it through dependencies.get_whatsapp.

Errors from the gateway are raised as WhapiError carrying the provider's
message; callers decide whether to store a FAILED message or return 500.
"""

from typing import Any

import httpx
from loguru import logger

from .normalization import whatsapp_recipient


class WhapiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WhapiClient:
    def __init__(self, http: httpx.AsyncClient, token: str, base_url: str = "https://gate.whapi.cloud"):
        self.http = http
        self.token = token
        self.base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def set_token(self, token: str) -> None:
        self.token = token
        logger.info("Whapi token updated")

    def _headers(self) -> dict:
        if not self.configured:
            raise WhapiError("WhatsApp gateway token is not configured")
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, *, raw: bool = False, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Whapi {} {} failed: {}", method, path, e)
            raise WhapiError(f"WhatsApp gateway unreachable: {e}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
                message = payload.get("error") or payload.get("message") or resp.text
            except ValueError:
                message = resp.text
            if isinstance(message, dict):
                message = message.get("message") or str(message)
            logger.warning("Whapi {} {} -> {}: {}", method, path, resp.status_code, str(message)[:200])
            raise WhapiError(str(message)[:500], resp.status_code)

        logger.debug("Whapi {} {} -> {}", method, path, resp.status_code)
        if raw:
            return resp.content
        return resp.json() if resp.content else {}

    async def send_message(self, phone: str, text: str) -> dict:
        """Send a text message. Returns the gateway response (contains message id)."""
        to = whatsapp_recipient(phone)
        data = await self._request("POST", "/messages/text", json={"to": to, "body": text})
        logger.info("WhatsApp message sent to {}", to)
        return data

    async def download_media(self, media_id: str) -> bytes:
        """Raw bytes of an attachment received in a chat."""
        return await self._request("GET", f"/media/{media_id}", raw=True)

    async def get_status(self) -> dict:
        """Connection status derived from the channel profile."""
        try:
            profile = await self._request("GET", "/users/profile")
        except WhapiError as e:
            if e.status_code in (401, 403) or not self.configured:
                return {"status": "disconnected", "error": str(e)}
            raise
        phone = str(profile.get("id", "")).split("@")[0] or None
        return {
            "status": "ready",
            "name": profile.get("name") or profile.get("pushname"),
            "phone_number": phone,
        }

    async def setup_webhook(self, url: str) -> dict:
        """Point the channel's message webhook at this app."""
        return await self._request(
            "PATCH",
            "/settings",
            json={"webhooks": [{"url": url, "events": [{"type": "messages", "method": "post"}], "mode": "body"}]},
        )

"""LLM client — OpenAI chat completions with retries and JSON parsing.

Purpose:
  One place for every LLM call in the app: supplier ranking, outreach
  message drafting and offer-comparison rationale. Wraps the chat
  completions endpoint with retry logic, token usage logging and tolerant
  JSON parsing.

Design rules:
  - Every call returns a result or None (callers fall back deterministically)
  - All failures are logged but never raised
  - Retries with exponential backoff on transient errors (429, 500, 502, 503, 504)

Lifecycle:
  Built in the app lifespan with the shared httpx client and stored on
  app.state.llm; routers get it through dependencies.get_llm.

Called by: services/supplier_selector, services/message_generator,
           services/decision_service
Depends on: httpx, loguru
"""

import asyncio
import json
import time
from typing import Any

import httpx
from loguru import logger

# HTTP status codes worth retrying
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0  # seconds


class LLMClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
    ):
        self.http = http
        self.api_key = api_key
        self.model = model
        self.url = base_url.rstrip("/") + "/chat/completions"

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _call(
        self,
        messages: list[dict],
        *,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: int = 30,
    ) -> dict | None:
        """Low-level call with retries and token logging. Returns the response dict or None."""
        if not self.enabled:
            logger.warning("OPENAI_API_KEY not set — skipping LLM call")
            return None

        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        for attempt in range(MAX_RETRIES):
            try:
                start = time.monotonic()
                resp = await self.http.post(
                    self.url, headers=self._headers(), json=body, timeout=timeout
                )
                elapsed = time.monotonic() - start

                if resp.status_code == 200:
                    data = resp.json()
                    usage = data.get("usage", {})
                    logger.info(
                        "LLM OK | model={} | in={} | out={} | {:.1f}s",
                        self.model,
                        usage.get("prompt_tokens", "?"),
                        usage.get("completion_tokens", "?"),
                        elapsed,
                    )
                    return data

                if resp.status_code in RETRYABLE_STATUSES and attempt < MAX_RETRIES - 1:
                    delay = BASE_DELAY * (2**attempt)
                    logger.warning(
                        "LLM {} (attempt {}/{}), retry in {:.1f}s: {}",
                        resp.status_code, attempt + 1, MAX_RETRIES, delay,
                        resp.text[:200],
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.warning("LLM API {}: {}", resp.status_code, resp.text[:200])
                return None

            except Exception as e:
                if attempt < MAX_RETRIES - 1:
                    delay = BASE_DELAY * (2**attempt)
                    logger.warning(
                        "LLM call failed (attempt {}/{}), retry in {:.1f}s: {}",
                        attempt + 1, MAX_RETRIES, delay, e,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.warning("LLM call failed after {} attempts: {}", MAX_RETRIES, e)
                return None

        return None

    async def text(
        self,
        prompt: str,
        *,
        system: str = "",
        max_tokens: int = 1500,
        temperature: float = 0.5,
        timeout: int = 30,
    ) -> str | None:
        """Free-form text response, or None on failure.

        Use for: outreach messages, comparison rationale.
        Temperature 0.1-0.3 for extraction, 0.5-0.7 for generation.
        """
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        data = await self._call(
            messages, max_tokens=max_tokens, temperature=temperature, timeout=timeout
        )
        if not data:
            return None
        return extract_text(data)

    async def json(
        self,
        prompt: str,
        *,
        system: str = "",
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: int = 30,
    ) -> dict | list | None:
        """Call expecting JSON output. Parses the response with fallback extraction."""
        json_system = system
        if system and "json" not in system.lower():
            json_system = system + " Return ONLY valid JSON, no markdown or explanation."

        text = await self.text(
            prompt,
            system=json_system,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
        )
        if not text:
            return None
        return safe_json_parse(text)


def extract_text(data: dict) -> str | None:
    """Extract text content from a chat completion response."""
    choices = data.get("choices", [])
    if not choices:
        return None
    return choices[0].get("message", {}).get("content")


def strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def safe_json_parse(text: str) -> dict | list | None:
    """Parse JSON from LLM output that may contain markdown fences or preamble."""
    if not text:
        return None

    cleaned = strip_fences(text)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start = cleaned.find(start_char)
        end = cleaned.rfind(end_char)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue

    logger.debug("JSON parse failed: {}...", text[:100])
    return None

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from baitbreaker.ratelimit import MinIntervalLimiter
from baitbreaker.storage.types import Verdict
from baitbreaker.utils import truncate


logger = logging.getLogger(__name__)


CHAT_PATH = "/v1/chat/completions"

CLASSIFY_SYSTEM = (
    "You judge whether a link title is clickbait: it relies on a curiosity gap, "
    "emotional triggers, or withholds the key information. "
    "Reply with a strict JSON object and nothing else, with fields "
    "is_clickbait (boolean), confidence (number between 0 and 1) and reason (short string)."
)

SUMMARIZE_SYSTEM = (
    "Summarize the article below in two or three plain sentences (a TL;DR). "
    "State the actual answer a curious reader is looking for. Plain text only."
)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class AIConfig:
    base_url: str
    api_key: str
    model: str
    timeout_seconds: int
    max_retries: int
    fallback_summary_chars: int = 1000


def _extract_json(text: str) -> dict | None:
    """First JSON object in a model reply, tolerating prose around it."""
    text = (text or "").strip()
    candidates = [text]
    m = _JSON_OBJECT.search(text)
    if m is not None and m.group(0) != text:
        candidates.append(m.group(0))

    for candidate in candidates:
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _normalize_verdict(payload: dict | None) -> Verdict:
    if not payload:
        return Verdict(is_clickbait=False, confidence=0.0, reason="Parse error")

    flag = payload.get("is_clickbait", payload.get("isClickbait", False))
    if isinstance(flag, str):
        flag = flag.strip().lower() in {"true", "yes", "1"}

    try:
        confidence = float(payload.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    confidence = max(0.0, min(1.0, confidence))

    return Verdict(is_clickbait=bool(flag), confidence=confidence, reason=str(payload.get("reason") or "").strip())


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _message_content(data: dict) -> str:
    choice = (data.get("choices") or [{}])[0] or {}
    for field in ("message", "delta"):
        content = (choice.get(field) or {}).get("content")
        if content:
            return str(content)
    return ""


class ModelClient:
    """OpenAI-compatible chat client used as classifier and summarizer.

    All calls share one rate limiter, so concurrent classification chunks
    and summaries queue up in front of the backend instead of fanning out.
    """

    def __init__(self, cfg: AIConfig, limiter: MinIntervalLimiter | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._cfg = cfg
        self._limiter = limiter or MinIntervalLimiter(0)
        self._client = httpx.AsyncClient(
            base_url=cfg.base_url.rstrip("/"),
            timeout=httpx.Timeout(cfg.timeout_seconds),
            headers={"Authorization": f"Bearer {cfg.api_key}"},
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._cfg.base_url and self._cfg.api_key and self._cfg.model)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: dict) -> dict:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(max(0, int(self._cfg.max_retries)) + 1),
            wait=wait_exponential_jitter(initial=1, max=20),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._limiter.acquire()
                resp = await self._client.post(CHAT_PATH, json=payload)
                resp.raise_for_status()
                return resp.json()
        raise AssertionError("unreachable")

    async def _chat(self, system: str, user: str, *, json_mode: bool, max_tokens: int) -> str:
        payload = {
            "model": self._cfg.model,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
            "temperature": 0.2,
            "max_tokens": max_tokens,
        }

        if json_mode:
            try:
                data = await self._post({**payload, "response_format": {"type": "json_object"}})
            except httpx.HTTPStatusError as e:
                # not every provider accepts response_format
                logger.debug("json mode rejected (%s), retrying as plain chat", e.response.status_code)
                data = await self._post(payload)
        else:
            data = await self._post(payload)

        usage = data.get("usage")
        if isinstance(usage, dict) and usage:
            logger.debug("model usage prompt=%s completion=%s", usage.get("prompt_tokens"), usage.get("completion_tokens"))
        return _message_content(data)

    async def classify(self, text: str) -> Verdict:
        if not self.configured:
            raise RuntimeError("model backend is not configured")
        content = await self._chat(CLASSIFY_SYSTEM, f'Title: "{text}"', json_mode=True, max_tokens=200)
        return _normalize_verdict(_extract_json(content))

    async def summarize(self, text: str) -> str:
        if not self.configured:
            return truncate(text, self._cfg.fallback_summary_chars)
        content = await self._chat(SUMMARIZE_SYSTEM, text, json_mode=False, max_tokens=400)
        return content.strip() or truncate(text, self._cfg.fallback_summary_chars)

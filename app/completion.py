"""Text-completion client with model fallback (Gemini generateContent wire format)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import httpx


logger = logging.getLogger("tripmate.completion")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_FALLBACK_MODEL = "gemini-2.0-flash"
OVERLOADED_STATUS = 503
USER_FACING_ERROR = "Failed to get response from AI assistant"

Message = Dict[str, Any]


class CompletionError(RuntimeError):
    """Raised once every model attempt failed; the message is safe to show users."""

    def __init__(self, message: str = USER_FACING_ERROR, attempts: list | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


@dataclass
class CompletionConfig:
    temperature: float = 0.7
    max_output_tokens: int = 2000
    json_mode: bool = False


def _split_data_url(url: str) -> tuple[str, str] | None:
    if not isinstance(url, str) or not url.startswith("data:") or "," not in url:
        return None
    header, data = url.split(",", 1)
    mime = header[5:].split(";", 1)[0] or "image/jpeg"
    if ";base64" not in header:
        return None
    return mime, data


def _to_parts(content: Any) -> List[dict]:
    if isinstance(content, str):
        return [{"text": content}] if content else []
    parts: List[dict] = []
    if not isinstance(content, list):
        return parts
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            parts.append({"text": part["text"]})
        elif part.get("type") == "image":
            inline = _split_data_url(part.get("data_url"))
            if inline is not None:
                mime, data = inline
                parts.append({"inline_data": {"mime_type": mime, "data": data}})
    return parts


def build_request_body(messages: Sequence[Message], config: CompletionConfig) -> dict:
    system_texts: List[str] = []
    contents: List[dict] = []
    for msg in messages:
        role = msg.get("role")
        parts = _to_parts(msg.get("content"))
        if not parts:
            continue
        if role == "system":
            system_texts.extend(p["text"] for p in parts if "text" in p)
            continue
        contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})

    generation: Dict[str, Any] = {
        "temperature": config.temperature,
        "maxOutputTokens": config.max_output_tokens,
    }
    if config.json_mode:
        generation["responseMimeType"] = "application/json"
    body: Dict[str, Any] = {"contents": contents, "generationConfig": generation}
    if system_texts:
        body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}
    return body


def extract_text(data: Any) -> str | None:
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return None
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    if not texts:
        return None
    return "".join(texts)


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        models: Sequence[str] | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._models = [m for m in (models or [DEFAULT_MODEL, DEFAULT_FALLBACK_MODEL]) if m]
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def models(self) -> list[str]:
        return list(self._models)

    def _url(self, model: str) -> str:
        return f"{self._base_url}/v1beta/models/{model}:generateContent"

    async def complete(self, messages: Sequence[Message], config: CompletionConfig | None = None) -> str:
        """Return the first model's reply text, falling back only on overload."""
        config = config or CompletionConfig()
        body = build_request_body(messages, config)
        attempts: list[dict] = []
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for model in self._models:
                try:
                    resp = await client.post(
                        self._url(model),
                        json=body,
                        headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
                    )
                except httpx.HTTPError as exc:
                    logger.warning("completion_network_error model=%s error=%s", model, exc)
                    attempts.append({"model": model, "error": str(exc)})
                    continue

                if resp.status_code == OVERLOADED_STATUS:
                    logger.warning("completion_overloaded model=%s", model)
                    attempts.append({"model": model, "status": resp.status_code})
                    continue
                if resp.status_code != 200:
                    logger.warning("completion_http_error model=%s status=%s body=%s", model, resp.status_code, resp.text[:200])
                    attempts.append({"model": model, "status": resp.status_code, "body": resp.text[:200]})
                    break

                try:
                    text = extract_text(resp.json())
                except ValueError as exc:
                    text = None
                    logger.warning("completion_body_invalid model=%s error=%s", model, exc)
                if text is None:
                    attempts.append({"model": model, "status": resp.status_code, "error": "empty completion"})
                    continue
                return text

        logger.error("completion_failed attempts=%s", attempts)
        raise CompletionError(attempts=attempts)


def client_from_env() -> CompletionClient | None:
    api_key = os.getenv("GEMINI_API_KEY", "").strip()
    if not api_key:
        return None
    models = [
        os.getenv("ASSISTANT_MODEL", "").strip() or DEFAULT_MODEL,
        os.getenv("ASSISTANT_FALLBACK_MODEL", "").strip() or DEFAULT_FALLBACK_MODEL,
    ]
    return CompletionClient(
        api_key,
        models=models,
        base_url=os.getenv("GEMINI_BASE_URL", "").strip() or None,
        timeout=float(os.getenv("ASSISTANT_TIMEOUT", "60")),
    )

"""
HTTP-клиенты LLM-бэкендов с OpenAI-совместимым API.

Единый контракт для каждого бэкенда:
- chat(model, messages, temperature?, max_tokens?) → ChatCompletion
- embeddings(model, texts) → EmbeddingResult
- ping() → bool (короткий таймаут, никогда не бросает исключений)

Ошибки сети → ProviderConnectionError / ProviderTimeoutError,
ответ не 2xx → ProviderAPIError, неожиданная форма ответа → ProviderResponseError.
"""

from __future__ import annotations

from abc import ABC
from typing import Any, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from config import (
    DEFAULT_GROQ_CHAT_MODEL,
    DEFAULT_OLLAMA_CHAT_MODEL,
    DEFAULT_OPENAI_CHAT_MODEL,
    LLM_CLOUD_PING_TIMEOUT,
    LLM_CLOUD_TIMEOUT,
    LLM_DEBUG,
    LLM_LOCAL_PING_TIMEOUT,
    LLM_LOCAL_TIMEOUT,
)
from errors import (
    ProviderAPIError,
    ProviderConnectionError,
    ProviderResponseError,
    ProviderTimeoutError,
    UnsupportedOperationError,
)
from logger import get_logger
from models import ChatCompletion, ChatMessage, EmbeddingResult, TokenUsage

log = get_logger(__name__)

MessageLike = Union[ChatMessage, dict]


def _preview(data: Any, size: int = 200) -> str:
    return repr(data)[:size]


def _serialize_messages(messages: Sequence[MessageLike]) -> list[dict]:
    result: list[dict] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            result.append({"role": message.role, "content": message.content})
        else:
            result.append({"role": message["role"], "content": message["content"]})
    return result


def _parse_usage(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    return TokenUsage(
        prompt_tokens=raw.get("prompt_tokens") or 0,
        completion_tokens=raw.get("completion_tokens") or 0,
        total_tokens=raw.get("total_tokens") or 0,
    )


def _error_message(resp: httpx.Response) -> str:
    """Достаёт текст ошибки из тела ответа бэкенда."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] or f"HTTP {resp.status_code}"
    if isinstance(body, dict) and body.get("error"):
        error = body["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
    return resp.text[:500] or f"HTTP {resp.status_code}"


class BaseHTTPProvider(ABC):
    """Общая часть OpenAI-совместимых провайдеров."""

    name: str = "base"
    supports_embeddings: bool = True
    default_chat_model: str = ""

    chat_path = "chat/completions"
    embeddings_path = "embeddings"
    ping_path = "models"

    request_timeout: float = LLM_CLOUD_TIMEOUT
    ping_timeout: float = LLM_CLOUD_PING_TIMEOUT

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        # Префикс пути в base_url (/openai/v1, /v1) сохраняется
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key
        self._transport = transport

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.base_url}>"

    # ─── HTTP ──────────────────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        return self.base_url + path.lstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post(self, path: str, payload: dict) -> dict:
        url = self._url(path)
        try:
            async with self._client(self.request_timeout) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                self.name, f"request timeout after {self.request_timeout:.0f}s ({url})"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderConnectionError(self.name, f"connection error ({url}): {exc}") from exc

        if resp.status_code >= 400:
            raise ProviderAPIError(
                self.name,
                f"API error: {_error_message(resp)}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderResponseError(
                self.name, f"response is not JSON: {resp.text[:200]}"
            ) from exc

        if not isinstance(data, dict):
            raise ProviderResponseError(self.name, f"unexpected response shape: {_preview(data)}")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise ProviderAPIError(self.name, f"API error: {message or error}", status_code=resp.status_code)
        return data

    # ─── Разбор ответов ────────────────────────────────────────────────────────

    def _extract_chat(self, data: dict) -> ChatCompletion:
        choices = data.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderResponseError(
                self.name, f"unexpected chat response shape: {_preview(data)}"
            )
        try:
            return ChatCompletion(content=content, usage=_parse_usage(data.get("usage")))
        except ValidationError as exc:
            raise ProviderResponseError(
                self.name, f"invalid chat response: {_preview(data)}"
            ) from exc

    def _extract_embeddings(self, data: dict, expected: int) -> EmbeddingResult:
        items = data.get("data")
        if not isinstance(items, list) or not items:
            raise ProviderResponseError(
                self.name, f"unexpected embeddings response shape: {_preview(data)}"
            )

        if all(isinstance(item, dict) and "index" in item for item in items):
            items = sorted(items, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in items:
            vector = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(vector, list):
                raise ProviderResponseError(self.name, f"embedding item without vector: {_preview(item)}")
            vectors.append(vector)

        if len(vectors) != expected:
            raise ProviderResponseError(
                self.name, f"expected {expected} embeddings, got {len(vectors)}"
            )
        try:
            return EmbeddingResult(vectors=vectors, usage=_parse_usage(data.get("usage")))
        except ValidationError as exc:
            raise ProviderResponseError(
                self.name, f"invalid embeddings response: {_preview(data)}"
            ) from exc

    # ─── Контракт провайдера ───────────────────────────────────────────────────

    def supports_model(self, model: str) -> bool:
        """Грубая проверка, что имя модели подходит этому бэкенду."""
        return bool(model) and ":" not in model

    async def chat(
        self,
        model: str,
        messages: Sequence[MessageLike],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion:
        payload: dict[str, Any] = {
            "model": model,
            "messages": _serialize_messages(messages),
            "temperature": 0.2 if temperature is None else temperature,
            "stream": False,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        data = await self._post(self.chat_path, payload)
        return self._extract_chat(data)

    async def embeddings(self, model: str, texts: Union[str, Sequence[str]]) -> EmbeddingResult:
        if not self.supports_embeddings:
            raise UnsupportedOperationError(self.name, "embeddings API is not supported")

        inputs = [texts] if isinstance(texts, str) else list(texts)
        data = await self._post(self.embeddings_path, {"model": model, "input": inputs})
        return self._extract_embeddings(data, expected=len(inputs))

    def _ping_ok(self, status_code: int) -> bool:
        return 200 <= status_code < 300

    async def ping(self) -> bool:
        url = self._url(self.ping_path)
        try:
            async with self._client(self.ping_timeout) as client:
                resp = await client.get(url, headers=self._headers())
        except Exception as exc:
            if LLM_DEBUG:
                log.warning("%s ping error (%s): %s", self.name, url, exc)
            return False

        ok = self._ping_ok(resp.status_code)
        if not ok and LLM_DEBUG:
            log.warning("%s ping failed: HTTP %s (%s)", self.name, resp.status_code, url)
        return ok


# ─── Провайдеры ────────────────────────────────────────────────────────────────

class GroqProvider(BaseHTTPProvider):
    """Groq Cloud: быстрый inference, только chat completion."""

    name = "groq"
    supports_embeddings = False
    default_chat_model = DEFAULT_GROQ_CHAT_MODEL


class OpenAIProvider(BaseHTTPProvider):
    """Официальный OpenAI API (chat + embeddings)."""

    name = "openai"
    default_chat_model = DEFAULT_OPENAI_CHAT_MODEL


class OllamaProvider(BaseHTTPProvider):
    """Локальный Ollama-сервер через OpenAI-совместимые пути /v1/*."""

    name = "ollama"
    default_chat_model = DEFAULT_OLLAMA_CHAT_MODEL

    chat_path = "v1/chat/completions"
    embeddings_path = "v1/embeddings"
    ping_path = ""

    request_timeout = LLM_LOCAL_TIMEOUT
    ping_timeout = LLM_LOCAL_PING_TIMEOUT

    def supports_model(self, model: str) -> bool:
        # Модели Ollama адресуются как "name:tag"
        return ":" in model

    def _ping_ok(self, status_code: int) -> bool:
        # Корень Ollama отвечает "Ollama is running"; любой ответ означает, что сервер жив
        return status_code < 500

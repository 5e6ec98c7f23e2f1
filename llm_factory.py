"""
Фабрика LLM-провайдеров.

Проверяет наличие ключей/адресов в переменных окружения, регистрирует
клиентов и распределяет между ними возможности:

- chat — всегда один фиксированный провайдер (Groq), без fallback:
  от него зависит совместимость промпта и формата ответа;
- embeddings — предпочтительный провайдер + упорядоченный список fallback.

Единый интерфейс: get_factory() возвращает ProviderFactory с методами
chat(), embeddings() и check_health().
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

from config import (
    EMBED_MODEL,
    EMBEDDINGS_SUBSTITUTE_PROVIDER,
    EMBEDDINGS_UNSUPPORTED,
    GROQ_API_KEY,
    GROQ_BASE_URL,
    LLM_CHAT_PROVIDER,
    LLM_EMBEDDINGS_PROVIDER,
    LLM_FALLBACK_PROVIDERS,
    LLM_FALLBACK_SILENT,
    LLM_MODEL,
    LLM_MODEL_OVERRIDES,
    OLLAMA_BASE_URL,
    OLLAMA_ENABLED,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
)
from errors import ConfigurationError, ProviderError, ProviderUnavailableError
from logger import get_logger
from models import ChatCompletion, EmbeddingResult
from providers import BaseHTTPProvider, GroqProvider, MessageLike, OllamaProvider, OpenAIProvider

log = get_logger(__name__)


# ─── Возможности и регистрация ────────────────────────────────────────────────

@dataclass(frozen=True)
class ChatCapability:
    """Чат обслуживает ровно один провайдер; переключение не предусмотрено."""

    provider: str = LLM_CHAT_PROVIDER


@dataclass(frozen=True)
class EmbeddingCapability:
    """Embeddings: предпочтительный провайдер и упорядоченная цепочка замены."""

    preferred: str = LLM_EMBEDDINGS_PROVIDER
    fallbacks: tuple[str, ...] = LLM_FALLBACK_PROVIDERS


@dataclass
class ProviderRegistration:
    provider_id: str
    client: BaseHTTPProvider
    last_ping: Optional[bool] = field(default=None)


class ProviderFactory:
    """Реестр LLM-клиентов с фиксированным chat и fallback для embeddings."""

    def __init__(
        self,
        providers: Mapping[str, BaseHTTPProvider],
        *,
        embeddings: Optional[EmbeddingCapability] = None,
        default_model: str = LLM_MODEL,
        embed_model: str = EMBED_MODEL,
        model_overrides: Optional[Mapping[str, str]] = None,
        silent: bool = LLM_FALLBACK_SILENT,
    ) -> None:
        self.chat_capability = ChatCapability()
        self.embedding_capability = embeddings or EmbeddingCapability()
        self.default_model = default_model
        self.embed_model = embed_model
        self.model_overrides = dict(LLM_MODEL_OVERRIDES if model_overrides is None else model_overrides)
        self.silent = silent
        self._registry: dict[str, ProviderRegistration] = {
            provider_id: ProviderRegistration(provider_id, client)
            for provider_id, client in providers.items()
        }

    # ─── Служебное ─────────────────────────────────────────────────────────────

    def _advise(self, message: str, *args) -> None:
        if not self.silent:
            log.warning(message, *args)

    async def _probe(self, registration: ProviderRegistration) -> bool:
        ok = await registration.client.ping()
        registration.last_ping = ok
        return ok

    def _supports_embeddings(self, provider_id: str) -> bool:
        registration = self._registry.get(provider_id)
        if registration is not None:
            return registration.client.supports_embeddings
        return provider_id not in EMBEDDINGS_UNSUPPORTED

    def resolve_chat_model(self, provider_id: str, requested: Optional[str] = None) -> str:
        """
        Выбирает имя модели для провайдера.

        Явная модель провайдера (LLM_MODEL_<PROVIDER>) важнее всего. Если запрошена
        общая модель по умолчанию, а провайдер её заведомо не понимает, подставляется
        безопасная модель провайдера.
        """
        override = self.model_overrides.get(provider_id)
        if override:
            return override

        model = (requested or self.default_model).strip()
        registration = self._registry.get(provider_id)
        if registration is None:
            return model

        client = registration.client
        if model == self.default_model and not client.supports_model(model):
            self._advise(
                "Модель %r не подходит провайдеру %s, используем %r",
                model, provider_id, client.default_chat_model,
            )
            return client.default_chat_model
        return model

    # ─── Chat ──────────────────────────────────────────────────────────────────

    async def chat(
        self,
        messages: Sequence[MessageLike],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion:
        """Chat completion через фиксированный провайдер. Fallback не выполняется."""
        provider_id = self.chat_capability.provider
        registration = self._registry.get(provider_id)
        if registration is None:
            raise ConfigurationError(
                f"Чат-провайдер {provider_id!r} не сконфигурирован "
                f"(укажите {provider_id.upper()}_API_KEY)."
            )

        if not await self._probe(registration):
            raise ProviderUnavailableError(
                provider_id,
                f"чат-провайдер {provider_id!r} недоступен (ping failed)",
                attempted=[provider_id],
            )

        resolved = self.resolve_chat_model(provider_id, model)
        return await registration.client.chat(
            resolved, messages, temperature=temperature, max_tokens=max_tokens
        )

    # ─── Embeddings ────────────────────────────────────────────────────────────

    def _embedding_candidates(self) -> list[str]:
        preferred = self.embedding_capability.preferred
        if not self._supports_embeddings(preferred):
            self._advise(
                "Провайдер %s не поддерживает embeddings, используем %s",
                preferred, EMBEDDINGS_SUBSTITUTE_PROVIDER,
            )
            preferred = EMBEDDINGS_SUBSTITUTE_PROVIDER

        candidates = [preferred]
        for provider_id in self.embedding_capability.fallbacks:
            if provider_id in candidates or not self._supports_embeddings(provider_id):
                continue
            candidates.append(provider_id)
        return candidates

    async def embeddings(
        self,
        texts: Union[str, Sequence[str]],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingResult:
        """Embeddings с перебором цепочки fallback."""
        candidates = self._embedding_candidates()
        attempted: list[str] = []
        last_error: Optional[Exception] = None

        for position, provider_id in enumerate(candidates):
            attempted.append(provider_id)
            registration = self._registry.get(provider_id)
            if registration is None:
                self._advise("Провайдер %s не инициализирован, переключаемся на fallback …", provider_id)
                continue

            if not await self._probe(registration):
                self._advise("Провайдер %s недоступен, переключаемся на fallback …", provider_id)
                continue

            try:
                result = await registration.client.embeddings(model or self.embed_model, texts)
            except ProviderError as exc:
                last_error = exc
                self._advise("Провайдер %s: ошибка embeddings — %s", provider_id, exc)
                continue

            if position > 0 and not self.silent:
                log.info("Embeddings: используется fallback-провайдер %s", provider_id)
            return result

        error = ProviderUnavailableError(
            candidates[0],
            f"ни один провайдер embeddings не доступен (проверены: {', '.join(attempted)})",
            attempted=attempted,
        )
        if last_error is not None:
            raise error from last_error
        raise error

    # ─── Состояние ─────────────────────────────────────────────────────────────

    async def check_health(self) -> dict[str, bool]:
        """Проверяет доступность всех зарегистрированных провайдеров параллельно."""
        registrations = list(self._registry.values())
        results = await asyncio.gather(*(self._probe(reg) for reg in registrations))
        return {reg.provider_id: ok for reg, ok in zip(registrations, results)}

    def get_provider(self, provider_id: str) -> Optional[BaseHTTPProvider]:
        registration = self._registry.get(provider_id)
        return registration.client if registration else None

    def available_providers(self) -> list[str]:
        return list(self._registry)

    def describe(self) -> dict:
        """Текущая конфигурация возможностей (для /health и логов)."""
        return {
            "chat_provider": self.chat_capability.provider,
            "embeddings_provider": self.embedding_capability.preferred,
            "fallback_providers": list(self.embedding_capability.fallbacks),
            "registered": self.available_providers(),
            "last_ping": {pid: reg.last_ping for pid, reg in self._registry.items()},
        }


# ─── Провайдеры из окружения ──────────────────────────────────────────────────

def _try_groq() -> Optional[BaseHTTPProvider]:
    """Groq Cloud — основной и единственный чат-провайдер."""
    if not GROQ_API_KEY:
        return None
    log.info("LLM-провайдер: Groq (%s)", GROQ_BASE_URL)
    return GroqProvider(GROQ_BASE_URL, GROQ_API_KEY)


def _try_ollama() -> Optional[BaseHTTPProvider]:
    """Локальный Ollama — embeddings / векторный поиск."""
    if not OLLAMA_ENABLED:
        return None
    log.info("LLM-провайдер: Ollama (%s)", OLLAMA_BASE_URL)
    return OllamaProvider(OLLAMA_BASE_URL)


def _try_openai() -> Optional[BaseHTTPProvider]:
    """OpenAI напрямую."""
    if not OPENAI_API_KEY:
        return None
    log.info("LLM-провайдер: OpenAI (%s)", OPENAI_BASE_URL)
    return OpenAIProvider(OPENAI_BASE_URL, OPENAI_API_KEY)


_PROVIDERS = [
    ("groq", _try_groq),
    ("ollama", _try_ollama),
    ("openai", _try_openai),
]

_cached_factory: Optional[ProviderFactory] = None


def _warn_misconfiguration() -> None:
    env_chat = os.getenv("LLM_CHAT_PROVIDER", "").strip()
    if env_chat and env_chat != LLM_CHAT_PROVIDER:
        log.warning(
            "LLM_CHAT_PROVIDER=%r будет проигнорирован: для чата используется только %s.",
            env_chat, LLM_CHAT_PROVIDER,
        )
    if ":" in LLM_MODEL:
        log.warning(
            "LLM_MODEL=%r похожа на модель Ollama (с ':'). Для Groq задайте модель из каталога Groq.",
            LLM_MODEL,
        )


def build_providers() -> dict[str, BaseHTTPProvider]:
    """Создаёт клиентов для всех провайдеров, у которых есть настройки."""
    providers: dict[str, BaseHTTPProvider] = {}
    for name, factory in _PROVIDERS:
        log.debug("Проверяю провайдер: %s …", name)
        client = factory()
        if client is not None:
            providers[name] = client
    return providers


def get_factory() -> ProviderFactory:
    """Возвращает фабрику провайдеров; результат кешируется."""
    global _cached_factory
    if _cached_factory is not None:
        return _cached_factory

    _warn_misconfiguration()
    providers = build_providers()
    if LLM_CHAT_PROVIDER not in providers:
        log.critical(
            "Чат-провайдер %s не сконфигурирован. Заполните .env — см. .env.example.",
            LLM_CHAT_PROVIDER,
        )
    _cached_factory = ProviderFactory(providers)
    return _cached_factory


def reset_factory_cache() -> None:
    """Сбросить кеш (полезно при смене ключей в рантайме)."""
    global _cached_factory
    _cached_factory = None


# ─── CLI: ручная проверка доступности ─────────────────────────────────────────

if __name__ == "__main__":
    async def _manual_health() -> None:
        factory = get_factory()
        health = await factory.check_health()
        for provider_id, ok in health.items():
            log.info("%-8s %s", provider_id, "OK" if ok else "недоступен")
        if not any(health.values()):
            log.error("Ни один LLM-провайдер не доступен: %s", health)

    asyncio.run(_manual_health())

"""
Иерархия ошибок ассистента.

У каждой ошибки два текста: подробный (str(exc)) — для логов,
и безопасный user_message — для показа пользователю в чате.
"""

from __future__ import annotations

from typing import Optional, Sequence


class AssistantError(Exception):
    """Базовая ошибка ядра подбора техники."""

    user_message = "Произошла ошибка при обработке запроса. Попробуйте ещё раз."


class ConfigurationError(AssistantError):
    """Не настроен обязательный провайдер или отсутствуют ключи доступа."""

    user_message = "Сервис подбора временно недоступен. Попробуйте позже."


class InputError(AssistantError, ValueError):
    """Некорректный ввод пользователя (например, пустое сообщение)."""

    user_message = "Пожалуйста, опишите, какая техника вам нужна."


# ─── Ошибки LLM-провайдеров ────────────────────────────────────────────────────

class ProviderError(AssistantError):
    """Ошибка при обращении к LLM-бэкенду."""

    user_message = "Сервис подбора временно недоступен. Попробуйте ещё раз чуть позже."

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderConnectionError(ProviderError):
    """Бэкенд недоступен по сети."""


class ProviderTimeoutError(ProviderConnectionError):
    """Запрос к бэкенду не уложился в таймаут."""


class ProviderAPIError(ProviderError):
    """Бэкенд ответил кодом не 2xx или явным объектом error."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(provider, message)


class ProviderResponseError(ProviderError):
    """Ответ бэкенда не соответствует ожидаемой схеме."""


class UnsupportedOperationError(ProviderError):
    """Провайдер не поддерживает операцию (например, embeddings)."""


class ProviderUnavailableError(ProviderError):
    """Ни один подходящий провайдер не прошёл проверку доступности."""

    def __init__(self, provider: str, message: str, attempted: Sequence[str] = ()) -> None:
        self.attempted = list(attempted)
        super().__init__(provider, message)


# ─── Ошибки протокола диалога ─────────────────────────────────────────────────

class ProtocolError(AssistantError):
    """Ответ модели не является ровно одним JSON-объектом ask/final."""

    user_message = "Не удалось разобрать ответ. Попробуйте переформулировать запрос."

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class SchemaError(AssistantError):
    """Валидатор отклонил запрос: после очистки не осталось ни одного поля."""

    user_message = (
        "Система не смогла понять достаточно деталей запроса. "
        "Уточните, пожалуйста, тип техники или её характеристики."
    )

    def __init__(self, message: str, issues: Sequence[str] = ()) -> None:
        self.issues = list(issues)
        super().__init__(message)


class StaleIndexWarning(UserWarning):
    """Обновление индекса каталога не удалось — используется предыдущий снимок."""

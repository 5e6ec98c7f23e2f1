"""
Интерактивный построитель SearchQuery.

Ведёт диалог с LLM: на каждую реплику пользователя модель отвечает либо
уточняющим вопросом {"action":"ask"}, либо итоговым запросом {"action":"final"}.
Итоговый запрос всегда проходит через query_validator.

Один экземпляр — один разговор. Параллельные вызовы next() для одного
экземпляра не допускаются: их сериализует владелец сессии.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Protocol, Sequence, Union

from config import (
    DIALOG_FINAL_MARKER,
    DIALOG_MAX_CONTEXT_MESSAGES,
    DIALOG_MAX_TURNS,
    DIALOG_SYSTEM_PROMPT,
    DIALOG_TEMPERATURE,
    DIALOG_TURN_LIMIT_NUDGE,
    SEARCH_SUMMARY_MAX_CHARS,
)
from errors import InputError, ProtocolError
from logger import get_logger, log_issues
from models import AskStep, ChatCompletion, ChatMessage, FinalStep, QueryStep
from query_validator import validate_with_issues

log = get_logger(__name__)


class ChatBackend(Protocol):
    async def chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion: ...


# ─── Разбор ответа модели ─────────────────────────────────────────────────────

def extract_json_object(raw: str) -> Optional[str]:
    """
    Первый сбалансированный фрагмент {...} в тексте.

    Фигурные скобки внутри строковых литералов не учитываются.
    Возвращает None, если открывающей скобки нет или она не закрыта.
    """
    start = raw.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(raw)):
        char = raw[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return raw[start : pos + 1]
    return None


def parse_step_json(raw: str) -> tuple[str, Any]:
    """
    Разбирает ответ модели в пару (action, payload).

    payload — текст вопроса для "ask" и сырой объект query для "final".
    Всё остальное — ProtocolError.
    """
    snippet = extract_json_object(raw)
    if snippet is None:
        raise ProtocolError("Ответ модели не содержит JSON-объекта", raw=raw)

    try:
        data = json.loads(snippet)
    except ValueError as exc:
        raise ProtocolError(f"Ответ модели содержит некорректный JSON: {exc}", raw=raw) from exc

    if not isinstance(data, dict):
        raise ProtocolError("Ответ модели не является JSON-объектом", raw=raw)

    action = data.get("action")
    if action == "ask":
        question = data.get("question")
        if not isinstance(question, str) or not question.strip():
            raise ProtocolError("action=ask без непустого question", raw=raw)
        return "ask", question.strip()

    if action == "final":
        query = data.get("query")
        if not isinstance(query, dict):
            raise ProtocolError("action=final без объекта query", raw=raw)
        return "final", query

    raise ProtocolError(f"Неизвестное action в ответе модели: {action!r}", raw=raw)


def _to_message(item: Union[ChatMessage, dict]) -> ChatMessage:
    if isinstance(item, ChatMessage):
        return item
    return ChatMessage.model_validate(item)


# ─── Построитель ───────────────────────────────────────────────────────────────

class InteractiveQueryBuilder:
    """
    Диалоговая машина состояний "уточнение → итоговый запрос".

    История делится на две части: неизменяемый префикс (системный промпт и
    дополнительные системные сообщения сессии) и собственно переписку. Префикс
    никогда не вытесняется. Из переписки при превышении лимита удаляются самые
    старые реплики user/assistant вместе с системными заметками, стоявшими
    перед ними.
    """

    def __init__(
        self,
        factory: ChatBackend,
        *,
        model: Optional[str] = None,
        max_turns: int = DIALOG_MAX_TURNS,
        max_context_messages: int = DIALOG_MAX_CONTEXT_MESSAGES,
        temperature: float = DIALOG_TEMPERATURE,
        history: Optional[Iterable[Union[ChatMessage, dict]]] = None,
        extra_system_messages: Iterable[str] = (),
    ) -> None:
        if max_context_messages < 2:
            raise ValueError("max_context_messages должен быть не меньше 2")

        self.factory = factory
        self.model = model
        self.max_turns = max_turns
        self.max_context_messages = max_context_messages
        self.temperature = temperature

        self._prefix: list[ChatMessage] = [ChatMessage(role="system", content=DIALOG_SYSTEM_PROMPT)]
        self._prefix.extend(
            ChatMessage(role="system", content=text)
            for text in extra_system_messages
            if text and text.strip()
        )
        self._history: list[ChatMessage] = [_to_message(item) for item in history or ()]
        self.turns = self._count_open_turns()
        self._trim()

    # ─── Состояние ─────────────────────────────────────────────────────────────

    @property
    def messages(self) -> list[ChatMessage]:
        """Полный контекст, который уходит в модель."""
        return self._prefix + self._history

    def get_history(self) -> list[ChatMessage]:
        """Переписка без префикса — для сохранения в хранилище сессий."""
        return list(self._history)

    def _count_open_turns(self) -> int:
        # Реплики пользователя после последнего итогового ответа
        turns = 0
        for message in reversed(self._history):
            if message.role == "assistant" and message.content == DIALOG_FINAL_MARKER:
                break
            if message.role == "user":
                turns += 1
        return turns

    def _conversation_size(self) -> int:
        return sum(1 for m in self._history if m.role != "system")

    def _trim(self) -> None:
        excess = self._conversation_size() - self.max_context_messages
        if excess <= 0:
            return

        cut = 0
        dropped = 0
        while dropped < excess:
            if self._history[cut].role != "system":
                dropped += 1
            cut += 1
        # Системные заметки, которые относились к удалённым репликам, уходят вместе с ними
        while cut < len(self._history) and self._history[cut].role == "system":
            cut += 1

        del self._history[:cut]
        log.debug("Контекст диалога обрезан: удалено %d сообщений", cut)

    def _drop_nudges(self) -> None:
        # Напоминания о лимите относятся к завершённому поиску
        self._history = [
            m for m in self._history
            if not (m.role == "system" and m.content == DIALOG_TURN_LIMIT_NUDGE)
        ]

    def _append(self, role: str, content: str) -> None:
        self._history.append(ChatMessage(role=role, content=content))

    # ─── Переходы ──────────────────────────────────────────────────────────────

    async def next(self, user_text: str) -> QueryStep:
        """Отправить реплику пользователя и получить следующий шаг диалога."""
        text = (user_text or "").strip()
        if not text:
            raise InputError("Пустой ввод пользователя")

        self._append("user", text)
        self.turns += 1
        if self.turns > self.max_turns:
            log.info("Лимит уточнений (%d) превышен — просим best-effort final", self.max_turns)
            self._append("system", DIALOG_TURN_LIMIT_NUDGE)
        self._trim()

        response = await self.factory.chat(
            self.messages, model=self.model, temperature=self.temperature
        )
        action, payload = parse_step_json(response.content)

        if action == "ask":
            self._append("assistant", payload)
            self._trim()
            log.info("Диалог: уточняющий вопрос (ход %d)", self.turns)
            return AskStep(question=payload)

        query, issues = validate_with_issues(payload)
        log_issues(log, "Замечания к итоговому запросу", issues)
        self._drop_nudges()
        self._append("assistant", DIALOG_FINAL_MARKER)
        self._trim()
        log.info("Диалог: итоговый запрос после %d ходов: %s", self.turns, query.to_payload())
        self.turns = 0
        return FinalStep(query=query, issues=issues)

    def add_search_results(self, count: int, summary: str) -> None:
        """Добавляет в контекст краткую сводку найденного для последующих уточнений."""
        summary = (summary or "").strip()
        if len(summary) > SEARCH_SUMMARY_MAX_CHARS:
            summary = summary[:SEARCH_SUMMARY_MAX_CHARS - 1].rstrip() + "…"

        lines = [f"Результаты поиска по последнему запросу: найдено {count}."]
        if summary:
            lines.append(f"Лучшие позиции:\n{summary}")
        lines.append(
            "Используй эти данные только как контекст для уточнений пользователя "
            "(\"подешевле\", \"другой бренд\" и т.п.). Не придумывай новых фактов."
        )
        self._append("system", "\n".join(lines))
        self._trim()

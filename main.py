"""
FastAPI-бэкенд ассистента подбора спецтехники.

Реализует:
- диалог с LLM, который превращает свободный запрос в проверенный SearchQuery;
- поиск по каталогу с исправлением категории и подсказками при пустой выдаче;
- единый эндпоинт /api/chat для веб-виджета и Telegram.

Запуск:
    uvicorn main:app --host 127.0.0.1 --port 8080 --reload
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware

from catalog import CatalogService, format_results, summarize_for_dialog
from catalog_index import CatalogIndexCache
from config import CATEGORY_PICK_MIN_SCORE, USE_FACTORY_EMBEDDINGS
from errors import AssistantError
from llm_factory import ProviderFactory, get_factory
from logger import get_logger
from models import (
    AskStep,
    CatalogSearchResult,
    CatalogSuggestions,
    CategoryInfo,
    ChatAction,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    SessionRequest,
)
from query_builder import InteractiveQueryBuilder
from text_match import pick_category_from_seed
from vector_store import ChromaEquipmentStore

log = get_logger(__name__)

GENERIC_ERROR_REPLY = AssistantError.user_message


# ─── Контейнер зависимостей ───────────────────────────────────────────────────

@dataclass
class AppContainer:
    factory: ProviderFactory
    store: ChromaEquipmentStore
    index: CatalogIndexCache
    catalog: CatalogService


def build_container(*, auto_refresh: bool = True) -> AppContainer:
    factory = get_factory()
    store = ChromaEquipmentStore(embedder=factory if USE_FACTORY_EMBEDDINGS else None)
    index = CatalogIndexCache(store, auto_refresh=auto_refresh)
    return AppContainer(
        factory=factory,
        store=store,
        index=index,
        catalog=CatalogService(store, index),
    )


_container: Optional[AppContainer] = None


def get_container() -> AppContainer:
    global _container
    if _container is None:
        _container = build_container()
    return _container


# ─── Хранилище сессий (in-memory) ─────────────────────────────────────────────

@dataclass
class Session:
    history: list[ChatMessage] = field(default_factory=list)
    category: Optional[str] = None          # категория последнего поиска
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


_sessions: dict[str, Session] = defaultdict(Session)


def reset_session(session_id: str) -> bool:
    return _sessions.pop(session_id, None) is not None


# ─── Lifespan (запуск/остановка) ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Запуск FastAPI-бэкенда …")
    container = get_container()

    if container.store.count() == 0:
        log.info("ChromaDB пуста — попытка индексации из файла каталога …")
        try:
            if await container.store.reindex_from_file():
                container.index.refresh()
        except AssistantError as exc:
            log.error("Не удалось проиндексировать каталог: %s", exc)

    yield

    container.index.stop_auto_refresh()
    log.info("FastAPI-бэкенд остановлен.")


# ─── Приложение ────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Ассистент подбора спецтехники",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Бизнес-логика ─────────────────────────────────────────────────────────────

def _grounding_messages(container: AppContainer, session: Session, message: str) -> list[str]:
    """Системные подсказки для диалога: категории каталога и параметры выбранной категории."""
    extras: list[str] = []

    categories = container.index.get_categories_for_prompt(limit=30)
    if categories:
        extras.append(f"Категории техники в каталоге:\n{categories}")

    category = session.category
    if not category:
        index = container.index.get_index()
        names = [c.name for c in index.categories] if index else []
        pick = pick_category_from_seed(message, names)
        if pick and pick.score >= CATEGORY_PICK_MIN_SCORE:
            log.info("Категория по фразе пользователя: %s (%.2f)", pick.name, pick.score)
            extras.append(f"Вероятная категория запроса: «{pick.name}».")
            category = pick.name

    if category:
        hint = container.catalog.get_category_parameters_hint(category)
        if hint:
            extras.append(hint)
    return extras


def _describe_suggestions(suggestions: Optional[CatalogSuggestions]) -> str:
    if suggestions is None:
        return ""
    lines: list[str] = []
    if suggestions.similar_categories:
        lines.append("Возможно, вы имели в виду: " + ", ".join(suggestions.similar_categories))
    if suggestions.popular_categories:
        lines.append("Популярные категории: " + ", ".join(c.name for c in suggestions.popular_categories))
    if suggestions.available_brands:
        lines.append("Доступные бренды: " + ", ".join(suggestions.available_brands))
    if suggestions.example_queries:
        lines.append("Примеры запросов:\n" + "\n".join(f"• {q}" for q in suggestions.example_queries))
    return "\n".join(lines)


def _results_reply(result: CatalogSearchResult) -> str:
    parts: list[str] = []
    if result.message:
        parts.append(result.message)
    if result.items:
        parts.append(f"Нашёл {result.total} подходящих позиций:\n{format_results(result.items)}")
        parts.append("Можно уточнить запрос: например, «подешевле» или «другой бренд».")
    else:
        parts.append("По вашему запросу ничего не найдено.")
        suggestions = _describe_suggestions(result.suggestions)
        if suggestions:
            parts.append(suggestions)
    return "\n\n".join(parts)


async def process_message(request: ChatRequest, container: Optional[AppContainer] = None) -> ChatResponse:
    """
    Единая бизнес-логика обработки сообщения (веб + телеграм).

    Один ход диалога: подсказки из индекса → шаг LLM → (итоговый запрос) поиск
    по каталогу → сводка результатов в контекст диалога.
    """
    container = container or get_container()
    session = _sessions[request.session_id]
    message = request.message.strip()

    async with session.lock:
        builder = InteractiveQueryBuilder(
            container.factory,
            history=session.history,
            extra_system_messages=_grounding_messages(container, session, message),
        )

        try:
            step = await builder.next(message)
        except AssistantError as exc:
            log.error("Ошибка диалога [session=%s]: %s", request.session_id[:8], exc)
            return ChatResponse(reply=exc.user_message, action=ChatAction.ERROR)
        finally:
            session.history = builder.get_history()

        if isinstance(step, AskStep):
            return ChatResponse(reply=step.question, action=ChatAction.ASK_QUESTION)

        try:
            result = await container.catalog.search_equipment(step.query)
        except Exception as exc:
            log.exception("Ошибка поиска по каталогу: %s", exc)
            return ChatResponse(reply=GENERIC_ERROR_REPLY, action=ChatAction.ERROR, query=step.query)

        builder.add_search_results(result.total, summarize_for_dialog(result.items))
        session.history = builder.get_history()
        if step.query.category:
            session.category = step.query.category

        return ChatResponse(
            reply=_results_reply(result),
            action=ChatAction.SHOW_RESULTS if result.items else ChatAction.NO_RESULTS,
            query=step.query,
            items=result.items,
            total=result.total,
            strategy=result.used_strategy,
            suggestions=result.suggestions,
        )


# ─── API Endpoints ─────────────────────────────────────────────────────────────

@app.post("/api/chat", response_model=ChatResponse)
async def chat_endpoint(
    request: ChatRequest,
    container: AppContainer = Depends(get_container),
) -> ChatResponse:
    """Универсальный эндпоинт чата для веб-виджета и Telegram."""
    log.info(
        "Запрос [%s] session=%s: %s",
        request.source,
        request.session_id[:8],
        request.message[:100],
    )
    response = await process_message(request, container)
    log.info(
        "Ответ [%s] action=%s: %s",
        request.source,
        response.action.value,
        response.reply[:100],
    )
    return response


@app.post("/api/reset")
async def reset_endpoint(request: SessionRequest) -> dict:
    """Сброс диалога: история и выбранная категория удаляются."""
    return {"session_id": request.session_id, "reset": reset_session(request.session_id)}


@app.get("/api/categories", response_model=list[CategoryInfo])
async def categories_endpoint(
    limit: int = Query(20, ge=1, le=100),
    container: AppContainer = Depends(get_container),
) -> list[CategoryInfo]:
    return container.index.get_popular_categories(limit)


@app.get("/api/categories/similar")
async def similar_categories_endpoint(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(5, ge=1, le=20),
    container: AppContainer = Depends(get_container),
) -> dict:
    return {"query": q, "similar": container.index.find_similar_categories(q, limit)}


@app.get("/health")
async def health_check(container: AppContainer = Depends(get_container)) -> dict:
    """Проверка статуса системы."""
    providers = await container.factory.check_health()
    index = container.index.get_index()
    chat_ok = providers.get(container.factory.chat_capability.provider, False)

    return {
        "status": "ok" if chat_ok and index is not None else "degraded",
        "providers": providers,
        "llm": container.factory.describe(),
        "catalog_index": {
            "ready": index is not None,
            "total_items": index.total_items if index else 0,
            "categories": len(index.categories) if index else 0,
            "last_updated": index.last_updated.isoformat() if index else None,
            "stale": container.index.last_refresh_error is not None,
        },
    }


# ─── Точка входа ──────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)

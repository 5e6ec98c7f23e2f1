"""
CatalogService — доменный слой поиска по каталогу.

Не знает о LLM, Telegram и деталях хранилища: принимает проверенный
SearchQuery, нормализует его, сверяет категорию с индексом каталога и
передаёт запрос поисковому движку. При пустой выдаче добавляет подсказки.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from config import EXAMPLE_QUERIES, SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT
from logger import get_logger
from models import CatalogSearchResult, CatalogSuggestions, EquipmentSummary, SearchQuery

log = get_logger(__name__)

_FILTER_FIELDS = ("text", "category", "subcategory", "brand", "region")


class SearchEngine(Protocol):
    async def search(self, query: SearchQuery) -> CatalogSearchResult: ...


# ─── Форматирование ────────────────────────────────────────────────────────────

def format_price(price) -> str:
    if price is None:
        return "цена по запросу"
    if isinstance(price, bool):
        return str(price)
    if isinstance(price, (int, float)):
        if float(price).is_integer():
            text = f"{int(price):,}"
        else:
            text = f"{price:,.2f}"
        return text.replace(",", " ") + " ₽"
    return str(price)


def format_summary(item: EquipmentSummary, max_parameters: int = 3) -> str:
    """Одна строка: название, бренд, категория, цена и первые параметры."""
    preview = ", ".join(
        f"{key}: {value}"
        for key, value in list(item.main_parameters.items())[:max_parameters]
    )
    origin = ", ".join(part for part in (item.brand, item.category) if part)
    line = item.name
    if origin:
        line += f" ({origin})"
    line += f" — {format_price(item.price)}"
    if preview:
        line += f" | {preview}"
    return line


def format_results(items: Sequence[EquipmentSummary]) -> str:
    return "\n".join(f"{i}. {format_summary(item)}" for i, item in enumerate(items, start=1))


def summarize_for_dialog(items: Sequence[EquipmentSummary], top: int = 5) -> str:
    """Краткая сводка лучших позиций для контекста диалога."""
    return format_results(items[:top])


# ─── Сервис ────────────────────────────────────────────────────────────────────

def normalize_query(query: SearchQuery) -> SearchQuery:
    """Убирает пустые строки и подставляет limit по умолчанию."""
    data = query.model_dump()
    for field in _FILTER_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and not value.strip():
            data[field] = None

    limit = data.get("limit")
    if not isinstance(limit, int) or limit <= 0:
        data["limit"] = SEARCH_DEFAULT_LIMIT
    else:
        data["limit"] = min(limit, SEARCH_MAX_LIMIT)

    if not data.get("parameters"):
        data["parameters"] = None
    return SearchQuery(**data)


class CatalogService:
    """Поиск оборудования по структурированному запросу."""

    def __init__(self, engine: SearchEngine, index=None) -> None:
        self.engine = engine
        self.index = index  # CatalogIndexCache или None (без сверки категорий)

    def verify_category(self, query: SearchQuery) -> tuple[SearchQuery, Optional[str]]:
        """
        Сверяет категорию с индексом каталога.

        Неизвестная категория заменяется ближайшей похожей; если индекс ещё не
        построен или похожих нет, запрос остаётся как есть.
        """
        if self.index is None or not query.category or self.index.get_index() is None:
            return query, None

        canonical = self.index.canonical_category(query.category)
        if canonical is not None:
            if canonical != query.category:
                query = query.model_copy(update={"category": canonical})
            return query, None

        similar = self.index.find_similar_categories(query.category, limit=1)
        if not similar:
            log.info("Категория %r не найдена в каталоге", query.category)
            return query, None

        replacement = similar[0]
        log.info("Категория %r заменена на %r", query.category, replacement)
        message = f"Категория «{query.category}» не найдена, показываю результаты для «{replacement}»."
        return query.model_copy(update={"category": replacement}), message

    def build_suggestions(self, query: SearchQuery) -> CatalogSuggestions:
        suggestions = CatalogSuggestions(example_queries=list(EXAMPLE_QUERIES))
        if self.index is None:
            return suggestions

        if query.category:
            suggestions.similar_categories = [
                name for name in self.index.find_similar_categories(query.category, limit=5)
                if name != query.category
            ]
        suggestions.popular_categories = self.index.get_popular_categories(limit=5)
        if query.brand:
            suggestions.available_brands = self.index.get_popular_brands(limit=10)
        return suggestions

    async def search_equipment(self, query: SearchQuery) -> CatalogSearchResult:
        """Поиск оборудования: нормализация → сверка категории → движок → подсказки."""
        normalized = normalize_query(query)
        normalized, message = self.verify_category(normalized)

        result = await self.engine.search(normalized)
        log.info(
            "Поиск: %s → найдено %d (стратегия %s)",
            normalized.to_payload(), result.total, result.used_strategy,
        )

        update: dict = {}
        if message:
            update["message"] = message
        if not result.items:
            update["suggestions"] = self.build_suggestions(normalized)
        return result.model_copy(update=update) if update else result

    def get_category_parameters_hint(self, category: str, limit: int = 10) -> Optional[str]:
        """Текстовая подсказка о параметрах категории для системного промпта диалога."""
        if self.index is None or not category:
            return None
        parameters = self.index.get_category_parameters(category)[:limit]
        if not parameters:
            return None
        listing = ", ".join(f"{p.name} ({p.count})" for p in parameters)
        return (
            f"В категории «{category}» у техники указаны параметры: {listing}. "
            "Используй их имена при формировании parameters."
        )

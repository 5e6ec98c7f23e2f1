"""
Кэшированный индекс каталога: категории, бренды и регионы с количеством позиций.

Используется для:
- подсказок пользователю о доступных категориях;
- промпта LLM с информацией о каталоге;
- исправления опечаток в категории (нечёткий поиск).

Снимок индекса неизменяем и заменяется целиком. Фоновое обновление
выполняет APScheduler (по умолчанию раз в 5 минут).
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import CATALOG_FUZZY_MAX_DISTANCE, CATALOG_INDEX_REFRESH_MINUTES
from errors import StaleIndexWarning
from logger import get_logger
from models import CatalogIndex, CatalogStats, CategoryInfo, ParameterInfo
from text_match import find_similar_categories, normalize_text

log = get_logger(__name__)


class CatalogStatsSource(Protocol):
    """Агрегирующие запросы к хранилищу."""

    def fetch_catalog_stats(self) -> CatalogStats: ...

    def fetch_category_parameters(self, category: str) -> list[ParameterInfo]: ...


def _ranked(items: list[CategoryInfo]) -> tuple[CategoryInfo, ...]:
    return tuple(sorted(items, key=lambda item: (-item.count, item.name)))


class CatalogIndexCache:
    """Индекс каталога с периодическим обновлением."""

    def __init__(
        self,
        source: CatalogStatsSource,
        *,
        refresh_minutes: float = CATALOG_INDEX_REFRESH_MINUTES,
        max_distance: int = CATALOG_FUZZY_MAX_DISTANCE,
        auto_refresh: bool = True,
    ) -> None:
        self.source = source
        self.refresh_minutes = refresh_minutes
        self.max_distance = max_distance
        self.last_refresh_error: Optional[StaleIndexWarning] = None

        self._index: Optional[CatalogIndex] = None
        self._build_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

        if auto_refresh:
            self.start_auto_refresh()

    # ─── Построение ────────────────────────────────────────────────────────────

    def build_index(self) -> CatalogIndex:
        """Строит новый снимок из хранилища и публикует его. Ошибки хранилища пробрасываются."""
        with self._build_lock:
            stats = self.source.fetch_catalog_stats()
            index = CatalogIndex(
                categories=_ranked([c for c in stats.categories if c.count > 0]),
                brands=_ranked(stats.brands),
                regions=_ranked([r for r in stats.regions if r.name]),
                total_items=stats.total_items,
                last_updated=datetime.now(timezone.utc),
            )
            self._index = index

        log.info(
            "Индекс каталога построен: %d позиций, %d категорий, %d брендов",
            index.total_items, len(index.categories), len(index.brands),
        )
        return index

    def refresh(self) -> Optional[CatalogIndex]:
        """Задача планировщика: при ошибке остаётся предыдущий снимок."""
        try:
            index = self.build_index()
        except Exception as exc:
            self.last_refresh_error = StaleIndexWarning(f"Не удалось обновить индекс каталога: {exc}")
            log.warning(
                "Не удалось обновить индекс каталога (используется %s): %s",
                "предыдущий снимок" if self._index else "пустой индекс", exc,
            )
            return None
        self.last_refresh_error = None
        return index

    def get_index(self) -> Optional[CatalogIndex]:
        """Текущий снимок; None, если индекс ещё не построен."""
        return self._index

    def ensure_index(self) -> CatalogIndex:
        index = self._index
        if index is not None:
            return index
        return self.build_index()

    # ─── Фоновое обновление ────────────────────────────────────────────────────

    @property
    def auto_refresh_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start_auto_refresh(self) -> None:
        """Первая загрузка сразу, затем каждые refresh_minutes минут."""
        if self.auto_refresh_running:
            return
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self.refresh,
            trigger=IntervalTrigger(minutes=self.refresh_minutes),
            id="catalog_index_refresh",
            name="Обновление индекса каталога",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info("Автообновление индекса каталога: каждые %s мин", self.refresh_minutes)

    def stop_auto_refresh(self) -> None:
        """Останавливает таймер (для тестов и корректного завершения процесса)."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.info("Автообновление индекса каталога остановлено")

    # ─── Чтение снимка ─────────────────────────────────────────────────────────

    def find_similar_categories(self, query: str, limit: int = 5) -> list[str]:
        index = self._index
        if index is None:
            return []
        names = [c.name for c in index.categories]
        return find_similar_categories(query, names, limit, max_distance=self.max_distance)

    def get_popular_categories(self, limit: int = 10) -> list[CategoryInfo]:
        index = self._index
        if index is None:
            return []
        return list(index.categories[:limit])

    def get_popular_brands(self, limit: int = 10) -> list[str]:
        index = self._index
        if index is None:
            return []
        return [b.name for b in index.brands[:limit]]

    def get_categories_for_prompt(self, limit: int = 30) -> str:
        """Нумерованный список категорий для системного промпта."""
        index = self._index
        if index is None:
            return ""
        return "\n".join(
            f"{i}. {c.name} ({c.count} шт.)"
            for i, c in enumerate(index.categories[:limit], start=1)
        )

    def category_exists(self, category: str) -> bool:
        index = self._index
        if index is None or not category:
            return False
        needle = normalize_text(category)
        return any(normalize_text(c.name) == needle for c in index.categories)

    def canonical_category(self, category: str) -> Optional[str]:
        """Название категории в написании каталога (без учёта регистра)."""
        index = self._index
        if index is None or not category:
            return None
        needle = normalize_text(category)
        for c in index.categories:
            if normalize_text(c.name) == needle:
                return c.name
        return None

    # ─── Параметры категории ───────────────────────────────────────────────────

    def get_category_parameters(self, category: str) -> list[ParameterInfo]:
        """Параметры категории с количеством позиций; при ошибке хранилища — пустой список."""
        try:
            return self.source.fetch_category_parameters(category)
        except Exception as exc:
            log.error("Не удалось получить параметры категории %r: %s", category, exc)
            return []

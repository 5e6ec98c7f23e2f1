"""CatalogService: нормализация запроса, сверка категории, подсказки, форматирование."""

import asyncio

import pytest

from catalog import (
    CatalogService,
    format_price,
    format_results,
    format_summary,
    normalize_query,
    summarize_for_dialog,
)
from conftest import FakeEngine
from models import EquipmentSummary, SearchQuery


class TestNormalizeQuery:
    def test_default_limit_applied(self):
        query = normalize_query(SearchQuery(category="Кран", parameters={"грузоподъемность_min": 50}))
        assert query.limit == 10
        assert query.parameters == {"грузоподъемность_min": 50}

    def test_empty_strings_stripped(self):
        query = normalize_query(SearchQuery(text="", category="Кран", brand="  ", limit=0))
        assert query.to_payload() == {"category": "Кран", "limit": 10}

    def test_limit_capped(self):
        assert normalize_query(SearchQuery(limit=1000)).limit == 100


class TestSearchEquipment:
    def test_engine_receives_normalized_query(self, index_cache):
        engine = FakeEngine()
        service = CatalogService(engine, index_cache)
        query = SearchQuery(category="Кран", parameters={"грузоподъемность_min": 50})
        result = asyncio.run(service.search_equipment(query))

        sent = engine.queries[0]
        assert sent.limit == 10
        assert sent.category == "Кран"
        assert result.used_strategy == "fts"
        assert result.total == 1
        assert result.suggestions is None
        assert result.message is None

    def test_category_case_canonicalized(self, index_cache):
        engine = FakeEngine()
        asyncio.run(CatalogService(engine, index_cache).search_equipment(SearchQuery(category="кран")))
        assert engine.queries[0].category == "Кран"

    def test_typo_category_replaced_with_message(self, index_cache):
        engine = FakeEngine()
        result = asyncio.run(CatalogService(engine, index_cache).search_equipment(SearchQuery(category="Экскватор")))
        assert engine.queries[0].category == "Экскаватор"
        assert "Экскватор" in result.message and "Экскаватор" in result.message

    def test_unknown_category_without_match_kept(self, index_cache):
        engine = FakeEngine(items=[])
        result = asyncio.run(CatalogService(engine, index_cache).search_equipment(SearchQuery(category="Холодильник")))
        assert engine.queries[0].category == "Холодильник"
        assert result.message is None

    def test_without_index_category_untouched(self):
        engine = FakeEngine()
        asyncio.run(CatalogService(engine).search_equipment(SearchQuery(category="Экскватор")))
        assert engine.queries[0].category == "Экскватор"

    def test_empty_result_gets_suggestions(self, index_cache):
        engine = FakeEngine(items=[])
        result = asyncio.run(CatalogService(engine, index_cache).search_equipment(
            SearchQuery(category="Холодильник", brand="Volvo")
        ))
        assert result.total == 0
        suggestions = result.suggestions
        assert [c.name for c in suggestions.popular_categories] == ["Экскаватор", "Кран", "Бульдозер"]
        assert suggestions.available_brands == ["Liebherr", "Komatsu"]
        assert suggestions.example_queries

    def test_requested_category_not_suggested_again(self, index_cache):
        engine = FakeEngine(items=[])
        result = asyncio.run(CatalogService(engine, index_cache).search_equipment(SearchQuery(category="Кран")))
        assert result.suggestions.similar_categories == []
        assert result.suggestions.available_brands == []


class TestParametersHint:
    def test_hint_lists_parameters(self, index_cache):
        hint = CatalogService(FakeEngine(), index_cache).get_category_parameters_hint("Кран")
        assert "Грузоподъемность (12)" in hint
        assert "Вылет стрелы (9)" in hint

    def test_no_hint_for_unknown_category(self, index_cache):
        assert CatalogService(FakeEngine(), index_cache).get_category_parameters_hint("Каток") is None

    def test_no_hint_without_index(self):
        assert CatalogService(FakeEngine()).get_category_parameters_hint("Кран") is None


class TestFormatting:
    @pytest.mark.parametrize("price, expected", [
        (None, "цена по запросу"),
        (12500000, "12 500 000 ₽"),
        (1500.5, "1 500.50 ₽"),
        (2000.0, "2 000 ₽"),
        ("договорная", "договорная"),
    ])
    def test_format_price(self, price, expected):
        assert format_price(price) == expected

    def test_format_summary(self):
        item = EquipmentSummary(
            id="1", name="КС-55713", category="Кран", brand="Галичанин", price=None,
            main_parameters={"Грузоподъемность": 25, "Вылет стрелы": 21, "Колёсная формула": "6x4", "Лишний": 1},
        )
        assert format_summary(item) == (
            "КС-55713 (Галичанин, Кран) — цена по запросу | "
            "Грузоподъемность: 25, Вылет стрелы: 21, Колёсная формула: 6x4"
        )

    def test_format_results_and_dialog_summary(self):
        items = [EquipmentSummary(id=str(i), name=f"Кран {i}", price=i * 1000) for i in range(1, 8)]
        lines = format_results(items).splitlines()
        assert lines[0] == "1. Кран 1 — 1 000 ₽"
        assert len(lines) == 7
        assert len(summarize_for_dialog(items).splitlines()) == 5

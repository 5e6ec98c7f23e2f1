"""Общие фикстуры и фейки для тестов ассистента.

LLM-бэкенды, хранилище и источник статистики каталога подменяются
простыми объектами в памяти — сеть и ChromaDB в тестах не нужны.
"""

import pytest

from errors import ProviderConnectionError
from models import (
    CatalogSearchResult,
    CatalogStats,
    CategoryInfo,
    ChatCompletion,
    EmbeddingResult,
    EquipmentSummary,
    ParameterInfo,
)


# =============================================================================
# LLM FAKES
# =============================================================================

class FakeProvider:
    """Провайдер с заданной доступностью и записью вызовов."""

    def __init__(self, name, *, alive=True, supports_embeddings=True,
                 reply='{"action":"ask","question":"?"}', default_chat_model="fake-model",
                 embed_error=None):
        self.name = name
        self.alive = alive
        self.supports_embeddings = supports_embeddings
        self.default_chat_model = default_chat_model
        self.reply = reply
        self.embed_error = embed_error
        self.chat_calls = []
        self.embedding_calls = []
        self.pings = 0

    def supports_model(self, model):
        return ":" not in model

    async def ping(self):
        self.pings += 1
        return self.alive

    async def chat(self, model, messages, temperature=None, max_tokens=None):
        self.chat_calls.append({"model": model, "messages": list(messages), "temperature": temperature})
        return ChatCompletion(content=self.reply)

    async def embeddings(self, model, texts):
        self.embedding_calls.append({"model": model, "texts": texts})
        if self.embed_error is not None:
            raise self.embed_error
        inputs = [texts] if isinstance(texts, str) else list(texts)
        return EmbeddingResult(vectors=[[float(len(self.name))] * 3 for _ in inputs])


class ScriptedChat:
    """Чат-бэкенд для диалога: отдаёт ответы по очереди и запоминает контекст."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def chat(self, messages, *, model=None, temperature=None, max_tokens=None):
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("ScriptedChat: ответы закончились")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatCompletion(content=reply)


ASK_REPLY = '{"action":"ask","question":"Какая грузоподъемность нужна?"}'
CRANE_FINAL_REPLY = (
    '{"action":"final","query":{"text":"кран","category":"Кран",'
    '"parameters":{"грузоподъемность_min":50}}}'
)


# =============================================================================
# CATALOG FAKES
# =============================================================================

class FakeStatsSource:
    """Источник статистики каталога; можно заставить падать."""

    def __init__(self, stats=None, parameters=None):
        self.stats = stats or CatalogStats(
            categories=[
                CategoryInfo(name="Кран", count=12),
                CategoryInfo(name="Экскаватор", count=30),
                CategoryInfo(name="Бульдозер", count=7),
            ],
            brands=[
                CategoryInfo(name="Komatsu", count=10),
                CategoryInfo(name="Liebherr", count=15),
            ],
            regions=[CategoryInfo(name="Москва", count=20)],
            total_items=49,
        )
        self.parameters = parameters or {
            "Кран": [
                ParameterInfo(name="Грузоподъемность", count=12),
                ParameterInfo(name="Вылет стрелы", count=9),
            ],
        }
        self.fail = False
        self.calls = 0

    def fetch_catalog_stats(self):
        self.calls += 1
        if self.fail:
            raise ProviderConnectionError("storage", "database is down")
        return self.stats

    def fetch_category_parameters(self, category):
        if self.fail:
            raise ProviderConnectionError("storage", "database is down")
        return self.parameters.get(category, [])


class FakeEngine:
    """Поисковый движок: запоминает запросы и возвращает заданную выдачу."""

    def __init__(self, items=None, strategy="fts"):
        self.items = items if items is not None else [
            EquipmentSummary(
                id="1", name="КС-55713", category="Кран", brand="Галичанин",
                price=12500000, main_parameters={"Грузоподъемность": 25},
            ),
        ]
        self.strategy = strategy
        self.queries = []

    async def search(self, query):
        self.queries.append(query)
        if not self.items:
            return CatalogSearchResult(items=[], total=0, used_strategy="fts")
        limited = self.items[: query.limit or 10]
        return CatalogSearchResult(items=limited, total=len(self.items), used_strategy=self.strategy)


@pytest.fixture
def stats_source():
    return FakeStatsSource()


@pytest.fixture
def index_cache(stats_source):
    from catalog_index import CatalogIndexCache

    cache = CatalogIndexCache(stats_source, auto_refresh=False)
    cache.build_index()
    yield cache
    cache.stop_auto_refresh()

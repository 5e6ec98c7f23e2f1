"""
Эталонное хранилище каталога техники на ChromaDB.

Отвечает за:
- подключение к persistent- или HTTP-серверу ChromaDB;
- индексацию карточек техники (upsert, векторы через фабрику провайдеров)
  и загрузку каталога из JSON;
- поиск по SearchQuery: фильтр по метаданным + вхождение слов в документ ("fts"),
  при нехватке результатов — добор семантическим поиском ("mixed" / "vector");
- агрегаты для индекса каталога (категории, бренды, регионы, параметры).
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

import chromadb
import httpx
from chromadb.config import Settings as ChromaSettings
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import (
    CATALOG_SEED_PATH,
    CHROMA_COLLECTION_NAME,
    CHROMA_HOST,
    CHROMA_PERSIST_DIR,
    CHROMA_PORT,
    EMBED_BATCH_SIZE,
    ENABLE_VECTOR_SEARCH,
    SEARCH_DEFAULT_LIMIT,
    SEARCH_MIN_FTS_RESULTS,
    SEARCH_PARAMETER_OVERFETCH,
    STORAGE_MAX_RETRIES,
)
from logger import get_logger
from models import (
    CatalogSearchResult,
    CatalogStats,
    CategoryInfo,
    EmbeddingResult,
    EquipmentRecord,
    EquipmentSummary,
    ParameterInfo,
    ParameterValue,
    SearchQuery,
)
from parameter_mapper import catalog_value, convert_value, map_parameter_name, parse_quantity
from text_match import normalize_text, rough_stem_ru, tokenize

log = get_logger(__name__)

_client: Optional[chromadb.ClientAPI] = None

_FILTER_FIELDS = ("category", "subcategory", "brand", "region")
_MIN_TOKEN_LENGTH = 3

_storage_retry = retry(
    stop=stop_after_attempt(STORAGE_MAX_RETRIES),
    wait=wait_exponential(min=0.5, max=5),
    retry=retry_if_exception_type((ConnectionError, TimeoutError, httpx.TransportError)),
    reraise=True,
)


def _get_client() -> chromadb.ClientAPI:
    global _client
    if _client is None:
        settings = ChromaSettings(anonymized_telemetry=False)
        if CHROMA_HOST:
            _client = chromadb.HttpClient(host=CHROMA_HOST, port=CHROMA_PORT, settings=settings)
            log.info("ChromaDB: подключение к %s:%s", CHROMA_HOST, CHROMA_PORT)
        else:
            _client = chromadb.PersistentClient(path=CHROMA_PERSIST_DIR, settings=settings)
            log.info("ChromaDB: подключение к %s", CHROMA_PERSIST_DIR)
    return _client


def get_collection(name: str = CHROMA_COLLECTION_NAME) -> chromadb.Collection:
    """Возвращает (или создаёт) коллекцию техники."""
    collection = _get_client().get_or_create_collection(
        name=name,
        metadata={"hnsw:space": "cosine"},
    )
    log.info("ChromaDB: коллекция '%s' — документов: %d", name, collection.count())
    return collection


# ─── Преобразование записей ────────────────────────────────────────────────────

def build_document(record: EquipmentRecord) -> str:
    """Текст документа для поиска: название, категория, бренд, описание, параметры."""
    parts = [record.name, record.category, record.subcategory, record.brand, record.description]
    parts.extend(f"{key} {value}" for key, value in record.main_parameters.items())
    return normalize_text(" ".join(part for part in parts if part))


def record_to_metadata(record: EquipmentRecord) -> dict[str, Any]:
    # Метаданные ChromaDB: только скаляры, параметры хранятся JSON-строкой
    metadata: dict[str, Any] = {
        "name": record.name,
        "category": record.category,
        "subcategory": record.subcategory,
        "brand": record.brand,
        "region": record.region,
        "is_active": record.is_active,
        "params_json": json.dumps(record.main_parameters, ensure_ascii=False),
    }
    if isinstance(record.price, (int, float)):
        metadata["price"] = record.price
    elif record.price:
        metadata["price_text"] = str(record.price)
    return metadata


def metadata_to_summary(doc_id: str, metadata: dict[str, Any]) -> EquipmentSummary:
    try:
        parameters = json.loads(metadata.get("params_json") or "{}")
    except ValueError:
        parameters = {}
    price = metadata.get("price")
    if price is None:
        price = metadata.get("price_text")
    return EquipmentSummary(
        id=doc_id,
        name=metadata.get("name", ""),
        category=metadata.get("category", ""),
        brand=metadata.get("brand", ""),
        price=price,
        main_parameters=parameters if isinstance(parameters, dict) else {},
    )


# ─── Построение фильтров ───────────────────────────────────────────────────────

def build_where(query: SearchQuery) -> dict[str, Any]:
    """where-clause ChromaDB: точное совпадение фильтров + только активные позиции."""
    conditions: list[dict[str, Any]] = [{"is_active": True}]
    for field in _FILTER_FIELDS:
        value = getattr(query, field)
        if value:
            conditions.append({field: value})
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


def search_terms(text: Optional[str]) -> list[str]:
    """Слова запроса для поиска по документу (грубые основы, без коротких слов)."""
    if not text:
        return []
    terms: list[str] = []
    for token in tokenize(text):
        if len(token) < _MIN_TOKEN_LENGTH:
            continue
        stem = rough_stem_ru(token)
        if stem not in terms:
            terms.append(stem)
    return terms


def build_where_document(terms: list[str]) -> Optional[dict[str, Any]]:
    if not terms:
        return None
    if len(terms) == 1:
        return {"$contains": terms[0]}
    return {"$or": [{"$contains": term} for term in terms]}


# ─── Фильтр по техническим параметрам ─────────────────────────────────────────

def _parameter_key(name: str) -> str:
    # "тип_шасси" от LLM и "Тип шасси" в каталоге: один параметр
    return normalize_text(name.replace("_", " "))


def _lookup_parameter(parameters: dict[str, ParameterValue], db_name: str) -> Optional[ParameterValue]:
    if db_name in parameters:
        return parameters[db_name]
    needle = _parameter_key(db_name)
    for key, value in parameters.items():
        if _parameter_key(key) == needle:
            return value
    return None


def _matches_condition(
    actual: Optional[ParameterValue],
    suffix: Optional[str],
    expected: ParameterValue,
    db_name: str,
) -> bool:
    if actual is None:
        return False
    if isinstance(expected, str) and parse_quantity(expected)[0] is None:
        return normalize_text(str(actual)) == normalize_text(expected)

    # "6000 мм", "6 м" и голое 6 для глубины копания сводятся к миллиметрам каталога
    expected_number = convert_value(db_name, expected)
    actual_number = catalog_value(db_name, actual)
    if expected_number is None or actual_number is None:
        return False
    if suffix == "_min":
        return actual_number >= expected_number
    if suffix == "_max":
        return actual_number <= expected_number
    return actual_number == expected_number


def filter_by_parameters(
    items: list[EquipmentSummary],
    parameters: Optional[dict[str, ParameterValue]],
) -> list[EquipmentSummary]:
    """
    Оставляет позиции, удовлетворяющие всем условиям на параметры.

    Условие на параметр, которого нет ни у одной позиции выборки, игнорируется.
    """
    if not parameters or not items:
        return items

    result = items
    for name, expected in parameters.items():
        mapping = map_parameter_name(name)
        if not any(_lookup_parameter(item.main_parameters, mapping.db_name) is not None for item in result):
            log.debug("Параметр %r (%s) не найден в выборке — условие пропущено", name, mapping.db_name)
            continue
        result = [
            item for item in result
            if _matches_condition(
                _lookup_parameter(item.main_parameters, mapping.db_name),
                mapping.suffix, expected, mapping.db_name,
            )
        ]
    return result


# ─── Хранилище ─────────────────────────────────────────────────────────────────

class EmbeddingBackend(Protocol):
    async def embeddings(
        self, texts: Union[str, Sequence[str]], *, model: Optional[str] = None
    ) -> EmbeddingResult: ...


class ChromaEquipmentStore:
    """
    Поисковый движок и источник статистики каталога поверх коллекции ChromaDB.

    Если передан embedder (ProviderFactory), векторы документов и запросов
    считаются через него с учётом цепочки fallback. Без embedder коллекция
    использует свою встроенную embedding-функцию.
    """

    def __init__(
        self,
        collection: Optional[chromadb.Collection] = None,
        *,
        embedder: Optional[EmbeddingBackend] = None,
        enable_vector_search: bool = ENABLE_VECTOR_SEARCH,
        min_fts_results: int = SEARCH_MIN_FTS_RESULTS,
        embed_batch_size: int = EMBED_BATCH_SIZE,
    ) -> None:
        self._collection = collection
        self.embedder = embedder
        self.enable_vector_search = enable_vector_search
        self.min_fts_results = min_fts_results
        self.embed_batch_size = max(1, embed_batch_size)

    @property
    def collection(self) -> chromadb.Collection:
        if self._collection is None:
            self._collection = get_collection()
        return self._collection

    def count(self) -> int:
        return self.collection.count()

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.embed_batch_size):
            batch = texts[start:start + self.embed_batch_size]
            result = await self.embedder.embeddings(batch)
            vectors.extend(result.vectors)
        return vectors

    # ─── Индексация ────────────────────────────────────────────────────────────

    async def index_equipment(self, records: list[EquipmentRecord]) -> int:
        """Добавляет / обновляет карточки (upsert). Возвращает количество документов."""
        if not records:
            log.warning("index_equipment: пустой список записей")
            return 0

        documents = [build_document(r) for r in records]
        kwargs: dict[str, Any] = {
            "ids": [r.id for r in records],
            "documents": documents,
            "metadatas": [record_to_metadata(r) for r in records],
        }
        if self.embedder is not None:
            kwargs["embeddings"] = await self._embed(documents)
        self.collection.upsert(**kwargs)
        log.info("ChromaDB: upsert %d документов", len(records))
        return len(records)

    def remove_by_ids(self, ids: list[str]) -> int:
        if not ids:
            return 0
        self.collection.delete(ids=ids)
        log.info("ChromaDB: удалено %d документов", len(ids))
        return len(ids)

    async def reindex_from_file(self, path: Union[str, Path] = CATALOG_SEED_PATH) -> int:
        """Загружает каталог из JSON-файла (список карточек техники)."""
        path = Path(path)
        if not path.exists():
            log.warning("Файл каталога %s не найден — индексация пропущена", path)
            return 0
        raw = json.loads(path.read_text(encoding="utf-8"))
        records = [EquipmentRecord.model_validate(item) for item in raw]
        log.info("Загружено %d карточек из %s", len(records), path)
        return await self.index_equipment(records)

    # ─── Чтение с повторами ────────────────────────────────────────────────────

    @_storage_retry
    def _get(self, **kwargs) -> dict:
        return self.collection.get(**kwargs)

    @_storage_retry
    def _query(self, **kwargs) -> dict:
        return self.collection.query(**kwargs)

    # ─── Поиск ─────────────────────────────────────────────────────────────────

    def _filtered_pass(self, query: SearchQuery) -> list[EquipmentSummary]:
        terms = search_terms(query.text)
        kwargs: dict[str, Any] = {"where": build_where(query), "include": ["metadatas", "documents"]}
        where_document = build_where_document(terms)
        if where_document:
            kwargs["where_document"] = where_document

        raw = self._get(**kwargs)
        ids = raw.get("ids") or []
        metadatas = raw.get("metadatas") or [{}] * len(ids)
        documents = raw.get("documents") or [""] * len(ids)

        scored: list[tuple[int, int, EquipmentSummary]] = []
        for position, (doc_id, metadata, document) in enumerate(zip(ids, metadatas, documents)):
            hits = sum(1 for term in terms if term in (document or ""))
            scored.append((-hits, position, metadata_to_summary(doc_id, metadata or {})))
        scored.sort(key=lambda entry: (entry[0], entry[1]))
        return [summary for _, _, summary in scored]

    async def _vector_pass(self, query: SearchQuery, n_results: int) -> list[EquipmentSummary]:
        available = self.count()
        if not available:
            return []
        kwargs: dict[str, Any] = {
            "n_results": min(n_results, available),
            "where": build_where(query),
            "include": ["metadatas", "distances"],
        }
        if self.embedder is not None:
            kwargs["query_embeddings"] = await self._embed([normalize_text(query.text)])
        else:
            kwargs["query_texts"] = [query.text]

        raw = self._query(**kwargs)
        ids = (raw.get("ids") or [[]])[0]
        metadatas = (raw.get("metadatas") or [[{}] * len(ids)])[0]
        return [metadata_to_summary(doc_id, metadata or {}) for doc_id, metadata in zip(ids, metadatas)]

    async def search(self, query: SearchQuery) -> CatalogSearchResult:
        """Поиск: фильтры + вхождение слов; при нехватке — добор семантикой."""
        limit = query.limit or SEARCH_DEFAULT_LIMIT

        found = filter_by_parameters(self._filtered_pass(query), query.parameters)
        strategy = "fts"

        if query.text and self.enable_vector_search and len(found) < self.min_fts_results:
            n_results = limit * (SEARCH_PARAMETER_OVERFETCH if query.parameters else 1)
            try:
                semantic = filter_by_parameters(
                    await self._vector_pass(query, n_results), query.parameters
                )
            except Exception as exc:
                log.error("ChromaDB: ошибка семантического поиска — %s", exc)
                semantic = []

            seen = {item.id for item in found}
            extra = [item for item in semantic if item.id not in seen]
            if extra:
                strategy = "mixed" if found else "vector"
                found = found + extra

        return CatalogSearchResult(items=found[:limit], total=len(found), used_strategy=strategy)

    # ─── Агрегаты для индекса каталога ─────────────────────────────────────────

    def fetch_catalog_stats(self) -> CatalogStats:
        raw = self._get(where={"is_active": True}, include=["metadatas"])
        metadatas = raw.get("metadatas") or []

        categories: Counter[str] = Counter()
        brands: Counter[str] = Counter()
        regions: Counter[str] = Counter()
        for metadata in metadatas:
            metadata = metadata or {}
            if metadata.get("category"):
                categories[metadata["category"]] += 1
            if metadata.get("brand"):
                brands[metadata["brand"]] += 1
            if metadata.get("region"):
                regions[metadata["region"]] += 1

        return CatalogStats(
            categories=[CategoryInfo(name=n, count=c) for n, c in categories.most_common()],
            brands=[CategoryInfo(name=n, count=c) for n, c in brands.most_common()],
            regions=[CategoryInfo(name=n, count=c) for n, c in regions.most_common()],
            total_items=len(metadatas),
        )

    def fetch_category_parameters(self, category: str) -> list[ParameterInfo]:
        raw = self._get(
            where={"$and": [{"is_active": True}, {"category": category}]},
            include=["metadatas"],
        )
        counts: Counter[str] = Counter()
        for metadata in raw.get("metadatas") or []:
            summary = metadata_to_summary("", metadata or {})
            counts.update(summary.main_parameters.keys())
        return [
            ParameterInfo(name=name, count=count)
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]


# ─── CLI: ручная переиндексация ───────────────────────────────────────────────

if __name__ == "__main__":
    import asyncio

    from config import USE_FACTORY_EMBEDDINGS
    from llm_factory import get_factory

    store = ChromaEquipmentStore(embedder=get_factory() if USE_FACTORY_EMBEDDINGS else None)
    total = asyncio.run(store.reindex_from_file())
    log.info("Переиндексация завершена: %d документов, в коллекции %d", total, store.count())
